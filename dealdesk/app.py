from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from dealdesk.config import get_settings
from dealdesk.crm import CRMError
from dealdesk.errors import DiligenceError
from dealdesk.schemas import (
    CategoryOverrideRequest,
    CreateCommitRequest,
    CriterionOverrideRequest,
    DocumentType,
    FeedbackCreate,
    FeedbackImport,
    LinkDocumentRequest,
    MatchRequest,
    PushScoreRequest,
    RecordCreate,
    RecordListResponse,
    RecordResponse,
    RecordUpdate,
    RescoreRequest,
)
from dealdesk.services import DiligenceService

log = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_service() -> DiligenceService:
    return DiligenceService.from_settings(get_settings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_service.cache_info().currsize:
        await get_service().aclose()


app = FastAPI(
    title="DealDesk",
    version="0.1.0",
    description=(
        "Venture diligence workspace API. Parse deal documents, score companies against a "
        "weighted rubric, and keep HubSpot deals in sync. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Diligence", "description": "Create, browse, update, and delete diligence records."},
        {"name": "Documents", "description": "Upload files, attach links, and sync the document folder."},
        {"name": "Scoring", "description": "LLM-assisted rubric scoring and manual overrides."},
        {"name": "CRM", "description": "HubSpot lookups, create-and-link, and score push. Requires HUBSPOT_ACCESS_TOKEN."},
        {"name": "Thesis", "description": "Thesis-fit judgment and the reviewer feedback log."},
        {"name": "Config", "description": "Scoring criteria."},
    ],
)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def _error_body(message: str, exc: Exception | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": message}
    if exc is not None and get_settings().debug:
        body["debug"] = repr(exc)
    return body


@app.exception_handler(DiligenceError)
async def diligence_error_handler(request: Request, exc: DiligenceError):
    if exc.status_code >= 500:
        log.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(_error_body(exc.message, exc), status_code=exc.status_code)


@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError):
    log.warning("%s %s: CRM error: %s", request.method, request.url.path, exc)
    return JSONResponse(_error_body(f"CRM request failed: {exc}", exc), status_code=502)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(_error_body("Internal server error", exc), status_code=500)


# ---------------------------------------------------------------------------
# Routes: Diligence records
# ---------------------------------------------------------------------------


@app.get("/api/diligence", response_model=RecordListResponse,
         tags=["Diligence"], summary="List records with live CRM fields; auto-links unlinked records")
async def list_records(
    auto_link: bool = Query(True, description="Try to link unlinked records to CRM deals by name"),
    service: DiligenceService = Depends(get_service),
):
    records, links = await service.list_records(auto_link=auto_link)
    return {"records": records, "auto_link": links}


@app.post("/api/diligence", response_model=RecordResponse, status_code=201,
          tags=["Diligence"], summary="Create a diligence record (and its document folder)")
async def create_record(body: RecordCreate, service: DiligenceService = Depends(get_service)):
    outcome = await service.create_record(body)
    return {"record": outcome.record, "warnings": outcome.warnings}


@app.get("/api/diligence/{record_id}", response_model=RecordResponse,
         tags=["Diligence"], summary="Get one record with live CRM fields")
async def get_record(record_id: str, service: DiligenceService = Depends(get_service)):
    return {"record": await service.get_record(record_id)}


@app.patch("/api/diligence/{record_id}", response_model=RecordResponse,
           tags=["Diligence"], summary="Partial update; CRM-owned fields are written to the CRM first")
async def update_record(record_id: str, body: RecordUpdate, service: DiligenceService = Depends(get_service)):
    outcome = await service.update_record(record_id, body)
    return {"record": outcome.record, "warnings": outcome.warnings}


@app.delete("/api/diligence/{record_id}", tags=["Diligence"],
            summary="Delete a record; folder_action keeps, archives, or trashes its documents")
async def delete_record(
    record_id: str,
    folder_action: str = Query("keep", description="keep, archive, or delete"),
    service: DiligenceService = Depends(get_service),
):
    return {"success": True, **service.delete_record(record_id, folder_action)}


# ---------------------------------------------------------------------------
# Routes: Documents
# ---------------------------------------------------------------------------


@app.post("/api/diligence/{record_id}/documents", response_model=RecordResponse,
          tags=["Documents"], summary="Upload and parse a document")
async def upload_document(
    record_id: str,
    file: UploadFile = File(...),
    type: DocumentType = Form("other"),
    service: DiligenceService = Depends(get_service),
):
    data = await file.read()
    record, warnings = service.upload_document(record_id, file.filename or "", data, type)
    return {"record": record, "warnings": warnings}


@app.post("/api/diligence/{record_id}/links", response_model=RecordResponse,
          tags=["Documents"], summary="Attach an external link and ingest its text")
async def add_link(record_id: str, body: LinkDocumentRequest, service: DiligenceService = Depends(get_service)):
    record, warnings = await service.add_link(record_id, body)
    return {"record": record, "warnings": warnings}


@app.post("/api/diligence/{record_id}/links/reingest", tags=["Documents"],
          summary="Re-ingest link documents whose text is missing or low quality")
async def reingest_links(record_id: str, service: DiligenceService = Depends(get_service)):
    record, report = await service.reingest_links(record_id)
    return {"success": True, "record": record, **report}


@app.post("/api/diligence/{record_id}/folder-sync", tags=["Documents"],
          summary="Import files found in the record folder that are not yet documents")
async def folder_sync(record_id: str, service: DiligenceService = Depends(get_service)):
    record, report = service.sync_folder(record_id)
    return {"success": True, "record": record, **report}


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.post("/api/diligence/{record_id}/rescore", tags=["Scoring"],
          summary="Score or re-score a record; skipped when nothing changed unless force_full")
async def rescore(record_id: str, body: RescoreRequest | None = None,
                  service: DiligenceService = Depends(get_service)):
    body = body or RescoreRequest()
    outcome = await service.rescore(record_id, force_full=body.force_full, category=body.category)
    return {
        "success": True, "record": outcome.record, "skipped": outcome.skipped,
        "message": outcome.message, "warnings": outcome.warnings,
    }


@app.post("/api/diligence/{record_id}/override", response_model=RecordResponse,
          tags=["Scoring"], summary="Set a manual category score")
async def set_category_override(record_id: str, body: CategoryOverrideRequest,
                                service: DiligenceService = Depends(get_service)):
    return {"record": service.set_category_override(record_id, body)}


@app.delete("/api/diligence/{record_id}/override", response_model=RecordResponse,
            tags=["Scoring"], summary="Remove a manual category score")
async def clear_category_override(record_id: str, category: str = Query(...),
                                  service: DiligenceService = Depends(get_service)):
    return {"record": service.clear_category_override(record_id, category)}


@app.post("/api/diligence/{record_id}/criteria-override", response_model=RecordResponse,
          tags=["Scoring"], summary="Set a manual criterion score")
async def set_criterion_override(record_id: str, body: CriterionOverrideRequest,
                                 service: DiligenceService = Depends(get_service)):
    return {"record": service.set_criterion_override(record_id, body)}


@app.delete("/api/diligence/{record_id}/criteria-override", response_model=RecordResponse,
            tags=["Scoring"], summary="Remove a manual criterion score")
async def clear_criterion_override(record_id: str, category: str = Query(...), criterion: str = Query(...),
                                   service: DiligenceService = Depends(get_service)):
    return {"record": service.clear_criterion_override(record_id, category, criterion)}


# ---------------------------------------------------------------------------
# Routes: CRM
# ---------------------------------------------------------------------------


@app.get("/api/hubspot/deals", tags=["CRM"], summary="Search CRM deals by name")
async def search_deals(q: str = Query("", description="Deal name query"),
                       service: DiligenceService = Depends(get_service)):
    return {"success": True, "deals": await service.search_deals(q)}


@app.get("/api/hubspot/deals/{deal_id}", tags=["CRM"], summary="Look up one CRM deal")
async def get_deal(deal_id: str, service: DiligenceService = Depends(get_service)):
    return {"success": True, "deal": await service.lookup_deal(deal_id)}


@app.get("/api/diligence/{record_id}/hubspot/preview", tags=["CRM"],
         summary="Preview the company and deal a create-and-link would send")
async def hubspot_preview(record_id: str, service: DiligenceService = Depends(get_service)):
    return {"success": True, **await service.hubspot_preview(record_id)}


@app.post("/api/diligence/{record_id}/hubspot/create", response_model=RecordResponse,
          tags=["CRM"], summary="Create or reuse the CRM company and deal and link them")
async def hubspot_create(record_id: str, body: CreateCommitRequest,
                         service: DiligenceService = Depends(get_service)):
    return {"record": await service.hubspot_create(record_id, body)}


@app.post("/api/diligence/{record_id}/hubspot/sync", tags=["CRM"],
          summary="Push the diligence score and metrics to the CRM deal")
async def hubspot_sync(record_id: str, body: PushScoreRequest | None = None,
                       service: DiligenceService = Depends(get_service)):
    body = body or PushScoreRequest()
    return {"success": True, **await service.hubspot_push(record_id, body.deal_stage)}


@app.post("/api/match-deals", tags=["CRM"],
          summary="Rank CRM deals for an investor, using linked diligence records as context")
async def match_deals(body: MatchRequest, service: DiligenceService = Depends(get_service)):
    return {"success": True, **await service.match_deals(body)}


# ---------------------------------------------------------------------------
# Routes: Thesis
# ---------------------------------------------------------------------------


@app.post("/api/diligence/{record_id}/thesis-fit", tags=["Thesis"],
          summary="Judge thesis fit with the LLM and store it on the record")
async def thesis_fit(record_id: str, service: DiligenceService = Depends(get_service)):
    fit, record, warnings = await service.thesis_fit(record_id)
    return {"success": True, "thesis_fit": fit, "record": record, "warnings": warnings}


@app.get("/api/thesis-fit-feedback", tags=["Thesis"], summary="List reviewer feedback with agreement summary")
async def list_feedback(
    diligence_id: str | None = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    service: DiligenceService = Depends(get_service),
):
    return {"success": True, **service.feedback_overview(diligence_id, limit)}


@app.post("/api/thesis-fit-feedback", tags=["Thesis"], summary="Record reviewer feedback on a thesis-fit judgment")
async def add_feedback(body: FeedbackCreate, service: DiligenceService = Depends(get_service)):
    entry, created = service.feedback.add(body.model_dump())
    return JSONResponse(
        {"success": True, "entry": entry.model_dump(), "created": created},
        status_code=201 if created else 200,
    )


@app.get("/api/thesis-fit-feedback/export", tags=["Thesis"], summary="Export every feedback entry")
async def export_feedback(service: DiligenceService = Depends(get_service)):
    entries = service.feedback.export()
    return {"success": True, "count": len(entries), "entries": entries}


@app.post("/api/thesis-fit-feedback/import", tags=["Thesis"], summary="Import feedback entries, skipping duplicates")
async def import_feedback(body: FeedbackImport, service: DiligenceService = Depends(get_service)):
    result = service.feedback.import_entries(body.entries)
    return {
        "success": True, "imported": len(result["imported"]), "skipped": result["skipped"],
        "errors": result["errors"], "entries": result["imported"],
    }


# ---------------------------------------------------------------------------
# Routes: Config
# ---------------------------------------------------------------------------


@app.get("/api/criteria", tags=["Config"], summary="Current scoring criteria")
async def get_criteria(service: DiligenceService = Depends(get_service)):
    return {"success": True, "criteria": service.criteria.get()}


@app.post("/api/criteria/refresh", tags=["Config"], summary="Reload scoring criteria from their source")
async def refresh_criteria(service: DiligenceService = Depends(get_service)):
    return {"success": True, "criteria": service.criteria.refresh()}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("dealdesk.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
