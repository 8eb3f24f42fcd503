from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache

from mcp.server.fastmcp import FastMCP

from dealdesk.config import get_settings
from dealdesk.crm import CRMError
from dealdesk.errors import DiligenceError
from dealdesk.schemas import DiligenceRecord, LinkDocumentRequest
from dealdesk.services import DiligenceService
from dealdesk.utils import first_non_empty

log = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_service() -> DiligenceService:
    return DiligenceService.from_settings(get_settings())


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def dealdesk_lifespan(server: FastMCP) -> AsyncIterator[None]:
    yield
    if get_service.cache_info().currsize:
        await get_service().aclose()


mcp = FastMCP(
    "DealDesk",
    instructions=(
        "DealDesk is a venture diligence workspace. Use these tools to browse diligence "
        "records, inspect scores and evidence, attach deck links, trigger re-scoring, and "
        "log reviewer feedback on thesis fit. Start with list_diligence(), then "
        "get_diligence(id) for full details."
    ),
    lifespan=dealdesk_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def record_summary(record: DiligenceRecord) -> dict:
    return {
        "id": record.id,
        "company_name": record.company_name,
        "status": record.status,
        "priority": record.priority,
        "industry": record.industry,
        "overall_score": record.score.overall if record.score else None,
        "data_quality": record.score.data_quality if record.score else None,
        "thesis_fit": record.thesis_fit.fit if record.thesis_fit else None,
        "deal_stage": first_non_empty(record.hubspot_deal_stage_label, record.hubspot_deal_stage_id) or None,
        "hubspot_deal_id": record.hubspot_deal_id,
        "documents": len(record.documents),
        "updated_at": record.updated_at,
    }


def _error(exc: Exception) -> dict:
    message = exc.message if isinstance(exc, DiligenceError) else str(exc)
    return {"error": message}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("dealdesk://overview")
def dealdesk_overview() -> str:
    """Overview of DealDesk: data model, workflow, and score semantics."""
    criteria = get_service().criteria
    try:
        categories = [{"name": c.name, "weight": c.weight} for c in criteria.get().categories]
    except DiligenceError as exc:
        categories = [{"error": exc.message}]
    return json.dumps({
        "system": "DealDesk: venture due-diligence workspace",
        "data_model": {
            "diligence_record": "One company under review: profile, metrics, notes, documents, score, CRM link.",
            "document": "Uploaded file or external link with extracted text; unreadable text is flagged, never scored.",
            "score": "Weighted rubric score 0-100 per category; manual overrides survive re-scoring.",
            "metric": "Key deal figures (ARR, raise, valuation, runway...). Manual values are never replaced automatically.",
        },
        "workflow": [
            "1. list_diligence(): browse records with scores and CRM stage.",
            "2. get_diligence(id): full record including score breakdown and evidence.",
            "3. add_link_document(id, url): attach a deck or data-room link.",
            "4. rescore_diligence(id): re-run scoring; skipped when nothing changed unless force_full.",
            "5. record_thesis_feedback(...): log whether the thesis-fit judgment was right.",
        ],
        "categories": categories,
        "thesis_fit_labels": ["on_thesis", "mixed", "off_thesis"],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_diligence(search: str | None = None, limit: int = 50) -> list[dict]:
    """List diligence records, most recently updated first.

    Args:
        search: Case-insensitive substring of the company name.
        limit: Max results (default 50, max 500).
    """
    service = get_service()
    records = service.store.search_by_name(search) if search else service.store.list()
    return [record_summary(r) for r in records[:max(1, min(limit, 500))]]


@mcp.tool()
async def get_diligence(record_id: str) -> dict:
    """Get the full diligence record, with live CRM stage and amount when HubSpot is configured."""
    try:
        record = await get_service().get_record(record_id)
    except (DiligenceError, CRMError) as exc:
        return _error(exc)
    return record.model_dump(exclude={"documents"}) | {
        "documents": [
            {"id": d.id, "name": d.name, "type": d.type, "link_ingest_status": d.link_ingest_status,
             "chars": len(d.extracted_text or "")}
            for d in record.documents
        ],
    }


@mcp.tool()
async def rescore_diligence(record_id: str, force_full: bool = False, category: str | None = None) -> dict:
    """Score or re-score a record. Requires an LLM API key.

    Args:
        record_id: Diligence record id.
        force_full: Re-score even when no input changed.
        category: Re-score only this rubric category (the record must already have a score).
    """
    try:
        outcome = await get_service().rescore(record_id, force_full=force_full, category=category)
    except DiligenceError as exc:
        return _error(exc)
    score = outcome.record.score
    return {
        "record_id": record_id,
        "skipped": outcome.skipped,
        "message": outcome.message,
        "overall": score.overall if score else None,
        "data_quality": score.data_quality if score else None,
        "categories": {c.category: c.manual_override if c.manual_override is not None else c.score
                       for c in (score.categories if score else [])},
        "rescore_explanation": score.rescore_explanation if score else None,
        "warnings": outcome.warnings,
    }


@mcp.tool()
async def add_link_document(record_id: str, url: str, name: str | None = None,
                            access_email: str | None = None) -> dict:
    """Attach an external link (deck, data room) and ingest its text.

    Args:
        record_id: Diligence record id.
        url: Link to fetch. DocSend links may need access_email.
        name: Display name (defaults to the URL).
        access_email: Email to pass a DocSend email gate.
    """
    try:
        record, warnings = await get_service().add_link(
            record_id, LinkDocumentRequest(url=url, name=name, access_email=access_email),
        )
    except DiligenceError as exc:
        return _error(exc)
    doc = record.documents[-1]
    return {
        "record_id": record_id, "document_id": doc.id, "status": doc.link_ingest_status,
        "message": doc.link_ingest_message, "chars": len(doc.extracted_text or ""), "warnings": warnings,
    }


@mcp.tool()
def record_thesis_feedback(
    diligence_id: str, company_name: str, reviewer_fit: str,
    reviewer_confidence: int | None = None, notes: str | None = None,
    why_fits: list[str] | None = None, why_not_fit: list[str] | None = None,
    evidence_gaps: list[str] | None = None, reviewer: str | None = None,
) -> dict:
    """Log a reviewer's thesis-fit label for a record. reviewer_fit: on_thesis, mixed, or off_thesis."""
    service = get_service()
    record = service.store.load(diligence_id)
    payload = {
        "diligence_id": diligence_id, "company_name": company_name, "reviewer_fit": reviewer_fit,
        "reviewer_confidence": reviewer_confidence, "notes": notes, "reviewer": reviewer,
        "why_fits": why_fits or [], "why_not_fit": why_not_fit or [], "evidence_gaps": evidence_gaps or [],
    }
    if record is not None and record.thesis_fit is not None:
        payload["model_fit"] = record.thesis_fit.fit
        payload["model_confidence"] = record.thesis_fit.confidence
    try:
        entry, created = service.feedback.add(payload)
    except DiligenceError as exc:
        return _error(exc)
    return {"entry": entry.model_dump(), "created": created}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the DealDesk MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
