"""Shared business logic for the DealDesk API and MCP server."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from dealdesk.config import CriteriaConfig, Settings
from dealdesk.crm import CRMClient, CRMError, HubSpotClient, lookup_deal, search_deals
from dealdesk.errors import DiligenceError, IngestionFailed, InvalidInput, NotFound
from dealdesk.ingest import LinkIngestor, is_low_quality_link_content, search_web
from dealdesk.llm import LLMClient, LLMCallError
from dealdesk.matching import match_deals as rank_deals
from dealdesk.ocr import DriveOcr
from dealdesk.parser import OcrEngine, is_unreadable, mime_type_for, normalize_extension, parse_document
from dealdesk.schemas import (
    AutoLinkResult,
    CategoryOverrideRequest,
    CreateCommitRequest,
    CriterionOverrideRequest,
    DealLookup,
    DiligenceDocument,
    DiligenceRecord,
    DiligenceScore,
    DocumentType,
    LinkDocumentRequest,
    MatchRequest,
    RecordCreate,
    RecordUpdate,
    ThesisFit,
)
from dealdesk.scoring import (
    Orchestrator,
    ScoringOutcome,
    apply_category_override,
    apply_criterion_override,
    document_warnings,
    is_link_document,
    remove_category_override,
    remove_criterion_override,
)
from dealdesk.storage import FolderStore, RecordStore, make_backend
from dealdesk.sync import CrmSynchronizer, UpdateOutcome, extract_domain
from dealdesk.thesis import FeedbackStore, assess_thesis_fit, summarize_feedback
from dealdesk.utils import new_id, now_iso

log = logging.getLogger(__name__)

FOLDER_ACTIONS = ("keep", "archive", "delete")


def _placeholder_text(url: str) -> str:
    return f"External document link: {url}"


class DiligenceService:
    """Wires the record store, folders, CRM, scoring and ingestion for one process."""

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        folders: FolderStore,
        feedback: FeedbackStore,
        criteria: CriteriaConfig,
        crm: CRMClient | None = None,
        llm_factory: Callable[[], LLMClient] | None = None,
        ingestor: LinkIngestor | None = None,
        ocr: OcrEngine | None = None,
    ):
        self.settings = settings
        self.store = store
        self.folders = folders
        self.feedback = feedback
        self.criteria = criteria
        self.crm = crm
        self.llm_factory = llm_factory or (lambda: LLMClient(settings))
        self.ingestor = ingestor or LinkIngestor(
            timeout=settings.request_timeout_seconds, mirror_timeout=settings.mirror_timeout_seconds,
        )
        self.ocr = ocr
        self.orchestrator = Orchestrator(
            store, criteria, self.llm_factory, web_research=settings.web_research, search=search_web,
        )
        self.sync = CrmSynchronizer(store, settings, crm, rescore=self._background_rescore)

    @classmethod
    def from_settings(cls, settings: Settings) -> DiligenceService:
        backend = make_backend(settings)
        crm = HubSpotClient.from_settings(settings) if settings.crm_configured else None
        ocr = DriveOcr.from_settings(settings) if settings.ocr_configured else None
        return cls(
            settings=settings,
            store=RecordStore(backend),
            folders=FolderStore(backend),
            feedback=FeedbackStore(backend),
            criteria=CriteriaConfig.from_settings(settings),
            crm=crm,
            ocr=ocr,
        )

    async def aclose(self) -> None:
        if isinstance(self.crm, HubSpotClient):
            await self.crm.aclose()
        if isinstance(self.ocr, DriveOcr):
            self.ocr.close()

    async def _background_rescore(self, record_id: str) -> ScoringOutcome:
        return await self.orchestrator.score(record_id, force_full=True)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def create_record(self, body: RecordCreate) -> UpdateOutcome:
        folder_id = self.folders.create_folder(body.company_name)
        fields = body.model_dump(exclude={"hubspot_deal_id"})
        record = self.store.create(folder_id=folder_id, **fields)
        log.info("Created diligence record %s for %s", record.id, record.company_name)
        if body.hubspot_deal_id:
            return await self.sync.apply_update(record.id, RecordUpdate(hubspot_deal_id=body.hubspot_deal_id))
        return UpdateOutcome(record=record)

    async def list_records(self, auto_link: bool = True) -> tuple[list[DiligenceRecord], dict[str, AutoLinkResult]]:
        records = self.store.list()
        results: dict[str, AutoLinkResult] = {}
        if auto_link and self.sync.configured:
            unlinked = [r for r in records if not r.hubspot_deal_id]
            outcomes = await asyncio.gather(*(self.sync.auto_link(r) for r in unlinked))
            results = {r.id: o for r, o in zip(unlinked, outcomes)}
            if any(o.status == "linked" for o in outcomes):
                records = self.store.list()
        return await self.sync.overlay_live(records), results

    async def get_record(self, record_id: str) -> DiligenceRecord:
        record = self.store.get(record_id)
        return (await self.sync.overlay_live([record]))[0]

    async def update_record(self, record_id: str, patch: RecordUpdate) -> UpdateOutcome:
        return await self.sync.apply_update(record_id, patch)

    def delete_record(self, record_id: str, folder_action: str = "keep") -> dict[str, Any]:
        if folder_action not in FOLDER_ACTIONS:
            raise InvalidInput(f"folder_action must be one of: {', '.join(FOLDER_ACTIONS)}")
        record = self.store.get(record_id)
        moved = 0
        if record.folder_id and folder_action != "keep":
            try:
                if folder_action == "archive":
                    moved = self.folders.move_to_archive(record.folder_id)
                else:
                    moved = self.folders.trash(record.folder_id)
            except Exception as exc:
                log.error("Folder %s failed for %s: %s", folder_action, record_id, exc)
                raise DiligenceError(f"Failed to {folder_action} document folder; record was kept") from exc
        self.store.delete(record_id)
        log.info("Deleted diligence record %s (folder %s, %d files)", record_id, folder_action, moved)
        return {"deleted": record_id, "folder_action": folder_action, "files_moved": moved}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _ensure_folder(self, record: DiligenceRecord) -> str:
        if record.folder_id:
            return record.folder_id
        folder_id = self.folders.create_folder(record.company_name)
        self.store.update(record.id, {"folder_id": folder_id})
        return folder_id

    def upload_document(
        self, record_id: str, filename: str, data: bytes, doc_type: DocumentType = "other",
    ) -> tuple[DiligenceRecord, list[str]]:
        record = self.store.get(record_id)
        if not filename:
            raise InvalidInput("A file name is required")
        ext = normalize_extension(filename)
        text = parse_document(data, ext, self.ocr)
        folder_id = self._ensure_folder(record)
        key = self.folders.upload(folder_id, filename, data, mime_type_for(ext))
        doc = DiligenceDocument(
            id=new_id("doc"), name=filename, type=doc_type, file_type=ext, storage_key=key,
            extracted_text=text, uploaded_at=now_iso(), size=len(data),
        )
        warnings = []
        if is_unreadable(text):
            warnings.append(f"{filename}: File is attached but text could not be reliably extracted.")
        updated = self.store.update(record_id, {"documents": [*self.store.get(record_id).documents, doc]})
        log.info("Uploaded %s to %s (%d chars)", filename, record_id, len(text))
        return updated, warnings

    async def _ingest_into(self, doc: DiligenceDocument) -> DiligenceDocument:
        result = await self.ingestor.ingest(doc.external_url or "", doc.access_email)
        return doc.model_copy(update={
            "extracted_text": result.text if result.success else _placeholder_text(doc.external_url or ""),
            "link_ingest_status": result.status,
            "link_ingest_message": result.message or None,
            "link_ingested_at": now_iso(),
        })

    async def add_link(self, record_id: str, body: LinkDocumentRequest) -> tuple[DiligenceRecord, list[str]]:
        self.store.get(record_id)
        url = body.url.strip()
        if not url:
            raise InvalidInput("url is required")
        doc = DiligenceDocument(
            id=new_id("doc"), name=(body.name or "").strip() or url, type=body.type, file_type="link",
            external_url=url, access_email=(body.access_email or "").strip() or None, uploaded_at=now_iso(),
        )
        doc = await self._ingest_into(doc)
        warnings = document_warnings([doc])
        updated = self.store.update(record_id, {"documents": [*self.store.get(record_id).documents, doc]})
        return updated, warnings

    async def _refresh_links(self, record_id: str) -> tuple[DiligenceRecord, list[DiligenceDocument]]:
        """Re-fetch link documents whose text is missing, gated or low quality, and persist them."""
        record = self.store.get(record_id)
        targets = [d for d in record.documents
                   if is_link_document(d) and d.external_url
                   and (d.link_ingest_status != "ingested" or is_low_quality_link_content(d.extracted_text))]
        if not targets:
            return record, []
        refreshed = await asyncio.gather(*(self._ingest_into(d) for d in targets))
        by_id = {d.id: d for d in refreshed}
        current = self.store.get(record_id)
        updated = self.store.update(record_id, {"documents": [by_id.get(d.id, d) for d in current.documents]})
        return updated, list(refreshed)

    async def reingest_links(self, record_id: str) -> tuple[DiligenceRecord, dict[str, Any]]:
        """Re-ingest weak links; fails when none of them comes back usable."""
        updated, refreshed = await self._refresh_links(record_id)
        if not refreshed:
            return updated, {"attempted": 0, "reingested": 0, "errors": []}
        errors = [f"{d.name}: {d.link_ingest_message or d.link_ingest_status}" for d in refreshed
                  if d.link_ingest_status != "ingested"]
        ok = len(refreshed) - len(errors)
        if ok == 0:
            raise IngestionFailed(f"No link could be re-ingested: {'; '.join(errors)}")
        log.info("Re-ingested %d/%d links for %s", ok, len(refreshed), record_id)
        return updated, {"attempted": len(refreshed), "reingested": ok, "errors": errors}

    def sync_folder(self, record_id: str) -> tuple[DiligenceRecord, dict[str, Any]]:
        """Parse files that landed in the record folder but are not yet documents."""
        record = self.store.get(record_id)
        if not record.folder_id:
            raise InvalidInput("Record has no document folder")
        known = {d.storage_key for d in record.documents if d.storage_key}
        new_docs: list[DiligenceDocument] = []
        errors: list[str] = []
        warnings: list[str] = []
        pending = [k for k in self.folders.list_recursive(record.folder_id) if k not in known]
        for key in pending:
            name = key.rsplit("/", 1)[-1]
            try:
                data = self.folders.download(key)
                text = parse_document(data, name, self.ocr)
            except DiligenceError as exc:
                errors.append(f"{name}: {exc.message}")
                continue
            if is_unreadable(text):
                warnings.append(f"{name}: File is attached but text could not be reliably extracted.")
            new_docs.append(DiligenceDocument(
                id=new_id("doc"), name=name, file_type=normalize_extension(name), storage_key=key,
                extracted_text=text, uploaded_at=now_iso(), size=len(data),
            ))
        if pending and not new_docs:
            raise IngestionFailed(f"No folder files could be imported: {'; '.join(errors)}")
        updated = record
        if new_docs:
            updated = self.store.update(record_id, {"documents": [*record.documents, *new_docs]})
        log.info("Folder sync for %s: %d added, %d failed", record_id, len(new_docs), len(errors))
        return updated, {"added": len(new_docs), "errors": errors, "warnings": warnings}

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def rescore(self, record_id: str, force_full: bool = False, category: str | None = None) -> ScoringOutcome:
        try:
            return await self.orchestrator.score(record_id, force_full=force_full, category=category)
        except LLMCallError as exc:
            raise DiligenceError(f"Scoring failed: {exc}") from exc

    def _scored(self, record_id: str) -> DiligenceScore:
        record = self.store.get(record_id)
        if record.score is None:
            raise InvalidInput("Record has not been scored yet")
        return record.score

    def set_category_override(self, record_id: str, body: CategoryOverrideRequest) -> DiligenceRecord:
        score = apply_category_override(self._scored(record_id), body.category, body.score,
                                        reason=body.reason, suppress_topics=body.suppress_topics)
        return self.store.update(record_id, {"score": score})

    def clear_category_override(self, record_id: str, category: str) -> DiligenceRecord:
        score = remove_category_override(self._scored(record_id), category)
        return self.store.update(record_id, {"score": score})

    def set_criterion_override(self, record_id: str, body: CriterionOverrideRequest) -> DiligenceRecord:
        score = apply_criterion_override(self._scored(record_id), body.category, body.criterion, body.score)
        return self.store.update(record_id, {"score": score})

    def clear_criterion_override(self, record_id: str, category: str, criterion: str) -> DiligenceRecord:
        score = remove_criterion_override(self._scored(record_id), category, criterion)
        return self.store.update(record_id, {"score": score})

    # ------------------------------------------------------------------
    # Thesis fit + feedback
    # ------------------------------------------------------------------

    async def thesis_fit(self, record_id: str) -> tuple[ThesisFit, DiligenceRecord, list[str]]:
        """Judge thesis fit after giving weak link documents another ingestion pass."""
        record, refreshed = await self._refresh_links(record_id)
        if refreshed:
            ok = sum(1 for d in refreshed if d.link_ingest_status == "ingested")
            log.info("Thesis pass re-ingested %d/%d links for %s", ok, len(refreshed), record_id)
        examples = [e for e in self.feedback.list(limit=50) if e.diligence_id != record_id]
        try:
            fit = await assess_thesis_fit(record, self.llm_factory(), self.settings.load_thesis(), examples)
        except LLMCallError as exc:
            raise DiligenceError(f"Thesis fit failed: {exc}") from exc
        return fit, self.store.update(record_id, {"thesis_fit": fit}), document_warnings(record.documents)

    def feedback_overview(self, diligence_id: str | None = None, limit: int = 200) -> dict[str, Any]:
        entries = self.feedback.list(diligence_id=diligence_id, limit=limit)
        return {"summary": summarize_feedback(entries), "entries": entries}

    # ------------------------------------------------------------------
    # CRM
    # ------------------------------------------------------------------

    async def search_deals(self, query: str) -> list[DealLookup]:
        crm = self.sync.require_crm()
        return await search_deals(crm, query, self.settings)

    async def lookup_deal(self, deal_id: str) -> DealLookup:
        deal = await lookup_deal(self.sync.require_crm(), deal_id, self.settings)
        if deal is None:
            raise NotFound(f"CRM deal not found: {deal_id}")
        return deal

    async def hubspot_preview(self, record_id: str) -> dict[str, Any]:
        record = self.store.get(record_id)
        preview = self.sync.preview_create(record)
        company = preview["company_properties"]
        existing = None
        warnings: list[str] = []
        if self.sync.configured:
            try:
                existing = await self.sync.find_company(company.get("name", ""),
                                                        company.get("domain") or extract_domain(record.company_url))
            except CRMError as exc:
                log.warning("Company lookup failed for preview of %s: %s", record_id, exc)
                warnings.append(f"Could not check for an existing CRM company: {exc}")
        return {
            **preview,
            "create_company": existing is None and not record.hubspot_company_id,
            "existing_company_id": existing.id if existing else record.hubspot_company_id,
            "existing_company_name": existing.prop("name") if existing else record.hubspot_company_name,
            "already_linked_deal_id": record.hubspot_deal_id,
            "warnings": warnings,
        }

    async def hubspot_create(self, record_id: str, body: CreateCommitRequest) -> DiligenceRecord:
        return await self.sync.create_and_link(record_id, body)

    async def hubspot_push(self, record_id: str, deal_stage: str | None = None) -> dict[str, Any]:
        return await self.sync.push_score(record_id, deal_stage)

    async def match_deals(self, body: MatchRequest) -> dict[str, Any]:
        return await rank_deals(body, self.store.list(), self.llm_factory())
