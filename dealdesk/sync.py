"""CRM write-through synchronizer.

The CRM owns deal stage, pipeline, amount and (when linked) priority, industry
and the funding metrics. A local change to one of those fields is persisted
only after the CRM accepted it; a rejected write raises
:class:`UpstreamWriteFailure` and the stored record stays as it was. Writes
that already went through in the same request are not rolled back; the error
names them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from dealdesk.config import COMPANY_PROPERTY_MAP, Settings
from dealdesk.crm import (
    CRMClient,
    CRMError,
    CrmObject,
    associated_company_snapshot,
    compact_known_properties,
    to_company_snapshot,
    to_deal_lookup,
)
from dealdesk.errors import (
    ConfigurationMissing,
    InvalidInput,
    MalformedUpstreamResponse,
    NotFound,
    UpstreamWriteFailure,
)
from dealdesk.metrics import (
    build_company_metric_properties,
    build_deal_metric_properties,
    company_metric_values,
    deal_metric_values,
    fill_missing_metrics,
    metric_text,
    normalize_deal_runway,
    normalize_to_millions,
)
from dealdesk.schemas import (
    AutoLinkResult,
    CompanySnapshot,
    CreateCommitRequest,
    DealLookup,
    DiligenceRecord,
    MetricValue,
    RecordUpdate,
)
from dealdesk.storage import RecordStore
from dealdesk.utils import first_non_empty, now_iso

log = logging.getLogger(__name__)

# Metrics that have a CRM home (deal property, company fallback)
CRM_METRIC_KEYS = (
    "funding_amount", "committed", "valuation", "deal_terms",
    "current_runway", "post_funding_runway", "lead",
)
_REQUIRED_DEAL_FIELDS = ("dealname", "pipeline", "dealstage")

RescoreHook = Callable[[str], Awaitable[Any]]


@dataclass
class MetricWriteResult:
    deal_written: bool = False
    company_written: bool = False
    fell_back: bool = False
    deal_error: str = ""

    @property
    def message(self) -> str:
        if self.fell_back:
            return f"CRM deal metric update failed ({self.deal_error}); wrote company fields instead"
        if self.deal_written and self.company_written:
            return "Metrics written to CRM deal and company"
        if self.deal_written:
            return "Metrics written to CRM deal"
        if self.company_written:
            return "Metrics written to CRM company"
        return ""


@dataclass
class UpdateOutcome:
    record: DiligenceRecord
    warnings: list[str] = field(default_factory=list)


def extract_domain(url: str | None) -> str:
    if not url:
        return ""
    raw = url if "://" in url else f"https://{url}"
    host = (urlparse(raw).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def build_company_description(record: DiligenceRecord) -> str:
    explicit = first_non_empty(
        record.hubspot_company_data.description if record.hubspot_company_data else None,
        record.company_description,
        record.company_one_liner,
    )
    if explicit:
        return explicit
    industry = first_non_empty(record.industry,
                               record.hubspot_company_data.industry if record.hubspot_company_data else None)
    website = first_non_empty(record.company_url)
    text = f"{record.company_name} is a company under diligence review"
    text += f" in the {industry} space." if industry else "."
    if website:
        text += f" Website: {website}."
    return text[:980]


def _stage_property_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ";".join(str(v).strip() for v in value if str(v).strip())
    if value is None:
        return ""
    return str(value).strip()


class CrmSynchronizer:
    def __init__(
        self,
        store: RecordStore,
        settings: Settings,
        crm: CRMClient | None,
        rescore: RescoreHook | None = None,
    ):
        self.store = store
        self.settings = settings
        self.crm = crm
        self.rescore = rescore
        self._background: set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return self.crm is not None

    def require_crm(self) -> CRMClient:
        if self.crm is None:
            raise ConfigurationMissing("HubSpot is not configured", hint="Set HUBSPOT_ACCESS_TOKEN")
        return self.crm

    # ------------------------------------------------------------------
    # Write-through update
    # ------------------------------------------------------------------

    async def apply_update(self, record_id: str, patch: RecordUpdate) -> UpdateOutcome:
        """Apply a partial update: CRM writes first (priority, stage, metrics, industry), then local merge."""
        record = self.store.get(record_id)
        fields = patch.model_dump(exclude_unset=True)
        stage_properties = fields.pop("hubspot_deal_stage_properties", None) or {}
        warnings: list[str] = []
        committed: list[str] = []

        linking = "hubspot_deal_id" in fields
        if linking:
            fields["hubspot_deal_id"] = (fields["hubspot_deal_id"] or "").strip() or None
            linking = fields["hubspot_deal_id"] != record.hubspot_deal_id
        deal_id = fields["hubspot_deal_id"] if "hubspot_deal_id" in fields else record.hubspot_deal_id
        company_id = record.hubspot_company_id if not linking else None

        if "priority" in fields and (fields["priority"] or "") != (record.priority or "") and deal_id:
            crm = self.require_crm()
            try:
                await crm.update_deal(deal_id, {self.settings.deal_fields.priority: fields["priority"] or ""})
            except CRMError as exc:
                raise UpstreamWriteFailure("priority", str(exc), committed) from exc
            committed.append("priority")

        stage_id = fields.get("hubspot_deal_stage_id")
        if stage_id and (stage_id != record.hubspot_deal_stage_id or stage_properties) and deal_id:
            crm = self.require_crm()
            props = {"dealstage": stage_id}
            if fields.get("hubspot_pipeline_id"):
                props["pipeline"] = fields["hubspot_pipeline_id"]
            for name, value in stage_properties.items():
                text = _stage_property_value(value)
                if text:
                    props[str(name)] = text
            try:
                await crm.update_deal(deal_id, props)
            except CRMError as exc:
                raise UpstreamWriteFailure("stage", str(exc), committed) from exc
            committed.append("stage")

        if "metrics" in fields and fields["metrics"] is not None:
            new_metrics = {k: MetricValue.model_validate(v) for k, v in fields["metrics"].items()}
            changed = [k for k in CRM_METRIC_KEYS
                       if metric_text(new_metrics, k) != metric_text(record.metrics, k)]
            if changed and (deal_id or company_id):
                if deal_id and not company_id and self.crm is not None:
                    company_id = await self._associated_company_id(deal_id)
                result = await self.write_metrics(new_metrics, deal_id=deal_id, company_id=company_id,
                                                  committed=committed)
                if result.fell_back:
                    warnings.append(result.message)
                elif result.message:
                    log.info("%s for %s", result.message, record_id)
                committed.append("metrics")

        industry = fields.get("industry")
        if "industry" in fields and (industry or "") != (record.industry or "") and company_id:
            crm = self.require_crm()
            try:
                await crm.update_company(company_id, {"industry": industry or ""})
            except CRMError as exc:
                raise UpstreamWriteFailure("industry", str(exc), committed) from exc
            committed.append("industry")

        snapshot_pulled = False
        if linking:
            if deal_id is None:
                fields.update(hubspot_company_id=None, hubspot_company_name=None, hubspot_company_data=None,
                              hubspot_deal_stage_id=None, hubspot_deal_stage_label=None,
                              hubspot_pipeline_id=None, hubspot_pipeline_label=None, hubspot_amount=None)
            elif self.crm is not None:
                try:
                    snapshot = await associated_company_snapshot(self.crm, deal_id)
                except CRMError as exc:
                    log.warning("Could not pull company for deal %s: %s", deal_id, exc)
                    warnings.append(f"Linked deal, but the CRM company could not be loaded: {exc}")
                    snapshot = None
                fields.update(
                    hubspot_company_id=snapshot.company_id if snapshot else None,
                    hubspot_company_name=snapshot.name if snapshot else None,
                    hubspot_company_data=snapshot,
                    hubspot_synced_at=now_iso(),
                )
                snapshot_pulled = snapshot is not None

        updated = self.store.update(record_id, fields)
        if committed:
            log.info("CRM write-through for %s: %s", record_id, ", ".join(committed))
        if snapshot_pulled and updated.score is not None:
            self.schedule_rescore(record_id)
        return UpdateOutcome(record=updated, warnings=warnings)

    async def _associated_company_id(self, deal_id: str) -> str | None:
        try:
            return await self.require_crm().associated_company_id(deal_id)
        except CRMError as exc:
            log.warning("Could not resolve company for deal %s: %s", deal_id, exc)
            return None

    async def write_metrics(
        self,
        metrics: dict[str, MetricValue],
        *,
        deal_id: str | None,
        company_id: str | None,
        committed: list[str] | None = None,
    ) -> MetricWriteResult:
        """Deal properties first; company properties always, with the deal fields added when the
        deal is missing or rejected the write."""
        crm = self.require_crm()
        committed = committed if committed is not None else []
        result = MetricWriteResult()
        if deal_id:
            deal_props = build_deal_metric_properties(metrics, self.settings.deal_fields)
            lead = metric_text(metrics, "lead")
            if lead:
                deal_props[self.settings.deal_fields.lead] = lead
            if deal_props:
                try:
                    await crm.update_deal(deal_id, deal_props)
                    result.deal_written = True
                except CRMError as exc:
                    log.warning("Deal metric write failed for %s, falling back to company: %s", deal_id, exc)
                    result.deal_error = str(exc)

        needs_fallback = not deal_id or bool(result.deal_error)
        company_props = build_company_metric_properties(metrics, include_deal_fields=needs_fallback)
        if company_id and company_props:
            try:
                await crm.update_company(company_id, company_props)
            except CRMError as exc:
                done = committed + (["deal metrics"] if result.deal_written else [])
                raise UpstreamWriteFailure("company metrics", str(exc), done) from exc
            result.company_written = True
            result.fell_back = bool(result.deal_error)
        elif result.deal_error:
            raise UpstreamWriteFailure("deal metrics", result.deal_error, committed)
        return result

    def schedule_rescore(self, record_id: str) -> None:
        """Best-effort full rescore in the background; failures are only logged."""
        if self.rescore is None:
            return

        async def run() -> None:
            try:
                await self.rescore(record_id)
            except Exception as exc:
                log.warning("Background rescore failed for %s: %s", record_id, exc)

        task = asyncio.create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def overlay_live(self, records: list[DiligenceRecord]) -> list[DiligenceRecord]:
        """Records with live CRM deal and company data overlaid (not persisted)."""
        linked = [r for r in records if r.hubspot_deal_id]
        if self.crm is None or not linked:
            return records
        crm = self.crm
        try:
            pipelines = await crm.list_pipelines()
        except (CRMError, MalformedUpstreamResponse) as exc:
            log.warning("CRM overlay skipped, pipelines unavailable: %s", exc)
            return records
        deals, companies = await asyncio.gather(
            asyncio.gather(
                *(crm.get_deal(r.hubspot_deal_id, self.settings.deal_fields.read_properties()) for r in linked),
                return_exceptions=True,
            ),
            asyncio.gather(
                *(associated_company_snapshot(crm, r.hubspot_deal_id) for r in linked),
                return_exceptions=True,
            ),
        )
        overlaid: dict[str, DiligenceRecord] = {}
        for record, deal, company in zip(linked, deals, companies):
            if isinstance(company, Exception):
                log.warning("CRM company overlay failed for %s: %s", record.id, company)
                company = None
            if isinstance(deal, Exception):
                log.warning("CRM overlay failed for %s: %s", record.id, deal)
            elif deal is not None:
                overlaid[record.id] = self._overlay(record, deal, pipelines, company)
        return [overlaid.get(r.id, r) for r in records]

    def _overlay(
        self, record: DiligenceRecord, deal: CrmObject, pipelines, company: CompanySnapshot | None = None,
    ) -> DiligenceRecord:
        lookup = to_deal_lookup(deal, pipelines, self.settings)
        metrics = fill_missing_metrics(record.metrics, deal_metric_values(deal.properties, self.settings.deal_fields))
        update: dict[str, Any] = {
            "hubspot_deal_stage_id": lookup.stage_id,
            "hubspot_deal_stage_label": lookup.stage_label,
            "hubspot_pipeline_id": lookup.pipeline_id,
            "hubspot_pipeline_label": lookup.pipeline_label,
            "hubspot_amount": lookup.amount,
            "hubspot_synced_at": now_iso(),
            "priority": record.priority or lookup.priority,
        }
        if company is not None:
            update["hubspot_company_id"] = company.company_id
            update["hubspot_company_name"] = company.name or record.hubspot_company_name
            update["hubspot_company_data"] = company
            metrics = fill_missing_metrics(metrics, company_metric_values(company))
        update["metrics"] = metrics
        return record.model_copy(update=update)

    async def auto_link(self, record: DiligenceRecord) -> AutoLinkResult:
        """Link an unlinked record to its CRM deal when the name match is unambiguous."""
        if record.hubspot_deal_id:
            return AutoLinkResult(status="skipped", deal_id=record.hubspot_deal_id, message="Already linked")
        if self.crm is None:
            return AutoLinkResult(status="skipped", message="HubSpot is not configured")
        name = record.company_name.strip()
        try:
            candidates = await self.crm.search_deals_by_name(name, 10)
        except CRMError as exc:
            log.warning("Auto-link search failed for %s: %s", record.id, exc)
            return AutoLinkResult(status="error", message=str(exc))

        exact = [d for d in candidates if d.prop("dealname").lower() == name.lower()]
        if len(exact) == 1:
            chosen = exact[0]
        elif not exact and len(candidates) == 1:
            chosen = candidates[0]
        elif not candidates:
            return AutoLinkResult(status="no_match")
        else:
            count = len(exact) if len(exact) > 1 else len(candidates)
            return AutoLinkResult(status="ambiguous", candidate_count=count,
                                  message=f"{count} CRM deals match {name!r}")

        try:
            snapshot = await associated_company_snapshot(self.crm, chosen.id)
        except CRMError as exc:
            log.warning("Auto-link company pull failed for deal %s: %s", chosen.id, exc)
            snapshot = None
        self.store.update(record.id, {
            "hubspot_deal_id": chosen.id,
            "hubspot_company_id": snapshot.company_id if snapshot else None,
            "hubspot_company_name": snapshot.name if snapshot else None,
            "hubspot_company_data": snapshot,
            "hubspot_synced_at": now_iso(),
        })
        log.info("Auto-linked %s to CRM deal %s", record.id, chosen.id)
        return AutoLinkResult(status="linked", deal_id=chosen.id, candidate_count=len(candidates))

    # ------------------------------------------------------------------
    # Create + link
    # ------------------------------------------------------------------

    def preview_create(self, record: DiligenceRecord, company_overrides: dict[str, str] | None = None,
                       deal_overrides: dict[str, str] | None = None) -> dict[str, Any]:
        """Company/deal payloads ``create_and_link`` would send, plus missing required deal fields."""
        snap = record.hubspot_company_data
        fields = self.settings.deal_fields
        description = build_company_description(record)
        company = {
            "name": first_non_empty(snap.name if snap else None, record.company_name),
            "website": first_non_empty(snap.website if snap else None, record.company_url),
            "domain": first_non_empty(snap.domain if snap else None,
                                      extract_domain(first_non_empty(snap.website if snap else None,
                                                                      record.company_url))),
            "description": description,
            "industry": first_non_empty(record.industry, snap.industry if snap else None),
        }
        deal = {
            "dealname": record.company_name,
            "description": description,
            "pipeline": record.hubspot_pipeline_id or self.settings.default_pipeline_id,
            "dealstage": record.hubspot_deal_stage_id or self.settings.default_stage_id,
            "amount": record.hubspot_amount or "",
            fields.priority: record.priority or "",
            fields.raise_amount: first_non_empty(metric_text(record.metrics, "funding_amount"),
                                                 snap.funding_amount if snap else None),
            fields.committed_funding: first_non_empty(metric_text(record.metrics, "committed"),
                                                      snap.current_commitments if snap else None),
            fields.valuation: normalize_to_millions(first_non_empty(metric_text(record.metrics, "valuation"),
                                                                    snap.funding_valuation if snap else None)),
            fields.deal_terms: metric_text(record.metrics, "deal_terms"),
            fields.current_runway: normalize_deal_runway(first_non_empty(
                metric_text(record.metrics, "current_runway"), snap.current_runway if snap else None)),
            fields.post_funding_runway: normalize_deal_runway(first_non_empty(
                metric_text(record.metrics, "post_funding_runway"), snap.post_funding_runway if snap else None)),
            fields.lead: metric_text(record.metrics, "lead"),
        }
        company.update({k: str(v).strip() for k, v in (company_overrides or {}).items()})
        deal.update({k: str(v).strip() for k, v in (deal_overrides or {}).items()})
        missing = [f for f in _REQUIRED_DEAL_FIELDS if not deal.get(f)]
        return {
            "company_properties": company,
            "deal_properties": deal,
            "missing_fields": missing,
            "can_create": not missing,
            "linked": bool(record.hubspot_deal_id),
        }

    async def find_company(self, name: str, domain: str) -> CrmObject | None:
        crm = self.require_crm()
        if domain:
            found = await crm.search_companies("domain", "EQ", domain, limit=1)
            if found:
                return found[0]
        if name:
            found = await crm.search_companies("name", "CONTAINS_TOKEN", name, limit=5)
            exact = next((c for c in found if c.prop("name").lower() == name.lower()), None)
            return exact or (found[0] if found else None)
        return None

    async def _find_existing_deal(self, record: DiligenceRecord, explicit_id: str | None) -> CrmObject | None:
        crm = self.require_crm()
        props = self.settings.deal_fields.read_properties()
        for deal_id in (explicit_id, record.hubspot_deal_id):
            if deal_id:
                deal = await crm.get_deal(deal_id, props)
                if deal is not None:
                    return deal
                if deal_id == explicit_id:
                    raise NotFound(f"CRM deal not found: {deal_id}")
        candidates = await crm.search_deals_by_name(record.company_name, 10)
        if not candidates:
            return None
        best = next((d for d in candidates if d.prop("dealname").lower() == record.company_name.lower()),
                    candidates[0])
        return await crm.get_deal(best.id, props)

    async def create_and_link(self, record_id: str, request: CreateCommitRequest) -> DiligenceRecord:
        """Find or create the CRM company and deal, link them, and pull the result back."""
        crm = self.require_crm()
        record = self.store.get(record_id)
        preview = self.preview_create(record, request.company_properties, request.deal_properties)
        if not preview["can_create"]:
            raise InvalidInput(f"Missing required deal fields: {', '.join(preview['missing_fields'])}")
        company_props: dict[str, str] = preview["company_properties"]
        deal_props: dict[str, str] = preview["deal_properties"]
        deal_props.setdefault("diligence_link", self.settings.diligence_link(record_id))
        if not deal_props["diligence_link"]:
            deal_props["diligence_link"] = self.settings.diligence_link(record_id)

        try:
            existing_deal = await self._find_existing_deal(record, (request.deal_id or "").strip() or None)
            company = None
            if record.hubspot_company_id:
                company = await crm.get_company(record.hubspot_company_id, list(COMPANY_PROPERTY_MAP))
            if company is None and existing_deal is not None:
                associated = await crm.associated_company_id(existing_deal.id)
                if associated:
                    company = await crm.get_company(associated, list(COMPANY_PROPERTY_MAP))
            if company is None:
                company = await self.find_company(company_props.get("name", ""), company_props.get("domain", ""))

            if company is None:
                company = await crm.create_company(await compact_known_properties(crm, "companies", company_props))
                log.info("Created CRM company %s for %s", company.id, record_id)
            else:
                updates = {}
                if not company.prop("description") and company_props.get("description"):
                    updates["description"] = company_props["description"]
                if company_props.get("industry") and company.prop("industry") != company_props["industry"]:
                    updates["industry"] = company_props["industry"]
                if updates:
                    await crm.update_company(company.id, await compact_known_properties(crm, "companies", updates))

            safe_deal = await compact_known_properties(crm, "deals", deal_props)
            if existing_deal is not None:
                await crm.update_deal(existing_deal.id, safe_deal)
                deal_id = existing_deal.id
            else:
                deal_id = (await crm.create_deal(safe_deal, company_id=company.id)).id
                log.info("Created CRM deal %s for %s", deal_id, record_id)
            if await crm.associated_company_id(deal_id) != company.id:
                await crm.associate_deal_company(deal_id, company.id)

            pipelines = await crm.list_pipelines()
            pulled = await crm.get_deal(deal_id, self.settings.deal_fields.read_properties())
            pulled_company = await crm.get_company(company.id, list(COMPANY_PROPERTY_MAP))
        except CRMError as exc:
            raise UpstreamWriteFailure("create", str(exc)) from exc

        lookup = to_deal_lookup(pulled, pipelines, self.settings) if pulled else None
        snapshot = to_company_snapshot(pulled_company) if pulled_company else record.hubspot_company_data
        fields = self.settings.deal_fields
        overrides = request.deal_properties
        returned = pulled.properties if pulled else {}
        snap = snapshot

        def chain(*candidates: Any) -> str:
            return first_non_empty(*candidates)

        resolved = {
            "current_runway": chain(overrides.get(fields.current_runway), overrides.get("current_runway"),
                                    overrides.get("runway"), returned.get(fields.current_runway),
                                    snap.current_runway if snap else None,
                                    metric_text(record.metrics, "current_runway")),
            "post_funding_runway": chain(overrides.get(fields.post_funding_runway),
                                         overrides.get("post_runway_funding"), overrides.get("post_funding_runway"),
                                         returned.get(fields.post_funding_runway),
                                         snap.post_funding_runway if snap else None,
                                         metric_text(record.metrics, "post_funding_runway")),
            "funding_amount": chain(overrides.get(fields.raise_amount), overrides.get("raise_amount"),
                                    returned.get(fields.raise_amount), snap.funding_amount if snap else None,
                                    metric_text(record.metrics, "funding_amount")),
            "committed": chain(overrides.get(fields.committed_funding), overrides.get("committed_funding"),
                               returned.get(fields.committed_funding), snap.current_commitments if snap else None,
                               metric_text(record.metrics, "committed")),
            "valuation": chain(overrides.get(fields.valuation), overrides.get("deal_valuation"),
                               returned.get(fields.valuation), snap.funding_valuation if snap else None,
                               metric_text(record.metrics, "valuation")),
            "deal_terms": chain(overrides.get(fields.deal_terms), overrides.get("deal_terms"),
                                returned.get(fields.deal_terms), metric_text(record.metrics, "deal_terms")),
            "lead": chain(overrides.get(fields.lead), overrides.get("deal_lead"), returned.get(fields.lead),
                          snap.lead_information if snap else None, metric_text(record.metrics, "lead")),
        }
        priority = chain(overrides.get(fields.priority), overrides.get("hs_priority"),
                         returned.get(fields.priority), record.priority)
        stamp = now_iso()
        metrics = dict(record.metrics)
        for key, value in resolved.items():
            if value:
                metrics[key] = MetricValue(value=value, source="manual", source_detail="hubspot", updated_at=stamp)

        return self.store.update(record_id, {
            "hubspot_deal_id": deal_id,
            "hubspot_deal_stage_id": lookup.stage_id if lookup else None,
            "hubspot_deal_stage_label": lookup.stage_label if lookup else None,
            "hubspot_pipeline_id": lookup.pipeline_id if lookup else None,
            "hubspot_pipeline_label": lookup.pipeline_label if lookup else None,
            "hubspot_amount": lookup.amount if lookup else None,
            "hubspot_synced_at": stamp,
            "hubspot_company_id": company.id,
            "hubspot_company_name": (snapshot.name if snapshot else None) or record.hubspot_company_name,
            "hubspot_company_data": snapshot,
            "priority": priority or None,
            "metrics": metrics,
            "industry": chain(request.company_properties.get("industry"),
                              snapshot.industry if snapshot else None, record.industry) or None,
        })

    # ------------------------------------------------------------------
    # Score push
    # ------------------------------------------------------------------

    async def push_score(self, record_id: str, deal_stage: str | None = None) -> dict[str, Any]:
        """Write the diligence score and metrics to the CRM deal, creating one when none is found."""
        crm = self.require_crm()
        record = self.store.get(record_id)
        if record.score is None:
            raise InvalidInput("Cannot sync diligence without a score")
        fields = self.settings.deal_fields
        try:
            existing = await self._find_existing_deal(record, None)
            description = first_non_empty(
                existing.prop("description") if existing else None,
                record.company_one_liner, record.recommendation,
                f"Diligence completed on {record.score.scored_at[:10]}",
            )
            props: dict[str, str] = {
                "dealname": record.company_name,
                "description": description,
                "diligence_score": str(record.score.overall),
                "diligence_date": record.score.scored_at,
                "diligence_status": record.status,
                "diligence_link": self.settings.diligence_link(record_id),
                "diligence_data_quality": str(record.score.data_quality),
                "diligence_arr": metric_text(record.metrics, "arr"),
                "diligence_tam": metric_text(record.metrics, "tam"),
                "diligence_acv": metric_text(record.metrics, "acv"),
                "diligence_recommendation": record.recommendation or "",
                fields.priority: record.priority or "",
                **build_deal_metric_properties(record.metrics, fields),
            }
            if deal_stage and deal_stage.strip():
                props["dealstage"] = deal_stage.strip()
            if record.decision_outcome:
                props["investment_decision"] = record.decision_outcome.decision
                if record.decision_outcome.decision_reason:
                    props["decision_reason"] = record.decision_outcome.decision_reason
            if record.company_url:
                props["website"] = record.company_url

            safe = await compact_known_properties(crm, "deals", props)
            if existing is not None:
                await crm.update_deal(existing.id, safe)
                deal_id = existing.id
            else:
                create_props = dict(safe)
                create_props["dealstage"] = (deal_stage or "").strip() or self.settings.default_stage_id
                create_props["pipeline"] = self.settings.default_pipeline_id
                deal_id = (await crm.create_deal(create_props)).id
        except CRMError as exc:
            raise UpstreamWriteFailure("score", str(exc)) from exc

        self.store.update(record_id, {"hubspot_deal_id": deal_id, "hubspot_synced_at": now_iso()})
        log.info("Pushed score %d for %s to CRM deal %s", record.score.overall, record_id, deal_id)
        return {
            "deal_id": deal_id,
            "deal_url": self.settings.deal_url(deal_id),
            "existed": existing is not None,
            "properties": sorted(safe),
        }

    async def lookup(self, deal_id: str) -> DealLookup:
        crm = self.require_crm()
        pipelines, deal = await asyncio.gather(
            crm.list_pipelines(), crm.get_deal(deal_id, self.settings.deal_fields.read_properties()),
        )
        if deal is None:
            raise NotFound(f"CRM deal not found: {deal_id}")
        return to_deal_lookup(deal, pipelines, self.settings)
