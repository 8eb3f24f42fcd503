"""CRM client boundary (HubSpot CRM v3 REST over httpx).

Every response is parsed into a pydantic DTO before anything reads it; a payload
that does not fit raises :class:`MalformedUpstreamResponse` instead of leaking
missing keys into the synchronizer.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from dealdesk.config import COMPANY_PROPERTY_MAP, Settings
from dealdesk.errors import ConfigurationMissing, MalformedUpstreamResponse
from dealdesk.schemas import CompanySnapshot, DealLookup
from dealdesk.utils import now_iso

log = logging.getLogger(__name__)

_TIMEOUT = 15.0
_MAX_ATTEMPTS = 4
_BACKOFF_BASE = 0.8
_BACKOFF_CAP = 7.0
_PROPERTY_CACHE_TTL = 300.0
_DEAL_TO_COMPANY_TYPE_ID = 5

T = TypeVar("T", bound=BaseModel)


class CRMError(Exception):
    """CRM call failed (transport error or non-2xx answer)."""
    def __init__(self, message: str, status_code: int = 0, retry_after: float | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429 or "rate limit" in str(self).lower()


# ---------------------------------------------------------------------------
# Response DTOs
# ---------------------------------------------------------------------------


class AssociationRef(BaseModel):
    id: str
    type: str | None = None


class AssociationPage(BaseModel):
    results: list[AssociationRef] = []


class CrmObject(BaseModel):
    id: str
    properties: dict[str, str | None] = {}
    associations: dict[str, AssociationPage] | None = None

    def prop(self, name: str) -> str:
        return (self.properties.get(name) or "").strip()


class SearchPage(BaseModel):
    total: int | None = None
    results: list[CrmObject] = []


class Stage(BaseModel):
    id: str
    label: str


class Pipeline(BaseModel):
    id: str
    label: str
    stages: list[Stage] = []


class PipelinePage(BaseModel):
    results: list[Pipeline] = []


class PropertyDef(BaseModel):
    name: str


class PropertyPage(BaseModel):
    results: list[PropertyDef] = []


def _parse(model: type[T], payload: Any, what: str) -> T:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedUpstreamResponse(f"Unexpected CRM response for {what}: {exc.error_count()} errors") from exc


# ---------------------------------------------------------------------------
# Client interface
# ---------------------------------------------------------------------------


class CRMClient(Protocol):
    async def get_deal(self, deal_id: str, properties: list[str]) -> CrmObject | None: ...
    async def update_deal(self, deal_id: str, properties: dict[str, str]) -> None: ...
    async def create_deal(self, properties: dict[str, str], company_id: str | None = None) -> CrmObject: ...
    async def get_company(self, company_id: str, properties: list[str]) -> CrmObject | None: ...
    async def update_company(self, company_id: str, properties: dict[str, str]) -> None: ...
    async def create_company(self, properties: dict[str, str]) -> CrmObject: ...
    async def search_deals_by_name(self, name: str, limit: int = 10) -> list[CrmObject]: ...
    async def search_companies(self, prop: str, operator: str, value: str, limit: int = 5) -> list[CrmObject]: ...
    async def associated_company_id(self, deal_id: str) -> str | None: ...
    async def associate_deal_company(self, deal_id: str, company_id: str) -> None: ...
    async def list_pipelines(self) -> list[Pipeline]: ...
    async def property_names(self, object_type: str) -> set[str]: ...


async def with_rate_limit_retry(
    operation: str,
    fn: Callable[[], Awaitable[Any]],
    *,
    max_attempts: int = _MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """Retry *fn* on rate limiting, honoring Retry-After, else exponential backoff with jitter."""
    attempt = 0
    while True:
        try:
            return await fn()
        except CRMError as exc:
            if not exc.rate_limited or attempt >= max_attempts - 1:
                raise
            backoff = exc.retry_after if exc.retry_after else _BACKOFF_BASE * (2 ** attempt)
            wait = min(backoff + random.uniform(0, 0.25), _BACKOFF_CAP)
            log.warning("CRM rate limit during %s; retrying in %.2fs (attempt %d/%d)",
                        operation, wait, attempt + 2, max_attempts)
            await sleep(wait)
            attempt += 1


class HubSpotClient:
    """HubSpot CRM v3 client. ``transport`` lets tests plug in ``httpx.MockTransport``."""

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.hubapi.com",
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not access_token:
            raise ConfigurationMissing("HubSpot is not configured", hint="Set HUBSPOT_ACCESS_TOKEN")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(_TIMEOUT),
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            transport=transport,
        )
        self._sleep = sleep
        self._property_cache: dict[str, tuple[float, set[str]]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> HubSpotClient:
        return cls(settings.hubspot_access_token, settings.hubspot_base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        async def once() -> Any:
            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                raise CRMError(f"{operation}: {exc}") from exc
            if resp.status_code == 204:
                return None
            if resp.status_code >= 400:
                raise _error_from_response(operation, resp)
            try:
                return resp.json()
            except ValueError as exc:
                raise MalformedUpstreamResponse(f"{operation}: response is not JSON") from exc

        return await with_rate_limit_retry(operation, once, sleep=self._sleep)

    async def _get_object(self, object_type: str, object_id: str, properties: list[str],
                          associations: str | None = None) -> CrmObject | None:
        params: dict[str, str] = {"properties": ",".join(p for p in properties if p), "archived": "false"}
        if associations:
            params["associations"] = associations
        try:
            payload = await self._request(f"get_{object_type}", "GET",
                                          f"/crm/v3/objects/{object_type}/{object_id}", params=params)
        except CRMError as exc:
            if exc.status_code == 404:
                return None
            raise
        return _parse(CrmObject, payload, f"{object_type} {object_id}")

    async def get_deal(self, deal_id: str, properties: list[str]) -> CrmObject | None:
        return await self._get_object("deals", deal_id, properties)

    async def update_deal(self, deal_id: str, properties: dict[str, str]) -> None:
        await self._request("update_deal", "PATCH", f"/crm/v3/objects/deals/{deal_id}",
                            json={"properties": properties})

    async def create_deal(self, properties: dict[str, str], company_id: str | None = None) -> CrmObject:
        body: dict[str, Any] = {"properties": properties}
        if company_id:
            body["associations"] = [{
                "to": {"id": company_id},
                "types": [{"associationCategory": "HUBSPOT_DEFINED",
                           "associationTypeId": _DEAL_TO_COMPANY_TYPE_ID}],
            }]
        payload = await self._request("create_deal", "POST", "/crm/v3/objects/deals", json=body)
        return _parse(CrmObject, payload, "created deal")

    async def get_company(self, company_id: str, properties: list[str]) -> CrmObject | None:
        return await self._get_object("companies", company_id, properties)

    async def update_company(self, company_id: str, properties: dict[str, str]) -> None:
        await self._request("update_company", "PATCH", f"/crm/v3/objects/companies/{company_id}",
                            json={"properties": properties})

    async def create_company(self, properties: dict[str, str]) -> CrmObject:
        payload = await self._request("create_company", "POST", "/crm/v3/objects/companies",
                                      json={"properties": properties})
        return _parse(CrmObject, payload, "created company")

    async def _search(self, object_type: str, prop: str, operator: str, value: str,
                      properties: list[str], limit: int) -> list[CrmObject]:
        body = {
            "filterGroups": [{"filters": [{"propertyName": prop, "operator": operator, "value": value}]}],
            "properties": properties,
            "limit": limit,
        }
        payload = await self._request(f"search_{object_type}", "POST",
                                      f"/crm/v3/objects/{object_type}/search", json=body)
        return _parse(SearchPage, payload, f"{object_type} search").results

    async def search_deals_by_name(self, name: str, limit: int = 10) -> list[CrmObject]:
        if not name.strip():
            return []
        return await self._search("deals", "dealname", "CONTAINS_TOKEN", name.strip(),
                                  ["dealname", "dealstage", "pipeline", "amount", "description"], limit)

    async def search_companies(self, prop: str, operator: str, value: str, limit: int = 5) -> list[CrmObject]:
        return await self._search("companies", prop, operator, value,
                                  ["name", "domain", "website", "description", "industry"], limit)

    async def associated_company_id(self, deal_id: str) -> str | None:
        deal = await self._get_object("deals", deal_id, ["dealname"], associations="companies")
        if deal is None or not deal.associations:
            return None
        page = deal.associations.get("companies")
        return page.results[0].id if page and page.results else None

    async def associate_deal_company(self, deal_id: str, company_id: str) -> None:
        await self._request("associate_deal_company", "PUT",
                            f"/crm/v4/objects/deals/{deal_id}/associations/default/companies/{company_id}")

    async def list_pipelines(self) -> list[Pipeline]:
        payload = await self._request("list_pipelines", "GET", "/crm/v3/pipelines/deals")
        return _parse(PipelinePage, payload, "pipelines").results

    async def property_names(self, object_type: str) -> set[str]:
        cached = self._property_cache.get(object_type)
        if cached and time.monotonic() - cached[0] < _PROPERTY_CACHE_TTL:
            return cached[1]
        payload = await self._request("property_names", "GET", f"/crm/v3/properties/{object_type}")
        names = {p.name for p in _parse(PropertyPage, payload, f"{object_type} properties").results}
        self._property_cache[object_type] = (time.monotonic(), names)
        return names


def _error_from_response(operation: str, resp: httpx.Response) -> CRMError:
    message = resp.text[:300]
    try:
        body = resp.json()
        if isinstance(body, dict) and body.get("message"):
            message = str(body["message"])
            if str(body.get("errorType", "")).lower() == "rate_limit":
                message = f"rate limit: {message}"
    except ValueError:
        pass
    retry_after = None
    raw = resp.headers.get("retry-after")
    if raw:
        try:
            retry_after = float(raw)
        except ValueError:
            retry_after = None
    if retry_after is not None and retry_after <= 0:
        retry_after = None
    return CRMError(f"{operation}: HTTP {resp.status_code}: {message}", resp.status_code, retry_after)


# ---------------------------------------------------------------------------
# DTO mapping
# ---------------------------------------------------------------------------


def display_amount(raw: str | None) -> str | None:
    """``"1234" -> "$1,234"``; non-numeric amounts are returned as-is."""
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return raw
    if value.is_integer():
        return f"${int(value):,}"
    return "$" + f"{value:,.3f}".rstrip("0").rstrip(".")


def _stage_maps(pipelines: list[Pipeline]) -> tuple[dict[str, str], dict[str, tuple[str, str, str]]]:
    pipeline_labels: dict[str, str] = {}
    stages: dict[str, tuple[str, str, str]] = {}
    for pipeline in pipelines:
        pipeline_labels[pipeline.id] = pipeline.label
        for stage in pipeline.stages:
            stages[stage.id] = (stage.label, pipeline.id, pipeline.label)
    return pipeline_labels, stages


def to_deal_lookup(deal: CrmObject, pipelines: list[Pipeline], settings: Settings) -> DealLookup:
    pipeline_labels, stages = _stage_maps(pipelines)
    fields = settings.deal_fields
    stage_id = deal.prop("dealstage") or None
    pipeline_id = deal.prop("pipeline") or None
    stage_info = stages.get(stage_id or "")
    return DealLookup(
        id=deal.id,
        name=deal.prop("dealname") or "Untitled Deal",
        stage_id=stage_id,
        stage_label=stage_info[0] if stage_info else stage_id,
        pipeline_id=pipeline_id or (stage_info[1] if stage_info else None),
        pipeline_label=pipeline_labels.get(pipeline_id or "") or (stage_info[2] if stage_info else None),
        amount=display_amount(deal.prop("amount")),
        priority=deal.prop(fields.priority) or None,
        raise_amount=deal.prop(fields.raise_amount) or None,
        committed_funding=deal.prop(fields.committed_funding) or None,
        deal_valuation=deal.prop(fields.valuation) or None,
        deal_terms=deal.prop(fields.deal_terms) or None,
        current_runway=deal.prop(fields.current_runway) or None,
        post_funding_runway=deal.prop(fields.post_funding_runway) or None,
        description=deal.prop("description"),
        url=settings.deal_url(deal.id),
    )


async def lookup_deal(crm: CRMClient, deal_id: str, settings: Settings) -> DealLookup | None:
    pipelines, deal = await asyncio.gather(
        crm.list_pipelines(),
        crm.get_deal(deal_id, settings.deal_fields.read_properties()),
    )
    if deal is None:
        return None
    return to_deal_lookup(deal, pipelines, settings)


async def search_deals(crm: CRMClient, query: str, settings: Settings, limit: int = 10) -> list[DealLookup]:
    if not query.strip():
        return []
    pipelines, deals = await asyncio.gather(crm.list_pipelines(), crm.search_deals_by_name(query, limit))
    return [to_deal_lookup(d, pipelines, settings) for d in deals]


def to_company_snapshot(company: CrmObject) -> CompanySnapshot:
    values = {field: company.prop(prop) for prop, field in COMPANY_PROPERTY_MAP.items()}
    return CompanySnapshot(company_id=company.id, fetched_at=now_iso(), **values)


async def associated_company_snapshot(crm: CRMClient, deal_id: str) -> CompanySnapshot | None:
    """Company linked to *deal_id*, or None when there is none."""
    company_id = await crm.associated_company_id(deal_id)
    if not company_id:
        return None
    company = await crm.get_company(company_id, list(COMPANY_PROPERTY_MAP))
    return to_company_snapshot(company) if company else None


async def compact_known_properties(crm: CRMClient, object_type: str, properties: dict[str, str]) -> dict[str, str]:
    """Drop empty values and property names the CRM does not define."""
    known = await crm.property_names(object_type)
    dropped = [k for k in properties if k not in known]
    if dropped:
        log.info("Skipping unknown %s properties: %s", object_type, ", ".join(sorted(dropped)))
    return {k: v for k, v in properties.items() if k in known and v != ""}
