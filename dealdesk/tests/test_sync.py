"""Tests for the CRM write-through synchronizer against an in-memory CRM."""
from __future__ import annotations

import asyncio
from typing import Callable
from unittest.mock import AsyncMock

import pytest

from dealdesk.config import COMPANY_PROPERTY_MAP, Settings
from dealdesk.crm import CRMError, CrmObject, Pipeline, Stage
from dealdesk.errors import (
    ConfigurationMissing,
    InvalidInput,
    MalformedUpstreamResponse,
    NotFound,
    UpstreamWriteFailure,
)
from dealdesk.schemas import CreateCommitRequest, DiligenceScore, MetricValue, RecordUpdate
from dealdesk.storage import LocalBackend, RecordStore
from dealdesk.sync import CrmSynchronizer, build_company_description, extract_domain

_DEAL_PROPERTIES = {
    "dealname", "description", "pipeline", "dealstage", "amount", "hs_priority", "raise_amount",
    "committed_funding", "deal_valuation", "deal_terms", "current_runway", "post_runway_funding",
    "deal_lead", "diligence_link", "diligence_score", "diligence_date", "diligence_status",
    "diligence_data_quality", "diligence_recommendation", "closed_lost_reason",
}


class FakeCRM:
    """In-memory stand-in for the HubSpot client."""

    def __init__(self):
        self.deals: dict[str, dict[str, str]] = {}
        self.companies: dict[str, dict[str, str]] = {}
        self.associations: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, Callable[[dict], bool]] = {}
        self._next_id = 100

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _check(self, operation: str, properties: dict) -> None:
        rule = self.failures.get(operation)
        if rule is not None and rule(properties):
            raise CRMError(f"{operation}: HTTP 400: Property values were not valid", 400)

    async def get_deal(self, deal_id, properties):
        props = self.deals.get(deal_id)
        return CrmObject(id=deal_id, properties=dict(props)) if props is not None else None

    async def update_deal(self, deal_id, properties):
        self._check("update_deal", properties)
        self.calls.append(("update_deal", deal_id, dict(properties)))
        self.deals.setdefault(deal_id, {}).update(properties)

    async def create_deal(self, properties, company_id=None):
        deal_id = self._new_id()
        self.calls.append(("create_deal", deal_id, dict(properties)))
        self.deals[deal_id] = dict(properties)
        if company_id:
            self.associations[deal_id] = company_id
        return CrmObject(id=deal_id, properties=dict(properties))

    async def get_company(self, company_id, properties):
        props = self.companies.get(company_id)
        return CrmObject(id=company_id, properties=dict(props)) if props is not None else None

    async def update_company(self, company_id, properties):
        self._check("update_company", properties)
        self.calls.append(("update_company", company_id, dict(properties)))
        self.companies.setdefault(company_id, {}).update(properties)

    async def create_company(self, properties):
        company_id = "c" + self._new_id()
        self.calls.append(("create_company", company_id, dict(properties)))
        self.companies[company_id] = dict(properties)
        return CrmObject(id=company_id, properties=dict(properties))

    async def search_deals_by_name(self, name, limit=10):
        tokens = name.lower().split()
        found = [CrmObject(id=i, properties=dict(p)) for i, p in self.deals.items()
                 if all(t in p.get("dealname", "").lower() for t in tokens)]
        return found[:limit]

    async def search_companies(self, prop, operator, value, limit=5):
        def match(current: str) -> bool:
            if operator == "EQ":
                return current == value
            return value.lower() in current.lower()

        found = [CrmObject(id=i, properties=dict(p)) for i, p in self.companies.items() if match(p.get(prop, ""))]
        return found[:limit]

    async def associated_company_id(self, deal_id):
        return self.associations.get(deal_id)

    async def associate_deal_company(self, deal_id, company_id):
        self.calls.append(("associate", deal_id, company_id))
        self.associations[deal_id] = company_id

    async def list_pipelines(self):
        return [Pipeline(id="default", label="Sales Pipeline", stages=[
            Stage(id="qualifiedtobuy", label="Qualified"), Stage(id="ic", label="Investment Committee"),
        ])]

    async def property_names(self, object_type):
        return set(COMPANY_PROPERTY_MAP) if object_type == "companies" else set(_DEAL_PROPERTIES)


@pytest.fixture()
def crm() -> FakeCRM:
    fake = FakeCRM()
    fake.deals["1"] = {"dealname": "Acme", "dealstage": "qualifiedtobuy", "pipeline": "default"}
    fake.companies["c1"] = {"name": "Acme Inc", "domain": "acme.io", "industry": "Fintech"}
    fake.associations["1"] = "c1"
    return fake


@pytest.fixture()
def store(tmp_path) -> RecordStore:
    return RecordStore(LocalBackend(tmp_path))


@pytest.fixture()
def settings() -> Settings:
    return Settings(hubspot_portal_id="42", default_pipeline_id="default", default_stage_id="qualifiedtobuy",
                    app_url="http://dealdesk.test")


@pytest.fixture()
def sync(store, settings, crm) -> CrmSynchronizer:
    return CrmSynchronizer(store, settings, crm)


def _score() -> DiligenceScore:
    return DiligenceScore(overall=70, categories=[], scored_at="2026-01-01T00:00:00Z")


# ---------------------------------------------------------------------------
# Write-through update
# ---------------------------------------------------------------------------


class TestApplyUpdate:
    @pytest.mark.asyncio
    async def test_stage_failure_leaves_record_unchanged(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1", hubspot_company_id="c1")
        crm.failures["update_deal"] = lambda props: "dealstage" in props

        with pytest.raises(UpstreamWriteFailure) as exc_info:
            await sync.apply_update(record.id, RecordUpdate(priority="high", hubspot_deal_stage_id="ic"))

        error = exc_info.value
        assert error.status_code == 502
        assert error.field == "stage"
        assert error.committed == ["priority"]
        stored = store.get(record.id)
        assert stored.priority is None
        assert stored.hubspot_deal_stage_id is None
        assert stored.updated_at == record.updated_at

    @pytest.mark.asyncio
    async def test_stage_change_with_extra_properties(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1")
        outcome = await sync.apply_update(record.id, RecordUpdate(
            hubspot_deal_stage_id="ic", hubspot_pipeline_id="default",
            hubspot_deal_stage_properties={"closed_lost_reason": ["Price", " Timing "], "empty": ""},
        ))
        assert crm.calls == [("update_deal", "1", {
            "dealstage": "ic", "pipeline": "default", "closed_lost_reason": "Price;Timing",
        })]
        assert outcome.record.hubspot_deal_stage_id == "ic"

    @pytest.mark.asyncio
    async def test_unchanged_priority_is_not_written(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1", priority="high")
        await sync.apply_update(record.id, RecordUpdate(priority="high", notes="Met founders"))
        assert crm.calls == []
        assert store.get(record.id).notes == "Met founders"

    @pytest.mark.asyncio
    async def test_unlinked_record_is_local_only(self, sync, store, crm):
        record = store.create(company_name="Acme")
        outcome = await sync.apply_update(record.id, RecordUpdate(priority="low", industry="Health"))
        assert crm.calls == []
        assert outcome.record.priority == "low"
        assert outcome.record.industry == "Health"

    @pytest.mark.asyncio
    async def test_linked_record_requires_crm(self, store, settings):
        record = store.create(company_name="Acme", hubspot_deal_id="1")
        offline = CrmSynchronizer(store, settings, None)
        with pytest.raises(ConfigurationMissing):
            await offline.apply_update(record.id, RecordUpdate(priority="high"))

    @pytest.mark.asyncio
    async def test_industry_goes_to_company(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1", hubspot_company_id="c1")
        await sync.apply_update(record.id, RecordUpdate(industry="Insurtech"))
        assert crm.companies["c1"]["industry"] == "Insurtech"


class TestMetricWrites:
    @pytest.mark.asyncio
    async def test_deal_write(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1", hubspot_company_id="c1")
        outcome = await sync.apply_update(record.id, RecordUpdate(metrics={
            "funding_amount": MetricValue(value="$2M"), "valuation": MetricValue(value="$12,000,000"),
        }))
        assert crm.deals["1"]["raise_amount"] == "2000000"
        assert crm.deals["1"]["deal_valuation"] == "12"
        assert crm.companies["c1"]["funding_valuation"] == "12000000"
        assert outcome.warnings == []
        assert outcome.record.metrics["funding_amount"].value == "$2M"

    @pytest.mark.asyncio
    async def test_deal_failure_falls_back_to_company(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1")
        crm.failures["update_deal"] = lambda props: "raise_amount" in props
        outcome = await sync.apply_update(record.id, RecordUpdate(metrics={"funding_amount": MetricValue(value="$2M")}))
        assert crm.companies["c1"]["funding_amount"] == "2000000"
        assert len(outcome.warnings) == 1
        assert "wrote company fields instead" in outcome.warnings[0]
        assert outcome.record.metrics["funding_amount"].value == "$2M"

    @pytest.mark.asyncio
    async def test_company_failure_aborts(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1", hubspot_company_id="c1")
        crm.failures["update_deal"] = lambda props: True
        crm.failures["update_company"] = lambda props: True
        with pytest.raises(UpstreamWriteFailure) as exc_info:
            await sync.apply_update(record.id, RecordUpdate(metrics={"funding_amount": MetricValue(value="$2M")}))
        assert exc_info.value.field == "company metrics"
        assert store.get(record.id).metrics == {}

    @pytest.mark.asyncio
    async def test_non_crm_metrics_stay_local(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1", hubspot_company_id="c1")
        await sync.apply_update(record.id, RecordUpdate(metrics={"arr": MetricValue(value="$1.2M")}))
        assert crm.calls == []
        assert store.get(record.id).metrics["arr"].value == "$1.2M"


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


class TestLinking:
    @pytest.mark.asyncio
    async def test_link_pulls_company_snapshot(self, sync, store):
        record = store.create(company_name="Acme")
        outcome = await sync.apply_update(record.id, RecordUpdate(hubspot_deal_id=" 1 "))
        linked = outcome.record
        assert linked.hubspot_deal_id == "1"
        assert linked.hubspot_company_id == "c1"
        assert linked.hubspot_company_name == "Acme Inc"
        assert linked.hubspot_company_data.domain == "acme.io"

    @pytest.mark.asyncio
    async def test_unlink_clears_crm_fields(self, sync, store):
        record = store.create(company_name="Acme")
        await sync.apply_update(record.id, RecordUpdate(hubspot_deal_id="1"))
        outcome = await sync.apply_update(record.id, RecordUpdate(hubspot_deal_id=""))
        assert outcome.record.hubspot_deal_id is None
        assert outcome.record.hubspot_company_id is None
        assert outcome.record.hubspot_company_data is None

    @pytest.mark.asyncio
    async def test_link_schedules_rescore_for_scored_records(self, store, settings, crm):
        rescore = AsyncMock()
        sync = CrmSynchronizer(store, settings, crm, rescore=rescore)
        record = store.create(company_name="Acme", score=_score())
        await sync.apply_update(record.id, RecordUpdate(hubspot_deal_id="1"))
        for _ in range(3):
            await asyncio.sleep(0)
        rescore.assert_awaited_once_with(record.id)


class TestAutoLink:
    @pytest.mark.asyncio
    async def test_ambiguous(self, sync, store, crm):
        crm.deals = {"11": {"dealname": "Nova Robotics"}, "12": {"dealname": "Nova Labs"},
                     "13": {"dealname": "Nova Health"}}
        record = store.create(company_name="Nova")
        result = await sync.auto_link(record)
        assert result.status == "ambiguous"
        assert result.candidate_count == 3
        assert store.get(record.id).hubspot_deal_id is None

    @pytest.mark.asyncio
    async def test_single_exact_match_wins(self, sync, store, crm):
        crm.deals = {"11": {"dealname": "Nova Robotics"}, "12": {"dealname": "nova"}}
        crm.associations = {"12": "c1"}
        record = store.create(company_name="Nova")
        result = await sync.auto_link(record)
        assert result.status == "linked"
        assert result.deal_id == "12"
        stored = store.get(record.id)
        assert stored.hubspot_deal_id == "12"
        assert stored.hubspot_company_id == "c1"

    @pytest.mark.asyncio
    async def test_no_match_and_skips(self, sync, store, settings):
        assert (await sync.auto_link(store.create(company_name="Zeta"))).status == "no_match"
        linked = store.create(company_name="Acme", hubspot_deal_id="1")
        assert (await sync.auto_link(linked)).status == "skipped"
        offline = CrmSynchronizer(store, settings, None)
        assert (await offline.auto_link(store.create(company_name="Acme"))).status == "skipped"


# ---------------------------------------------------------------------------
# Create + link, score push, read overlay
# ---------------------------------------------------------------------------


class TestCreateAndLink:
    @pytest.mark.asyncio
    async def test_explicit_deal_is_updated_and_linked(self, sync, store, crm):
        record = store.create(company_name="Acme", metrics={"funding_amount": MetricValue(value="$2M")})
        linked = await sync.create_and_link(record.id, CreateCommitRequest(
            deal_id="1", deal_properties={"deal_valuation": "15"},
        ))
        assert not any(call[0] == "create_deal" for call in crm.calls)
        assert crm.deals["1"]["deal_valuation"] == "15"
        assert crm.deals["1"]["diligence_link"] == f"http://dealdesk.test/diligence/{record.id}"
        assert linked.hubspot_deal_id == "1"
        assert linked.hubspot_company_id == "c1"
        assert linked.hubspot_deal_stage_label == "Qualified"
        valuation = linked.metrics["valuation"]
        assert (valuation.value, valuation.source, valuation.source_detail) == ("15", "manual", "hubspot")

    @pytest.mark.asyncio
    async def test_explicit_deal_must_exist(self, sync, store):
        record = store.create(company_name="Acme")
        with pytest.raises(NotFound):
            await sync.create_and_link(record.id, CreateCommitRequest(deal_id="999"))

    @pytest.mark.asyncio
    async def test_creates_company_and_deal(self, sync, store, crm):
        record = store.create(company_name="Nova", company_url="https://www.nova.io", industry="Climate")
        linked = await sync.create_and_link(record.id, CreateCommitRequest())
        created = [call for call in crm.calls if call[0] in ("create_company", "create_deal")]
        assert [call[0] for call in created] == ["create_company", "create_deal"]
        company_id, deal_id = created[0][1], created[1][1]
        assert crm.companies[company_id]["domain"] == "nova.io"
        assert crm.deals[deal_id]["dealstage"] == "qualifiedtobuy"
        assert crm.associations[deal_id] == company_id
        assert linked.hubspot_deal_id == deal_id
        assert linked.industry == "Climate"

    @pytest.mark.asyncio
    async def test_missing_required_fields(self, sync, store):
        record = store.create(company_name="Acme")
        with pytest.raises(InvalidInput):
            await sync.create_and_link(record.id, CreateCommitRequest(deal_properties={"dealstage": " "}))

    def test_preview(self, sync, store):
        record = store.create(company_name="Acme", company_url="www.acme.io",
                              metrics={"valuation": MetricValue(value="$12M")})
        preview = sync.preview_create(record)
        assert preview["can_create"] is True
        assert preview["company_properties"]["domain"] == "acme.io"
        assert preview["deal_properties"]["deal_valuation"] == "12"
        assert preview["linked"] is False


class TestPushScore:
    @pytest.mark.asyncio
    async def test_requires_score(self, sync, store):
        record = store.create(company_name="Acme")
        with pytest.raises(InvalidInput):
            await sync.push_score(record.id)

    @pytest.mark.asyncio
    async def test_updates_existing_deal(self, sync, store, crm):
        record = store.create(company_name="Acme", hubspot_deal_id="1", score=_score(),
                              metrics={"arr": MetricValue(value="$1M")})
        result = await sync.push_score(record.id, deal_stage="ic")
        assert result["existed"] is True
        assert result["deal_id"] == "1"
        assert crm.deals["1"]["diligence_score"] == "70"
        assert crm.deals["1"]["dealstage"] == "ic"
        # not a defined deal property
        assert "diligence_arr" not in result["properties"]

    @pytest.mark.asyncio
    async def test_creates_deal_when_none_found(self, sync, store, crm):
        record = store.create(company_name="Zeta", score=_score())
        result = await sync.push_score(record.id)
        assert result["existed"] is False
        assert crm.deals[result["deal_id"]]["pipeline"] == "default"
        assert store.get(record.id).hubspot_deal_id == result["deal_id"]


@pytest.mark.asyncio
async def test_overlay_live_is_not_persisted(sync, store, crm):
    crm.deals["1"].update({"dealstage": "ic", "amount": "1500000", "raise_amount": "2000000"})
    record = store.create(company_name="Acme", hubspot_deal_id="1")
    unlinked = store.create(company_name="Beta")
    overlaid = await sync.overlay_live([record, unlinked])
    assert overlaid[0].hubspot_deal_stage_label == "Investment Committee"
    assert overlaid[0].hubspot_amount == "$1,500,000"
    assert overlaid[0].metrics["funding_amount"].value == "2000000"
    assert overlaid[1] == unlinked
    assert store.get(record.id).hubspot_deal_stage_id is None


@pytest.mark.asyncio
async def test_overlay_live_refreshes_company(sync, store, crm):
    linked = (await sync.apply_update(store.create(company_name="Acme").id,
                                      RecordUpdate(hubspot_deal_id="1"))).record
    crm.companies["c1"].update({"industry": "Healthcare", "funding_valuation": "25",
                                "current_commitments": "750000"})
    crm.deals["1"]["committed_funding"] = "500000"

    overlaid = (await sync.overlay_live([linked]))[0]
    assert overlaid.hubspot_company_data.industry == "Healthcare"
    assert overlaid.metrics["valuation"].value == "25"
    assert overlaid.metrics["committed"].value == "500000"
    assert store.get(linked.id).hubspot_company_data.industry == "Fintech"


@pytest.mark.asyncio
async def test_overlay_live_survives_bad_pipeline_payload(sync, store, crm):
    record = store.create(company_name="Acme", hubspot_deal_id="1")
    crm.list_pipelines = AsyncMock(side_effect=MalformedUpstreamResponse("Unexpected CRM response for pipelines"))
    assert await sync.overlay_live([record]) == [record]


@pytest.mark.asyncio
async def test_overlay_live_keeps_deal_when_company_fails(sync, store, crm):
    record = store.create(company_name="Acme", hubspot_deal_id="1")
    crm.associated_company_id = AsyncMock(side_effect=CRMError("associations: HTTP 500", 500))
    overlaid = (await sync.overlay_live([record]))[0]
    assert overlaid.hubspot_deal_stage_label == "Qualified"
    assert overlaid.hubspot_company_data is None


def test_domain_and_description_helpers(store):
    assert extract_domain("https://www.Acme.io/about") == "acme.io"
    assert extract_domain("acme.io") == "acme.io"
    assert extract_domain(None) == ""
    record = store.create(company_name="Acme", industry="Fintech", company_url="https://acme.io")
    assert build_company_description(record) == (
        "Acme is a company under diligence review in the Fintech space. Website: https://acme.io."
    )
