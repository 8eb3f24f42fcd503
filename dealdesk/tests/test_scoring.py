"""Tests for score aggregation, overrides, the evidence policy and the scoring orchestrator."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from dealdesk.config import CriteriaConfig
from dealdesk.errors import InvalidInput, NotFound
from dealdesk.parser import PDF_MINIMAL_TEXT
from dealdesk.schemas import (
    CategoryScore,
    Criterion,
    CriterionScore,
    DiligenceDocument,
    DiligenceScore,
    MetricValue,
)
from dealdesk.scoring import (
    METRICS_PROMPT,
    NO_EVIDENCE_PLACEHOLDER,
    Orchestrator,
    apply_category_override,
    apply_criterion_override,
    apply_evidence_policy,
    compute_data_quality,
    compute_overall,
    recalculate,
    remove_category_override,
    select_scoring_documents,
)
from dealdesk.storage import LocalBackend, RecordStore


def _score(*categories: CategoryScore) -> DiligenceScore:
    return recalculate(DiligenceScore(overall=0, categories=list(categories), scored_at="2026-01-01T00:00:00Z"))


def _criterion(name: str, score: int, **kwargs) -> CriterionScore:
    return CriterionScore(name=name, score=score, **kwargs)


# ---------------------------------------------------------------------------
# Aggregation + overrides
# ---------------------------------------------------------------------------


class TestAggregation:
    def test_weighted_overall(self):
        score = _score(
            CategoryScore(category="Team", score=80, weight=60),
            CategoryScore(category="Market", score=50, weight=40),
        )
        assert score.overall == 68
        assert [c.weighted_score for c in score.categories] == [48.0, 20.0]

    def test_weights_are_normalized(self):
        categories = [CategoryScore(category="A", score=70, weight=30), CategoryScore(category="B", score=40, weight=30)]
        assert compute_overall(categories) == 55

    def test_zero_weight(self):
        assert compute_overall([CategoryScore(category="A", score=70, weight=0)]) == 0


class TestOverrides:
    def test_category_override_moves_overall(self):
        score = _score(
            CategoryScore(category="Team", score=80, weight=60),
            CategoryScore(category="Market", score=50, weight=40),
        )
        overridden = apply_category_override(score, "Market", 90, reason=" Strong pull ", suppress_topics=["TAM"])
        market = overridden.categories[1]
        assert overridden.overall == 84
        assert market.score == 50
        assert market.manual_override == 90
        assert market.override_reason == "Strong pull"
        assert market.override_suppress_topics == ["TAM"]

        cleared = remove_category_override(overridden, "Market")
        assert cleared.overall == 68
        assert cleared.categories[1].manual_override is None

    @pytest.mark.parametrize("value", [-1, 101, 50.5, True])
    def test_invalid_override_values(self, value):
        score = _score(CategoryScore(category="Team", score=80, weight=100))
        with pytest.raises(InvalidInput):
            apply_category_override(score, "Team", value)

    def test_unknown_category(self):
        with pytest.raises(NotFound):
            apply_category_override(_score(CategoryScore(category="Team", score=80, weight=100)), "Moat", 50)

    def test_criterion_override_recomputes_category(self):
        score = _score(CategoryScore(
            category="Team", score=60, weight=100,
            criteria=[_criterion("Founders", 70), _criterion("Hiring", 50)],
        ))
        overridden = apply_criterion_override(score, "Team", "Hiring", 90)
        assert overridden.categories[0].score == 80
        assert overridden.overall == 80
        with pytest.raises(NotFound):
            apply_criterion_override(score, "Team", "Board", 10)


# ---------------------------------------------------------------------------
# Evidence policy
# ---------------------------------------------------------------------------


class TestEvidencePolicy:
    def test_unknown_uses_default_cap(self):
        assert apply_evidence_policy(_criterion("x", 90, evidence_status="unknown")).score == 60

    def test_unknown_uses_configured_cap(self):
        config = Criterion(name="x", insufficient_evidence_cap=55)
        assert apply_evidence_policy(_criterion("x", 90, evidence_status="unknown"), config).score == 55

    def test_contradicted(self):
        assert apply_evidence_policy(_criterion("x", 90, evidence_status="contradicted")).score == 40

    def test_weak_without_evidence(self):
        weak = _criterion("x", 90, evidence_status="weakly_supported", evidence=[NO_EVIDENCE_PLACEHOLDER])
        assert apply_evidence_policy(weak).score == 70
        quoted = _criterion("x", 90, evidence_status="weakly_supported", evidence=["ARR $1.2M"])
        assert apply_evidence_policy(quoted).score == 90

    def test_supported_and_low_scores_untouched(self):
        assert apply_evidence_policy(_criterion("x", 95, evidence_status="supported")).score == 95
        assert apply_evidence_policy(_criterion("x", 20, evidence_status="unknown")).score == 20


def test_data_quality_discounts_unknowns():
    categories = [CategoryScore(category="A", score=50, weight=100, criteria=[
        _criterion("a", 50, confidence=80, evidence_status="supported"),
        _criterion("b", 50, confidence=80, evidence_status="unknown"),
    ])]
    assert compute_data_quality(categories) == 60
    assert compute_data_quality([]) == 0


def test_unreadable_and_failed_links_are_not_scored():
    docs = [
        DiligenceDocument(id="1", name="deck", extracted_text="Acme grows 20% month over month " * 5),
        DiligenceDocument(id="2", name="scan", extracted_text=PDF_MINIMAL_TEXT),
        DiligenceDocument(id="3", name="link", external_url="https://x.test", link_ingest_status="failed",
                          extracted_text="External document link: https://x.test"),
    ]
    assert [d.id for d in select_scoring_documents(docs)] == ["1"]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

_CRITERIA = """
categories:
  - name: Team
    weight: 60
    criteria:
      - name: Founders
  - name: Market
    weight: 40
    criteria:
      - name: Size
"""


async def _fake_call(system: str, user: str) -> dict:
    if system == METRICS_PROMPT:
        return {"metrics": {"arr": "$1.2M", "unknown_key": "x"}}
    if "## Category: Team" in user:
        return {"score": 80, "criteria": [{"name": "Founders", "score": 80, "evidence": ["Two exits"],
                                            "confidence": 80, "evidence_status": "supported",
                                            "follow_up_questions": ["Who is the CTO?"]}]}
    return {"score": 50, "criteria": [{"name": "Size", "score": 50, "evidence": ["TAM $2B"],
                                       "confidence": 70, "evidence_status": "supported"}]}


@pytest.fixture()
def llm():
    client = MagicMock()
    client.call = AsyncMock(side_effect=_fake_call)
    return client


@pytest.fixture()
def store(tmp_path) -> RecordStore:
    return RecordStore(LocalBackend(tmp_path / "data"))


@pytest.fixture()
def orchestrator(tmp_path, store, llm) -> Orchestrator:
    path = tmp_path / "criteria.yaml"
    path.write_text(_CRITERIA)
    return Orchestrator(store, CriteriaConfig(path), lambda: llm)


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_full_score(self, orchestrator, store, llm):
        record = store.create(company_name="Acme")
        outcome = await orchestrator.score(record.id)
        score = outcome.record.score
        assert not outcome.skipped
        assert score.overall == 68
        assert score.scoring_mode == "full"
        assert score.follow_up_questions == ["Who is the CTO?"]
        assert "Final score (after preserved overrides): 68/100" in score.rescore_explanation
        assert outcome.record.metrics["arr"].value == "$1.2M"
        assert outcome.record.metrics["arr"].source == "auto"
        assert "unknown_key" not in outcome.record.metrics
        assert llm.call.await_count == 3

    @pytest.mark.asyncio
    async def test_unchanged_inputs_skip_judgment(self, orchestrator, store, llm):
        record = store.create(company_name="Acme")
        first = await orchestrator.score(record.id)
        second = await orchestrator.score(record.id)
        assert second.skipped
        assert second.message == "No new information detected"
        assert second.record.score.scoring_mode == "incremental"
        assert second.record.score.overall == first.record.score.overall
        assert llm.call.await_count == 3

        forced = await orchestrator.score(record.id, force_full=True)
        assert not forced.skipped
        assert forced.record.score.scoring_mode == "full"
        assert llm.call.await_count == 6

    @pytest.mark.asyncio
    async def test_changed_notes_trigger_full_pass(self, orchestrator, store, llm):
        record = store.create(company_name="Acme")
        await orchestrator.score(record.id)
        store.update(record.id, {"notes": "Met the founders; strong technical depth."})
        outcome = await orchestrator.score(record.id)
        assert not outcome.skipped
        assert llm.call.await_count == 6

    @pytest.mark.asyncio
    async def test_manual_metrics_are_kept(self, orchestrator, store):
        record = store.create(company_name="Acme", metrics={"arr": MetricValue(value="$2M", source="manual")})
        outcome = await orchestrator.score(record.id)
        assert outcome.record.metrics["arr"].value == "$2M"
        assert outcome.record.metrics["arr"].source == "manual"

    @pytest.mark.asyncio
    async def test_overrides_survive_rescore(self, orchestrator, store):
        record = store.create(company_name="Acme")
        scored = (await orchestrator.score(record.id)).record.score
        store.update(record.id, {"score": apply_category_override(scored, "Market", 90)})
        outcome = await orchestrator.score(record.id, force_full=True)
        market = outcome.record.score.categories[1]
        assert market.manual_override == 90
        assert outcome.record.score.overall == 84
        assert "New AI-only score: 68/100" in outcome.record.score.rescore_explanation

    @pytest.mark.asyncio
    async def test_single_category_requires_score(self, orchestrator, store):
        record = store.create(company_name="Acme")
        with pytest.raises(InvalidInput):
            await orchestrator.score(record.id, category="Team")
        with pytest.raises(NotFound):
            await orchestrator.score(record.id, category="Moat")

    @pytest.mark.asyncio
    async def test_single_category_rescore(self, orchestrator, store, llm):
        record = store.create(company_name="Acme")
        await orchestrator.score(record.id)
        outcome = await orchestrator.score(record.id, category="Team")
        assert [c.category for c in outcome.record.score.categories] == ["Team", "Market"]
        # one category judgment plus one metric extraction
        assert llm.call.await_count == 5

    @pytest.mark.asyncio
    async def test_failed_links_produce_warnings(self, orchestrator, store, llm):
        record = store.create(company_name="Acme", documents=[DiligenceDocument(
            id="doc_1", name="Deck link", external_url="https://docsend.com/view/abc",
            link_ingest_status="email_required", link_ingest_message="Email required",
            extracted_text="External document link: https://docsend.com/view/abc",
        )])
        outcome = await orchestrator.score(record.id)
        assert any("Link ingestion failed" in w for w in outcome.warnings)
        prompts = [call.args[1] for call in llm.call.await_args_list]
        assert all("External document link" not in p for p in prompts)
