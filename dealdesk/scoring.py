"""Scoring orchestrator: per-category evidence judgments with deterministic aggregation.

Architecture
------------
Each rubric category is judged in parallel by the LLM (one call per category,
plus one metric-extraction call). Everything after the judgment is
deterministic:

- the evidence policy caps criterion scores that lack support,
- ``weighted_score = effective * weight / 100`` with ``effective = manual_override ?? score``,
- ``overall = round(sum(effective * weight) / sum(weight))``,
- manual overrides from the previous score survive a rescore,
- a fingerprint over every scoring input lets an unchanged record skip the
  judgment entirely (``scoring_mode="incremental"``).
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from dealdesk.config import CriteriaConfig
from dealdesk.errors import InvalidInput, NotFound
from dealdesk.ingest import is_low_quality_link_content
from dealdesk.llm import LLMClient
from dealdesk.metrics import merge_auto_metrics
from dealdesk.parser import is_unreadable
from dealdesk.schemas import (
    METRIC_KEYS,
    CategoryScore,
    CriteriaCategory,
    Criterion,
    CriterionScore,
    DiligenceCriteria,
    DiligenceDocument,
    DiligenceRecord,
    DiligenceScore,
)
from dealdesk.storage import RecordStore
from dealdesk.utils import clamp_score, dedupe_list, normalize_text, now_iso, round_half_up

log = logging.getLogger(__name__)

SCORER_VERSION = "dealdesk-scorer-2026.10-evidence-caps"

DEFAULT_EVIDENCE_CAP = 60
CONTRADICTED_CAP = 40
NO_EVIDENCE_PLACEHOLDER = "No direct evidence cited."
_EVIDENCE_STATUSES = ("supported", "weakly_supported", "unknown", "contradicted")

_MAX_DOC_CHARS = 12_000
_MAX_CONTEXT_CHARS = 60_000


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def effective_score(category: CategoryScore) -> int:
    return category.manual_override if category.manual_override is not None else category.score


def weighted_score(category: CategoryScore) -> float:
    return round_half_up(effective_score(category) * category.weight / 100, 2)


def compute_overall(categories: list[CategoryScore]) -> int:
    """Weight-normalized mean of effective category scores, rounded half up."""
    total_weight = sum(c.weight for c in categories)
    if total_weight <= 0:
        return 0
    return round_half_up(sum(effective_score(c) * c.weight for c in categories) / total_weight)


def recalculate(score: DiligenceScore) -> DiligenceScore:
    categories = [c.model_copy(update={"weighted_score": weighted_score(c)}) for c in score.categories]
    return score.model_copy(update={"categories": categories, "overall": compute_overall(categories)})


def _effective_criterion(criterion: CriterionScore) -> int:
    return criterion.manual_override if criterion.manual_override is not None else criterion.score


def _score_from_criteria(criteria: list[CriterionScore]) -> int:
    if not criteria:
        return 0
    return round_half_up(sum(_effective_criterion(c) for c in criteria) / len(criteria))


def _find_category(score: DiligenceScore, name: str) -> int:
    for i, category in enumerate(score.categories):
        if category.category == name:
            return i
    raise NotFound(f"Category not found: {name}")


def _validate_override(value: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 100:
        raise InvalidInput("Override score must be an integer between 0 and 100")
    return value


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def apply_category_override(
    score: DiligenceScore,
    category: str,
    value: int,
    reason: str | None = None,
    suppress_topics: list[str] | None = None,
) -> DiligenceScore:
    value = _validate_override(value)
    idx = _find_category(score, category)
    categories = list(score.categories)
    categories[idx] = categories[idx].model_copy(update={
        "manual_override": value,
        "override_reason": (reason or "").strip() or None,
        "override_suppress_topics": dedupe_list(suppress_topics or [], 20),
        "overrided_at": now_iso(),
    })
    return recalculate(score.model_copy(update={"categories": categories}))


def remove_category_override(score: DiligenceScore, category: str) -> DiligenceScore:
    idx = _find_category(score, category)
    categories = list(score.categories)
    categories[idx] = categories[idx].model_copy(update={
        "manual_override": None, "override_reason": None,
        "override_suppress_topics": [], "overrided_at": None,
    })
    return recalculate(score.model_copy(update={"categories": categories}))


def _set_criterion_override(score: DiligenceScore, category: str, criterion: str, value: int | None) -> DiligenceScore:
    idx = _find_category(score, category)
    cat = score.categories[idx]
    criteria = list(cat.criteria)
    for i, item in enumerate(criteria):
        if item.name == criterion:
            criteria[i] = item.model_copy(update={"manual_override": value})
            break
    else:
        raise NotFound(f"Criterion not found: {category} / {criterion}")
    categories = list(score.categories)
    categories[idx] = cat.model_copy(update={"criteria": criteria, "score": _score_from_criteria(criteria)})
    return recalculate(score.model_copy(update={"categories": categories}))


def apply_criterion_override(score: DiligenceScore, category: str, criterion: str, value: int) -> DiligenceScore:
    """Override one criterion; the category's AI score becomes the mean of its effective criteria."""
    return _set_criterion_override(score, category, criterion, _validate_override(value))


def remove_criterion_override(score: DiligenceScore, category: str, criterion: str) -> DiligenceScore:
    return _set_criterion_override(score, category, criterion, None)


def has_manual_overrides(score: DiligenceScore) -> bool:
    return override_count(score) > 0


def override_count(score: DiligenceScore) -> int:
    return sum(1 for c in score.categories if c.manual_override is not None)


# ---------------------------------------------------------------------------
# Evidence policy
# ---------------------------------------------------------------------------


def apply_evidence_policy(criterion: CriterionScore, config: Criterion | None = None) -> CriterionScore:
    """Cap criterion scores the evidence does not support."""
    cap = clamp_score(config.insufficient_evidence_cap if config else None, DEFAULT_EVIDENCE_CAP)
    adjusted = criterion.score
    no_evidence = not criterion.evidence or criterion.evidence[0] == NO_EVIDENCE_PLACEHOLDER
    if criterion.evidence_status == "unknown":
        adjusted = min(adjusted, cap)
    elif criterion.evidence_status == "contradicted":
        adjusted = min(adjusted, CONTRADICTED_CAP)
    elif criterion.evidence_status == "weakly_supported" and no_evidence:
        adjusted = min(adjusted, min(70, cap + 10))
    if adjusted == criterion.score:
        return criterion
    return criterion.model_copy(update={"score": adjusted})


# ---------------------------------------------------------------------------
# Evidence selection + fingerprint
# ---------------------------------------------------------------------------


def is_link_document(doc: DiligenceDocument) -> bool:
    return bool(doc.external_url) or doc.file_type in ("link", "url")


def select_scoring_documents(documents: list[DiligenceDocument]) -> list[DiligenceDocument]:
    """Documents whose text may feed scoring: readable, and for links, cleanly ingested."""
    selected = []
    for doc in documents:
        text = doc.extracted_text or ""
        if is_unreadable(text):
            continue
        if is_link_document(doc) and (doc.link_ingest_status != "ingested" or is_low_quality_link_content(text)):
            continue
        selected.append(doc)
    return selected


def document_warnings(documents: list[DiligenceDocument]) -> list[str]:
    warnings: list[str] = []
    for doc in documents:
        name = (doc.name or "").strip() or "Document"
        if is_link_document(doc) and doc.link_ingest_status != "ingested":
            detail = f" ({doc.link_ingest_message})" if doc.link_ingest_message else ""
            warnings.append(f"{name}: Link ingestion failed{detail}. This document will not be used in scoring.")
        elif is_unreadable(doc.extracted_text):
            warnings.append(f"{name}: File is attached but text could not be reliably extracted.")
    return dedupe_list(warnings, 10, max_length=400)


def build_fingerprint(record: DiligenceRecord, criteria: DiligenceCriteria, *, web_research: bool = False) -> str:
    """sha256 over canonical JSON of every input that can move the score."""
    snapshot = record.hubspot_company_data.model_dump(exclude={"fetched_at"}) if record.hubspot_company_data else None
    payload = {
        "company_name": record.company_name or "",
        "company_url": record.company_url or "",
        "company_description": record.company_description or "",
        "company_one_liner": record.company_one_liner or "",
        "industry": record.industry or "",
        "notes": record.notes or "",
        "categorized_notes": sorted(
            ([n.category, n.title, n.content] for n in record.categorized_notes),
        ),
        "questions": sorted([q.question, q.answer] for q in record.questions),
        "metrics": {
            key: [m.value.strip(), m.source] for key, m in sorted(record.metrics.items())
        },
        "documents": sorted(
            [d.name or "", d.type, d.extracted_text or ""] for d in select_scoring_documents(record.documents)
        ),
        "company_snapshot": snapshot,
        "criteria": [c.model_dump() for c in criteria.categories],
        "scorer_version": SCORER_VERSION,
        "web_research": web_research,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def count_new_documents(record: DiligenceRecord) -> int:
    """Scoring documents added or re-ingested after the last scored pass."""
    if record.score is None:
        return len(select_scoring_documents(record.documents))
    scored_at = record.score.scored_at
    return sum(
        1 for d in select_scoring_documents(record.documents)
        if max(d.uploaded_at or "", d.link_ingested_at or "") > scored_at
    )


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


def build_context(record: DiligenceRecord, documents: list[DiligenceDocument],
                  research: list[dict[str, str]] | None = None) -> str:
    lines = [f"# Company: {record.company_name}"]
    for label, value in (("URL", record.company_url), ("One-liner", record.company_one_liner),
                         ("Description", record.company_description), ("Industry", record.industry)):
        if value:
            lines.append(f"{label}: {value}")

    metrics = [f"- {k}: {m.value} ({m.source})" for k, m in sorted(record.metrics.items()) if m.value.strip()]
    if metrics:
        lines += ["", "## Metrics (manual values are authoritative)", *metrics]

    snap = record.hubspot_company_data
    if snap:
        crm = [f"- {k}: {v}" for k, v in snap.model_dump(exclude={"company_id", "fetched_at"}).items() if v]
        if crm:
            lines += ["", "## CRM company record", *crm]

    if record.notes.strip():
        lines += ["", "## Analyst notes", record.notes.strip()]
    categorized = [f"({n.category or 'Overall'}) {n.title or 'Note'}: {n.content}"
                   for n in record.categorized_notes if n.content.strip()]
    if categorized:
        lines += ["", "## Categorized notes", *categorized]
    answered = [f"Q: {q.question}\nA: {q.answer}" for q in record.questions if q.answer.strip()]
    if answered:
        lines += ["", "## Founder answers", *answered]

    budget = _MAX_CONTEXT_CHARS
    for doc in documents:
        text = (doc.extracted_text or "")[:min(_MAX_DOC_CHARS, budget)]
        if not text:
            break
        budget -= len(text)
        lines += ["", f"## Document: {doc.name} ({doc.type})", text]

    if research:
        lines += ["", "## External research"]
        lines += [f"- {r['title']}: {r['snippet']} ({r['link']})" for r in research]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Evidence judgment
# ---------------------------------------------------------------------------

CATEGORY_PROMPT = """\
You are a venture capital analyst scoring one category of a diligence rubric.
Score strictly from the evidence provided. Manual metrics and founder answers
are authoritative. Do not assume facts that are not in the evidence.

For each criterion give a 0-100 score, reasoning, verbatim evidence quotes,
a 0-100 confidence, an evidence_status (supported | weakly_supported |
unknown | contradicted), missing data and up to 3 follow-up questions.

Respond with ONLY a JSON object:
{
  "score": <0-100>,
  "criteria": [
    {"name": "<criterion>", "score": <0-100>, "reasoning": "...",
     "evidence": ["..."], "confidence": <0-100>,
     "evidence_status": "<status>", "missing_data": ["..."],
     "follow_up_questions": ["..."]}
  ]
}"""

METRICS_PROMPT = """\
Extract company metrics stated in the evidence. Use only values that are
explicitly stated; leave a key out when the evidence does not state it.
Keys: """ + ", ".join(METRIC_KEYS) + """.
Respond with ONLY a JSON object: {"metrics": {"<key>": "<value as written>"}}"""


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _as_strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _name_key(value: Any) -> str:
    return "".join(ch for ch in str(value or "").lower() if ch.isalnum())


def normalize_category(config: CriteriaCategory, raw: dict[str, Any]) -> CategoryScore:
    """Map a model reply onto the configured criteria (by name, else by position)."""
    model_criteria = [c for c in (raw.get("criteria") or []) if isinstance(c, dict)]
    by_name = {_name_key(c.get("name")): c for c in model_criteria}
    criteria: list[CriterionScore] = []
    for i, criterion in enumerate(config.criteria):
        item = by_name.get(_name_key(criterion.name)) or (model_criteria[i] if i < len(model_criteria) else {})
        status = _pick(item, "evidence_status", "evidenceStatus")
        evidence = _as_strings(item.get("evidence"))[:5]
        reasoning = item.get("reasoning")
        scored = CriterionScore(
            name=criterion.name,
            score=clamp_score(item.get("score"), 50),
            reasoning=reasoning.strip() if isinstance(reasoning, str) and reasoning.strip()
            else "Model response did not include criterion-specific reasoning.",
            evidence=evidence or [NO_EVIDENCE_PLACEHOLDER],
            confidence=clamp_score(item.get("confidence"), 55),
            evidence_status=status if status in _EVIDENCE_STATUSES else "unknown",
            missing_data=_as_strings(_pick(item, "missing_data", "missingData")),
            follow_up_questions=_as_strings(_pick(item, "follow_up_questions", "followUpQuestions"))[:3],
        )
        criteria.append(apply_evidence_policy(scored, criterion))

    from_model = clamp_score(raw.get("score"), 0)
    score = from_model if from_model > 0 else _score_from_criteria(criteria)
    category = CategoryScore(category=config.name, score=score, weight=config.weight, criteria=criteria)
    return category.model_copy(update={"weighted_score": weighted_score(category)})


def compute_data_quality(categories: list[CategoryScore]) -> int:
    """Mean criterion confidence, discounted by the share of criteria without evidence."""
    criteria = [c for cat in categories for c in cat.criteria]
    if not criteria:
        return 0
    avg_confidence = sum(c.confidence for c in criteria) / len(criteria)
    unknown_ratio = sum(1 for c in criteria if c.evidence_status == "unknown") / len(criteria)
    return clamp_score(avg_confidence * (1 - 0.5 * unknown_ratio))


def collect_follow_up_questions(categories: list[CategoryScore], limit: int = 5) -> list[str]:
    """Questions from the weakest criteria first, minus suppressed topics."""
    ranked = sorted(
        ((c.score, q, cat.override_suppress_topics) for cat in categories for c in cat.criteria
         for q in c.follow_up_questions),
        key=lambda item: item[0],
    )
    questions = [q for _, q, suppressed in ranked
                 if not any(t.lower() in q.lower() for t in suppressed)]
    return dedupe_list(questions, limit)


class EvidenceJudge:
    """LLM-backed judgment for one rubric category at a time."""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def judge_category(self, config: CriteriaCategory, context: str,
                             suppress_topics: list[str] | None = None) -> CategoryScore:
        rubric = [f"## Category: {config.name} (weight {config.weight}%)"]
        for c in config.criteria:
            rubric.append(f"- {c.name}: {c.description}")
            if c.scoring_guidance:
                rubric.append(f"  Guidance: {c.scoring_guidance}")
        if suppress_topics:
            rubric.append(f"Do not ask follow-up questions about: {', '.join(suppress_topics)}")
        raw = await self.llm.call(CATEGORY_PROMPT, "\n".join(rubric) + "\n\n# Evidence\n" + context)
        return normalize_category(config, raw)

    async def extract_metrics(self, context: str) -> dict[str, str]:
        raw = await self.llm.call(METRICS_PROMPT, context)
        metrics = raw.get("metrics") if isinstance(raw.get("metrics"), dict) else {}
        return {k: normalize_text(v, 120) for k, v in metrics.items() if k in METRIC_KEYS and isinstance(v, str)}


# ---------------------------------------------------------------------------
# Rescore narrative + override preservation
# ---------------------------------------------------------------------------


def preserve_overrides(previous: DiligenceScore | None, current: DiligenceScore) -> DiligenceScore:
    """Carry category and criterion overrides from *previous* into *current*."""
    if previous is None:
        return current
    old = {c.category: c for c in previous.categories}
    categories = []
    for cat in current.categories:
        before = old.get(cat.category)
        if before is None:
            categories.append(cat)
            continue
        old_criteria = {c.name: c.manual_override for c in before.criteria if c.manual_override is not None}
        criteria = [c.model_copy(update={"manual_override": old_criteria[c.name]}) if c.name in old_criteria else c
                    for c in cat.criteria]
        update: dict[str, Any] = {"criteria": criteria}
        if old_criteria:
            update["score"] = _score_from_criteria(criteria)
        if before.manual_override is not None:
            update.update(manual_override=before.manual_override, override_reason=before.override_reason,
                          override_suppress_topics=before.override_suppress_topics,
                          overrided_at=before.overrided_at)
        categories.append(cat.model_copy(update=update))
    return recalculate(current.model_copy(update={"categories": categories}))


def build_rescore_narrative(previous: DiligenceScore | None, current: DiligenceScore,
                            ai_only: int, new_documents: int) -> str:
    lines = [
        "## Score Snapshot",
        f"- Previous overall: {previous.overall if previous else 0}/100",
        f"- New AI-only score: {ai_only}/100",
        f"- Final score (after preserved overrides): {current.overall}/100",
        f"- Data quality: {current.data_quality}/100",
    ]
    if new_documents:
        lines.append(f"- New documents included in this re-score: {new_documents}")
    before = {c.category: effective_score(c) for c in (previous.categories if previous else [])}
    deltas = sorted(
        ((c.category, before.get(c.category, 0), effective_score(c)) for c in current.categories),
        key=lambda d: abs(d[2] - d[1]), reverse=True,
    )
    changed = [d for d in deltas if d[2] != d[1]][:5]
    if changed:
        lines += ["", "## Category Changes"]
        lines += [f"- {name}: {prev} -> {new} ({new - prev:+d})" for name, prev, new in changed]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass
class ScoringOutcome:
    record: DiligenceRecord
    skipped: bool = False
    message: str = ""
    warnings: list[str] = field(default_factory=list)


SearchFn = Callable[[str, int], Awaitable[list[dict[str, str]]]]


class Orchestrator:
    """Owns the score state of a record: judge, aggregate, preserve overrides, persist."""

    def __init__(
        self,
        store: RecordStore,
        criteria: CriteriaConfig,
        llm_factory: Callable[[], LLMClient],
        *,
        web_research: bool = False,
        search: SearchFn | None = None,
    ):
        self.store = store
        self.criteria = criteria
        self._llm_factory = llm_factory
        self._judge: EvidenceJudge | None = None
        self.web_research = web_research and search is not None
        self._search = search

    @property
    def judge(self) -> EvidenceJudge:
        if self._judge is None:
            self._judge = EvidenceJudge(self._llm_factory())
        return self._judge

    async def _research(self, record: DiligenceRecord) -> list[dict[str, str]]:
        if not self.web_research or self._search is None:
            return []
        queries = [f'"{record.company_name}" startup', f'"{record.company_name}" market size']
        results = await asyncio.gather(*(self._search(q, 5) for q in queries), return_exceptions=True)
        found: list[dict[str, str]] = []
        for query, result in zip(queries, results):
            if isinstance(result, Exception):
                log.warning("Web research failed for %r: %s", query, result)
                continue
            found.extend(result)
        return found

    async def score(self, record_id: str, force_full: bool = False, category: str | None = None) -> ScoringOutcome:
        record = self.store.get(record_id)
        criteria = self.criteria.get()
        previous = record.score
        documents = select_scoring_documents(record.documents)
        warnings = document_warnings(record.documents)
        fingerprint = build_fingerprint(record, criteria, web_research=self.web_research)
        new_documents = count_new_documents(record)

        if category is None and not force_full and previous is not None \
                and previous.scoring_input_fingerprint == fingerprint and new_documents == 0:
            updated = self.store.update(record_id, {
                "score": previous.model_copy(update={"scoring_mode": "incremental"}),
            })
            log.info("Skipped scoring for %s: inputs unchanged", record_id)
            return ScoringOutcome(record=updated, skipped=True, warnings=warnings,
                                  message="No new information detected")

        if category is not None:
            targets = [c for c in criteria.categories if c.name == category]
            if not targets:
                raise NotFound(f"Category not found: {category}")
            if previous is None:
                raise InvalidInput("Score the record before re-scoring a single category")
        else:
            targets = criteria.categories

        suppressed = {c.category: c.override_suppress_topics for c in (previous.categories if previous else [])}
        context = build_context(record, documents, await self._research(record))
        judged, suggested = await asyncio.gather(
            asyncio.gather(*(self.judge.judge_category(t, context, suppressed.get(t.name)) for t in targets)),
            self.judge.extract_metrics(context),
        )

        if category is not None:
            replaced = {c.category: c for c in judged}
            categories = [replaced.get(c.category, c.model_copy(update={"manual_override": None}))
                          for c in previous.categories]
            data_quality = previous.data_quality
        else:
            categories = list(judged)
            data_quality = compute_data_quality(categories)

        # fingerprint over the record as stored, suggested metrics included
        metrics = merge_auto_metrics(record.metrics, suggested, source_detail="facts")
        stamped = build_fingerprint(record.model_copy(update={"metrics": metrics}), criteria,
                                    web_research=self.web_research)
        fresh = recalculate(DiligenceScore(
            overall=0, categories=categories, data_quality=data_quality, scored_at=now_iso(),
            scoring_input_fingerprint=stamped, scoring_mode="full",
        ))
        ai_only = fresh.overall
        final = preserve_overrides(previous, fresh)
        final = final.model_copy(update={
            "follow_up_questions": collect_follow_up_questions(final.categories),
            "rescore_explanation": build_rescore_narrative(previous, final, ai_only, new_documents),
        })
        updated = self.store.update(record_id, {"score": final, "metrics": metrics})
        log.info("Scored %s: overall=%d ai_only=%d categories=%d", record_id, final.overall, ai_only, len(judged))
        return ScoringOutcome(record=updated, warnings=warnings)
