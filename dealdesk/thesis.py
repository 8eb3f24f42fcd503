"""Thesis-fit assessment and the reviewer feedback log that calibrates it."""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from dealdesk.errors import InvalidInput
from dealdesk.llm import LLMClient
from dealdesk.schemas import DiligenceRecord, ThesisFit, ThesisFitFeedbackEntry
from dealdesk.scoring import select_scoring_documents
from dealdesk.storage import BlobBackend
from dealdesk.utils import clamp_score, dedupe_list, new_id, normalize_text, now_iso

log = logging.getLogger(__name__)

THESIS_FIT_MODEL_VERSION = "dealdesk-thesis-fit-2026.10"
FEEDBACK_PREFIX = "thesis-fit-feedback/"
FIT_LABELS = ("on_thesis", "mixed", "off_thesis")

_MISSINGNESS_RE = re.compile(
    r"\b(unknown|unclear|missing|no evidence|lack of|not provided|insufficient|not enough|"
    r"undisclosed|limited detail|incomplete)\b",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------

THESIS_SYSTEM = "You are a rigorous venture diligence analyst. Judge thesis fit precisely and conservatively."

THESIS_PROMPT = """Evaluate whether this company fits our investment thesis.

## Thesis
{thesis}

## Company Context
{context}

{examples}

Return ONLY valid JSON in this exact schema:
{{
  "fit": "on_thesis | mixed | off_thesis",
  "confidence": 0,
  "why_fits": ["3-5 concise bullets with concrete evidence"],
  "why_not_fit": ["0-5 bullets ONLY for direct conflicts with a thesis pillar or dealbreaker"],
  "evidence_gaps": ["0-5 missing-information bullets that lower confidence"],
  "evidence_anchors": ["2-6 metrics, claims or gaps used for the judgment"],
  "crux_question": "single decision-driving question"
}}

Rules:
- Be evidence-based; avoid generic statements.
- Missing information goes to evidence_gaps, never to why_not_fit.
- If evidence is weak, lower confidence."""


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def build_thesis_context(record: DiligenceRecord) -> str:
    metrics = "\n".join(f"- {k}: {m.value}" for k, m in sorted(record.metrics.items()) if m.value) or "- none"
    categories = "\n".join(
        f"- {c.category}: {c.manual_override if c.manual_override is not None else c.score}"
        for c in (record.score.categories if record.score else [])
    ) or "- none"
    notes = "\n\n".join(f"{n.category}: {n.title}\n{n.content}" for n in record.categorized_notes)
    docs = "\n\n".join(f"## {d.name}\n{_truncate(d.extracted_text or '', 3000)}"
                       for d in select_scoring_documents(record.documents) if d.extracted_text)
    snapshot = record.hubspot_company_data
    return f"""# Company
Name: {record.company_name}
Website: {record.company_url or "unknown"}
Industry: {record.industry or (snapshot.industry if snapshot else "") or "unknown"}
One-liner: {record.company_one_liner or "unknown"}
Description: {record.company_description or (snapshot.description if snapshot else "") or "unknown"}

# Metrics
{metrics}

# Current Score
Overall: {record.score.overall if record.score else "unknown"}
Categories:
{categories}

# Analyst Notes
{_truncate(notes or record.notes or "none", 6000)}

# Extracted Document Evidence
{_truncate(docs or "none", 12000)}"""


def build_examples_section(examples: list[ThesisFitFeedbackEntry], limit: int = 6) -> str:
    if not examples:
        return ""
    lines = ["## Reviewer-labelled examples"]
    for entry in examples[:limit]:
        line = f"- {entry.company_name}: {entry.reviewer_fit}"
        if entry.why_fits:
            line += f"; fits: {'; '.join(entry.why_fits[:2])}"
        if entry.why_not_fit:
            line += f"; conflicts: {'; '.join(entry.why_not_fit[:2])}"
        lines.append(line)
    return "\n".join(lines)


def split_conflicts_and_gaps(conflicts: list[str], gaps: list[str]) -> tuple[list[str], list[str]]:
    """Move missing-information bullets out of the conflict list."""
    kept = [c for c in conflicts if not _MISSINGNESS_RE.search(c)]
    moved = [c for c in conflicts if _MISSINGNESS_RE.search(c)]
    return kept, dedupe_list(gaps + moved, 5)


def coerce_fit(raw: Any, why_fits: list[str], why_not_fit: list[str]) -> str:
    label = str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    if label in FIT_LABELS:
        return label
    if why_not_fit and not why_fits:
        return "off_thesis"
    if why_fits and not why_not_fit:
        return "on_thesis"
    return "mixed"


async def assess_thesis_fit(
    record: DiligenceRecord,
    llm: LLMClient,
    thesis_text: str,
    examples: list[ThesisFitFeedbackEntry] | None = None,
) -> ThesisFit:
    prompt = THESIS_PROMPT.format(
        thesis=thesis_text,
        context=build_thesis_context(record),
        examples=build_examples_section(examples or []),
    )
    raw = await llm.call(THESIS_SYSTEM, prompt)
    why_fits = dedupe_list(raw.get("why_fits"), 5)
    why_not_fit, gaps = split_conflicts_and_gaps(
        dedupe_list(raw.get("why_not_fit"), 5), dedupe_list(raw.get("evidence_gaps"), 5),
    )
    fit = coerce_fit(raw.get("fit"), why_fits, why_not_fit)
    log.info("Thesis fit for %s: %s", record.id, fit)
    return ThesisFit(
        fit=fit,
        confidence=clamp_score(raw.get("confidence"), 50),
        why_fits=why_fits,
        why_not_fit=why_not_fit,
        evidence_gaps=gaps,
        evidence_anchors=dedupe_list(raw.get("evidence_anchors"), 6),
        crux_question=normalize_text(raw.get("crux_question"), 500),
        computed_at=now_iso(),
        model_version=THESIS_FIT_MODEL_VERSION,
    )


# ---------------------------------------------------------------------------
# Feedback log
# ---------------------------------------------------------------------------


def _optional_confidence(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if num != num:
        return None
    return clamp_score(num)


def _optional_fit(value: Any) -> str | None:
    label = str(value or "").strip().lower()
    return label if label in FIT_LABELS else None


def sanitize_feedback(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "diligence_id": normalize_text(str(raw.get("diligence_id") or ""), 120),
        "company_name": normalize_text(str(raw.get("company_name") or ""), 200),
        "reviewer_fit": str(raw.get("reviewer_fit") or "").strip().lower(),
        "model_fit": _optional_fit(raw.get("model_fit")),
        "model_confidence": _optional_confidence(raw.get("model_confidence")),
        "reviewer_confidence": _optional_confidence(raw.get("reviewer_confidence")),
        "reviewer": normalize_text(raw.get("reviewer"), 120),
        "notes": normalize_text(raw.get("notes"), 4000),
        "why_fits": dedupe_list(raw.get("why_fits"), 8),
        "why_not_fit": dedupe_list(raw.get("why_not_fit"), 8),
        "evidence_gaps": dedupe_list(raw.get("evidence_gaps"), 8),
        "tags": dedupe_list(raw.get("tags"), 8, max_length=60),
    }


def feedback_signature(entry: dict[str, Any]) -> str:
    """Identity of a labelled example: case-insensitive, list order ignored."""
    return json.dumps({
        "diligence_id": entry["diligence_id"].lower(),
        "company_name": entry["company_name"].lower(),
        "reviewer_fit": entry["reviewer_fit"],
        "why_fits": sorted(v.lower() for v in entry["why_fits"]),
        "why_not_fit": sorted(v.lower() for v in entry["why_not_fit"]),
        "evidence_gaps": sorted(v.lower() for v in entry["evidence_gaps"]),
    }, sort_keys=True)


def _validate(cleaned: dict[str, Any]) -> None:
    if not cleaned["diligence_id"]:
        raise InvalidInput("diligence_id is required")
    if not cleaned["company_name"]:
        raise InvalidInput("company_name is required")
    if cleaned["reviewer_fit"] not in FIT_LABELS:
        raise InvalidInput("reviewer_fit must be one of: on_thesis, mixed, off_thesis")


class FeedbackStore:
    def __init__(self, backend: BlobBackend, prefix: str = FEEDBACK_PREFIX):
        self.backend = backend
        self.prefix = prefix

    def _all(self) -> list[ThesisFitFeedbackEntry]:
        entries = []
        for key in self.backend.list(self.prefix):
            if not key.endswith(".json"):
                continue
            raw = self.backend.load(key)
            if raw is None:
                continue
            try:
                entries.append(ThesisFitFeedbackEntry.model_validate_json(raw))
            except ValidationError as exc:
                log.warning("Skipping unreadable feedback entry %s: %s", key, exc.error_count())
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def _save(self, cleaned: dict[str, Any], signature: str) -> ThesisFitFeedbackEntry:
        entry = ThesisFitFeedbackEntry(id=new_id("tff"), signature=signature, created_at=now_iso(), **cleaned)
        self.backend.save(f"{self.prefix}{entry.id}.json", entry.model_dump_json(indent=2).encode("utf-8"))
        return entry

    def add(self, payload: dict[str, Any]) -> tuple[ThesisFitFeedbackEntry, bool]:
        """Store one labelled example; returns ``(entry, created)``, reusing an identical entry."""
        cleaned = sanitize_feedback(payload)
        _validate(cleaned)
        signature = feedback_signature(cleaned)
        existing = next((e for e in self._all() if e.signature == signature), None)
        if existing is not None:
            return existing, False
        entry = self._save(cleaned, signature)
        log.info("Recorded thesis feedback %s for %s", entry.id, entry.diligence_id)
        return entry, True

    def list(self, diligence_id: str | None = None, limit: int = 100) -> list[ThesisFitFeedbackEntry]:
        limit = max(1, min(int(limit), 1000))
        entries = self._all()
        if diligence_id:
            entries = [e for e in entries if e.diligence_id == diligence_id.strip()]
        return entries[:limit]

    def export(self) -> list[dict[str, Any]]:
        return [e.model_dump() for e in self._all()]

    def import_entries(self, entries: list[dict[str, Any]]) -> dict[str, Any]:
        signatures = {e.signature for e in self._all()}
        imported: list[ThesisFitFeedbackEntry] = []
        skipped = 0
        errors: list[str] = []
        for index, raw in enumerate(entries):
            cleaned = sanitize_feedback(raw if isinstance(raw, dict) else {})
            try:
                _validate(cleaned)
            except InvalidInput as exc:
                errors.append(f"entry {index}: {exc.message}")
                continue
            signature = feedback_signature(cleaned)
            if signature in signatures:
                skipped += 1
                continue
            imported.append(self._save(cleaned, signature))
            signatures.add(signature)
        log.info("Imported %d thesis feedback entries (%d duplicates)", len(imported), skipped)
        return {"imported": imported, "skipped": skipped, "errors": errors}


def summarize_feedback(entries: list[ThesisFitFeedbackEntry]) -> dict[str, Any]:
    """Agreement between reviewer labels and the model snapshot they were given."""
    with_model = [e for e in entries if e.model_fit]
    agreement = None
    if with_model:
        matches = sum(1 for e in with_model if e.model_fit == e.reviewer_fit)
        agreement = round(matches / len(with_model) * 100)
    deltas = [abs(e.reviewer_confidence - e.model_confidence) for e in with_model
              if e.reviewer_confidence is not None and e.model_confidence is not None]
    return {
        "total_examples": len(entries),
        "with_model_snapshot": len(with_model),
        "fit_agreement_rate": agreement,
        "average_confidence_delta": round(sum(deltas) / len(deltas)) if deltas else None,
    }
