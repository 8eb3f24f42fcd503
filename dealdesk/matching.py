"""Deal matching: rank CRM deals for one investor, enriched with diligence context.

Two passes. Hard filters drop deals whose amount is far outside the partner's
check size or whose CRM data is too thin to judge. The survivors (at most
``MAX_EVALUATED``) each get one LLM judgment; a deal that fails to evaluate is
reported in ``errors`` and the batch still succeeds as long as one deal was
judged.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from dealdesk.errors import InvalidInput, MatchingFailed
from dealdesk.llm import LLMCallError, LLMClient
from dealdesk.schemas import DealMatch, DiligenceRecord, MatchDeal, MatchRequest, PartnerProfile
from dealdesk.utils import clamp_score, dedupe_list, normalize_text

log = logging.getLogger(__name__)

MAX_EVALUATED = 50

# check-size phrase -> (min, max) dollars
CHECK_SIZE_RANGES = (
    ("less than", (0.0, 250_000.0)),
    ("between $250k and $1m", (250_000.0, 1_000_000.0)),
    ("between $1m and $2m", (1_000_000.0, 2_000_000.0)),
    ("over $2m", (2_000_000.0, math.inf)),
)


# ---------------------------------------------------------------------------
# Data quality + hard filters
# ---------------------------------------------------------------------------


@dataclass
class DataQuality:
    deal: int = 0
    partner: int = 0
    deal_warnings: list[str] = field(default_factory=list)
    partner_warnings: list[str] = field(default_factory=list)


def _present(value: str) -> bool:
    value = (value or "").strip()
    return bool(value) and value.upper() != "N/A"


def assess_data_quality(deal: MatchDeal, partner: PartnerProfile) -> DataQuality:
    q = DataQuality()
    description = deal.description.strip()
    if len(description) > 50:
        q.deal += 30
    elif description:
        q.deal += 15
    else:
        q.deal_warnings.append("Missing deal description")
    if _present(deal.industry):
        q.deal += 25
    else:
        q.deal_warnings.append("Missing industry information")
    if _present(deal.amount):
        q.deal += 20
    else:
        q.deal_warnings.append("Missing deal amount")
    if _present(deal.stage_name):
        q.deal += 15
    else:
        q.deal_warnings.append("Missing stage information")
    if len(deal.deal_terms.strip()) > 20:
        q.deal += 10

    thesis = partner.thesis.strip()
    if len(thesis) > 50:
        q.partner += 40
    elif thesis:
        q.partner += 20
    else:
        q.partner_warnings.append("Missing investment thesis")
    if _present(partner.investment_space):
        q.partner += 25
    else:
        q.partner_warnings.append("Missing investment space")
    if _present(partner.investment_stage):
        q.partner += 20
    else:
        q.partner_warnings.append("Missing investment stage")
    if _present(partner.check_size):
        q.partner += 15
    else:
        q.partner_warnings.append("Missing check size")
    return q


def parse_amount(raw: str) -> float:
    try:
        return float((raw or "").replace("$", "").replace(",", "").strip() or 0)
    except ValueError:
        return 0.0


def check_size_range(check_size: str) -> tuple[float, float]:
    lowered = (check_size or "").lower()
    for phrase, bounds in CHECK_SIZE_RANGES:
        if phrase in lowered:
            return bounds
    return 0.0, math.inf


def passes_hard_filters(deal: MatchDeal, request: MatchRequest) -> bool:
    amount = parse_amount(deal.amount)
    low, high = check_size_range(request.partner.check_size)
    slack = request.check_size_strictness / 100
    if amount > 0 and (amount < low * (1 - slack) or amount > high * (1 + slack)):
        log.info("Filtered out %s: amount %.0f outside check size %s", deal.name, amount,
                 request.partner.check_size or "any")
        return False
    quality = assess_data_quality(deal, request.partner)
    if quality.deal < request.min_data_quality:
        log.info("Filtered out %s: data quality %d < %d", deal.name, quality.deal, request.min_data_quality)
        return False
    return True


# ---------------------------------------------------------------------------
# Diligence context
# ---------------------------------------------------------------------------


class DiligenceLookup:
    """Finds the diligence record behind a CRM deal: by linked deal id, then by company name."""

    def __init__(self, records: list[DiligenceRecord]):
        self.by_deal_id: dict[str, DiligenceRecord] = {}
        self.by_name: dict[str, DiligenceRecord] = {}
        for record in records:
            if record.hubspot_deal_id:
                self.by_deal_id[record.hubspot_deal_id] = record
            key = normalize_text(record.company_name).lower()
            if key and key not in self.by_name:
                self.by_name[key] = record

    def resolve(self, deal: MatchDeal) -> DiligenceRecord | None:
        if deal.id in self.by_deal_id:
            return self.by_deal_id[deal.id]
        return self.by_name.get(normalize_text(deal.name).lower())


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or "- N/A"


def diligence_context(record: DiligenceRecord | None) -> str:
    if record is None:
        return "No linked diligence context was found for this deal. Use only the deal and partner data above."
    company = record.hubspot_company_data
    fit = record.thesis_fit
    return f"""Linked Diligence Record: {record.id}
Diligence Score: {record.score.overall if record.score else "N/A"}/100
Diligence Data Quality: {record.score.data_quality if record.score else "N/A"}/100
Diligence Industry: {record.industry or "N/A"}
Recommendation: {record.recommendation or "N/A"}
Founder Intake Industry: {(company.industry if company else "") or "N/A"}
Founder Intake Funding Amount: {(company.funding_amount if company else "") or "N/A"}
Founder Intake TAM: {(company.tam_range if company else "") or "N/A"}
Founder Intake Runway: {(company.current_runway if company else "") or "N/A"}
What is exciting:
{_bullets(fit.why_fits if fit else [])}
What is concerning:
{_bullets(fit.why_not_fit if fit else [])}"""


# ---------------------------------------------------------------------------
# LLM judgment
# ---------------------------------------------------------------------------

MATCH_SYSTEM = "You are an expert VC matching analyst. Be conservative: missing a match beats recommending a poor one."

MATCH_PROMPT = """Evaluate this deal against this VC partner.

## VC Partner
Name: {partner.name}
Type: {partner.type}
Investment Thesis: {thesis}
Check Size: {partner.check_size}
Investment Stage: {partner.investment_stage}
Investment Space: {partner.investment_space}
Regions: {partner.regions}

## Deal
Name: {deal.name}
Industry: {industry}
Description: {description}
Stage: {stage}
Amount: {deal.amount}
Deal Terms: {terms}

## Diligence Context
{context}

## Data Quality
Deal: {quality.deal}%{deal_warnings}
Partner: {quality.partner}%{partner_warnings}

## Weighted factors
1. Industry alignment ({weights.industry:g}%): exact 90-100, strong semantic 70-85, adjacent 50-70, weak 30-50.
2. Thesis alignment ({weights.thesis:g}%): if the thesis is missing, judge on investment space only.
3. Stage alignment ({weights.stage:g}%): exact 90-100, adjacent 60-80, clear mismatch 0-30.
4. Check size fit ({weights.check_size:g}%): the deal passed the size pre-filter; rate the sweet-spot fit.
Use diligence context, when present, to refine thesis and industry judgments and weigh documented concerns.
List explicit dealbreakers (sector-only mandates, stage floors, geography) separately.
{guidance}
Return ONLY valid JSON:
{{"score": 0, "industry_score": 0, "thesis_score": 0, "stage_score": 0, "check_size_score": 0,
  "reasoning": "2-3 sentences", "strengths": [], "concerns": [], "dealbreakers": []}}"""


def build_match_prompt(deal: MatchDeal, request: MatchRequest, quality: DataQuality,
                       record: DiligenceRecord | None) -> str:
    guidance = f"\n## Custom Guidance\n{request.custom_guidance.strip()}\n" if request.custom_guidance.strip() else ""
    return MATCH_PROMPT.format(
        partner=request.partner,
        thesis=request.partner.thesis or "NOT PROVIDED (limits matching accuracy)",
        deal=deal,
        industry=deal.industry or "N/A",
        description=deal.description or "NOT PROVIDED (limits matching accuracy)",
        stage=deal.stage_name or deal.stage or "N/A",
        terms=deal.deal_terms or "Not provided",
        context=diligence_context(record),
        quality=quality,
        deal_warnings=f" ({', '.join(quality.deal_warnings)})" if quality.deal_warnings else "",
        partner_warnings=f" ({', '.join(quality.partner_warnings)})" if quality.partner_warnings else "",
        weights=request.scoring_weights,
        guidance=guidance,
    )


def _sub_score(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return clamp_score(float(raw))
    except (TypeError, ValueError):
        return None


def _strings(raw: Any) -> list[str]:
    return dedupe_list([str(x) for x in raw], 8) if isinstance(raw, list) else []


def to_deal_match(deal: MatchDeal, result: dict[str, Any], quality: DataQuality,
                  record: DiligenceRecord | None) -> DealMatch:
    concerns = _strings(result.get("concerns"))
    if quality.deal < 50:
        concerns.append("Limited deal data may affect match accuracy")
    if quality.partner < 50:
        concerns.append("Limited VC data may affect match accuracy")
    return DealMatch(
        deal_id=deal.id,
        deal_name=deal.name,
        deal_stage=deal.stage_name or deal.stage,
        deal_industry=deal.industry,
        deal_amount=deal.amount,
        score=_sub_score(result.get("score")) or 0,
        reasoning=str(result.get("reasoning") or ""),
        strengths=_strings(result.get("strengths")),
        concerns=concerns,
        dealbreakers=_strings(result.get("dealbreakers")),
        industry_score=_sub_score(result.get("industry_score")),
        thesis_score=_sub_score(result.get("thesis_score")),
        stage_score=_sub_score(result.get("stage_score")),
        check_size_score=_sub_score(result.get("check_size_score")),
        deal_data_quality=quality.deal,
        partner_data_quality=quality.partner,
        diligence_id=record.id if record else None,
    )


async def match_deals(request: MatchRequest, records: list[DiligenceRecord], llm: LLMClient) -> dict[str, Any]:
    if not request.deals:
        raise InvalidInput("Partner and deals are required")
    lookup = DiligenceLookup(records)
    partner_quality = assess_data_quality(MatchDeal(id="", name=""), request.partner)
    candidates = [d for d in request.deals if passes_hard_filters(d, request)]
    log.info("Matching %d deals for %s: %d pass hard filters", len(request.deals), request.partner.name,
             len(candidates))

    async def evaluate(deal: MatchDeal) -> DealMatch:
        quality = assess_data_quality(deal, request.partner)
        record = lookup.resolve(deal)
        result = await llm.call(MATCH_SYSTEM, build_match_prompt(deal, request, quality, record))
        return to_deal_match(deal, result, quality, record)

    evaluated = candidates[:MAX_EVALUATED]
    outcomes = await asyncio.gather(*(evaluate(d) for d in evaluated), return_exceptions=True)
    judged: list[DealMatch] = []
    errors: list[str] = []
    for deal, outcome in zip(evaluated, outcomes):
        if isinstance(outcome, LLMCallError):
            log.warning("Matching failed for deal %s: %s", deal.id, outcome)
            errors.append(f"{deal.name}: {outcome}")
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            judged.append(outcome)
    if evaluated and not judged:
        raise MatchingFailed(f"No deal could be evaluated: {'; '.join(errors)}")

    matches = sorted(
        (m for m in judged if not m.dealbreakers and m.score >= request.min_match_score),
        key=lambda m: m.score, reverse=True,
    )
    deal_quality = (round(sum(assess_data_quality(d, request.partner).deal for d in candidates) / len(candidates))
                    if candidates else 0)
    thin = partner_quality.partner < 50 or deal_quality < 50
    return {
        "matches": matches,
        "total_evaluated": len(candidates),
        "total_matches": len(matches),
        "errors": errors,
        "data_quality": {
            "partner": partner_quality.partner,
            "deals": deal_quality,
            "warnings": partner_quality.partner_warnings,
            "recommendation": (
                "Consider adding more detail to deal descriptions and VC investment thesis for better matches"
                if thin else "Data quality is good"
            ),
        },
    }
