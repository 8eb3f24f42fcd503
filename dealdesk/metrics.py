"""Metric reconciliation: free-text metric inputs -> canonical CRM values.

The normalizers are pure and total: input that does not match a known shape is
returned unchanged so the CRM can reject it with its own validation message.
"""
from __future__ import annotations

import re
from typing import Mapping

from dealdesk.config import DealFields
from dealdesk.schemas import CompanySnapshot, MetricSourceDetail, MetricValue
from dealdesk.utils import now_iso, round_half_up

RUNWAY_BUCKETS = ("<3 months", "3 - 6 months", "6 - 12 months", ">12 months")

# Bare numbers above this are read as raw dollars, at or below as millions.
RAW_DOLLAR_THRESHOLD = 100_000

_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")
_MONEY_RE = re.compile(r"^(-?\d+(?:\.\d+)?)([kmb])?$")
_RANGE_RE = re.compile(r"[-–]|to|>|<|under|over|less than|more than")


def _collapse(raw: str) -> str:
    return re.sub(r"\s+", " ", raw.lower()).strip()


def normalize_runway_bucket(raw: str | None) -> str:
    """Map a runway description onto one of :data:`RUNWAY_BUCKETS`."""
    raw = (raw or "").strip()
    if not raw:
        return ""
    text = _collapse(raw)
    if "month" in text:
        if re.match(r"^(<\s*3|under\s*3|less\s*than\s*3)", text):
            return "<3 months"
        if re.match(r"^3\s*[-–]\s*6", text):
            return "3 - 6 months"
        if re.match(r"^6\s*[-–]\s*12", text):
            return "6 - 12 months"
        if re.match(r"^(>\s*12|over\s*12|more\s*than\s*12)", text):
            return ">12 months"
        m = _NUMBER_RE.search(text)
        if m:
            months = float(m.group(1))
            if months < 3:
                return "<3 months"
            if months <= 6:
                return "3 - 6 months"
            if months <= 12:
                return "6 - 12 months"
            return ">12 months"
    return raw


def normalize_deal_runway(raw: str | None) -> str:
    """Single month count for numeric deal fields; ranges and comparisons pass through."""
    raw = (raw or "").strip()
    if not raw:
        return ""
    text = _collapse(raw)
    if _RANGE_RE.search(text):
        return raw
    m = _NUMBER_RE.search(text)
    if not m:
        return raw
    return str(round_half_up(float(m.group(1))))


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def normalize_to_millions(raw: str | None) -> str:
    """``"$4,000,000" -> "4"``, ``"$1.5M" -> "1.5"``, ``"160k" -> "0.16"``."""
    raw = (raw or "").strip()
    if not raw:
        return ""
    m = _MONEY_RE.match(re.sub(r"[$,\s]", "", raw.lower()))
    if not m:
        return raw
    base = float(m.group(1))
    suffix = m.group(2)
    if suffix == "b":
        millions = base * 1000
    elif suffix == "m":
        millions = base
    elif suffix == "k":
        millions = base / 1000
    else:
        millions = base / 1_000_000 if base > RAW_DOLLAR_THRESHOLD else base
    return _format_number(round_half_up(millions, 2))


def normalize_to_integer_dollars(raw: str | None) -> str:
    """Absolute dollars for company-level integer fields."""
    raw = (raw or "").strip()
    if not raw:
        return ""
    cleaned = re.sub(r"[$,\s]", "", raw.lower())
    cleaned = cleaned.replace("thousand", "k").replace("million", "m").replace("billion", "b")
    m = _MONEY_RE.match(cleaned)
    if not m:
        return raw
    multiplier = {"b": 1_000_000_000, "m": 1_000_000, "k": 1_000}.get(m.group(2) or "", 1)
    return str(round_half_up(float(m.group(1)) * multiplier))


# ---------------------------------------------------------------------------
# Conflict policy
# ---------------------------------------------------------------------------


def metric_text(metrics: Mapping[str, MetricValue], key: str) -> str:
    metric = metrics.get(key)
    return metric.value.strip() if metric and metric.value else ""


def merge_auto_metrics(
    existing: Mapping[str, MetricValue],
    values: Mapping[str, str | None],
    *,
    source_detail: MetricSourceDetail = "hubspot",
    stamp: str | None = None,
) -> dict[str, MetricValue]:
    """Fill metric slots with ``auto`` values without touching ``manual`` ones.

    Empty values never clear anything.
    """
    merged = dict(existing)
    stamp = stamp or now_iso()
    for key, value in values.items():
        value = (value or "").strip()
        if not value:
            continue
        current = merged.get(key)
        if current is not None and current.source == "manual":
            continue
        if current is not None and current.value == value:
            continue
        merged[key] = MetricValue(value=value, source="auto", source_detail=source_detail, updated_at=stamp)
    return merged


def merge_crm_metrics(
    existing: Mapping[str, MetricValue],
    crm_values: Mapping[str, str | None],
    *,
    stamp: str | None = None,
) -> dict[str, MetricValue]:
    return merge_auto_metrics(existing, crm_values, source_detail="hubspot", stamp=stamp)


def fill_missing_metrics(
    existing: Mapping[str, MetricValue], crm_values: Mapping[str, str | None],
) -> dict[str, MetricValue]:
    """Read-path overlay: CRM values only for slots with no value at all."""
    merged = dict(existing)
    for key, value in crm_values.items():
        value = (value or "").strip()
        if value and not metric_text(merged, key):
            merged[key] = MetricValue(value=value, source="auto", source_detail="hubspot")
    return merged


# ---------------------------------------------------------------------------
# CRM payloads
# ---------------------------------------------------------------------------


def build_deal_metric_properties(metrics: Mapping[str, MetricValue], fields: DealFields) -> dict[str, str]:
    candidates = {
        fields.raise_amount: normalize_to_integer_dollars(metric_text(metrics, "funding_amount")),
        fields.committed_funding: normalize_to_integer_dollars(metric_text(metrics, "committed")),
        fields.valuation: normalize_to_millions(metric_text(metrics, "valuation")),
        fields.deal_terms: metric_text(metrics, "deal_terms"),
        fields.current_runway: normalize_deal_runway(metric_text(metrics, "current_runway")),
        fields.post_funding_runway: normalize_deal_runway(metric_text(metrics, "post_funding_runway")),
    }
    return {k: v for k, v in candidates.items() if v}


def build_company_metric_properties(
    metrics: Mapping[str, MetricValue], *, include_deal_fields: bool,
) -> dict[str, str]:
    """Company-level payload.

    ``include_deal_fields`` adds the funding fields that normally live on the
    deal; it is set when there is no deal or the deal write failed.
    """
    props: dict[str, str] = {}
    valuation = metric_text(metrics, "valuation")
    lead = metric_text(metrics, "lead")
    if valuation:
        props["funding_valuation"] = normalize_to_integer_dollars(valuation)
    if lead:
        props["lead_information"] = lead
    if include_deal_fields:
        funding = normalize_to_integer_dollars(metric_text(metrics, "funding_amount"))
        committed = normalize_to_integer_dollars(metric_text(metrics, "committed"))
        terms = metric_text(metrics, "deal_terms")
        runway = normalize_runway_bucket(metric_text(metrics, "current_runway"))
        post_runway = normalize_runway_bucket(metric_text(metrics, "post_funding_runway"))
        if funding:
            props["funding_amount"] = funding
        if committed:
            props["current_commitments"] = committed
        if valuation:
            props["funding_valuation"] = valuation
        elif terms:
            props["funding_valuation"] = terms
        if runway:
            props["what_is_your_current_runway_"] = runway
        if post_runway:
            props["post_funding_runway"] = post_runway
    return props


def deal_metric_values(properties: Mapping[str, str | None], fields: DealFields) -> dict[str, str]:
    """CRM deal properties -> metric keys (the inverse of the deal payload)."""
    mapping = {
        "funding_amount": fields.raise_amount,
        "committed": fields.committed_funding,
        "valuation": fields.valuation,
        "deal_terms": fields.deal_terms,
        "current_runway": fields.current_runway,
        "post_funding_runway": fields.post_funding_runway,
        "lead": fields.lead,
    }
    return {key: (properties.get(prop) or "").strip() for key, prop in mapping.items()}


def company_metric_values(company: CompanySnapshot) -> dict[str, str]:
    """Company snapshot fields -> metric keys, the fallback behind deal values."""
    return {
        "funding_amount": company.funding_amount.strip(),
        "committed": company.current_commitments.strip(),
        "valuation": company.funding_valuation.strip(),
        "current_runway": company.current_runway.strip(),
        "post_funding_runway": company.post_funding_runway.strip(),
        "lead": company.lead_information.strip(),
    }
