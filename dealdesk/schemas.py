"""Pydantic models for persisted diligence records and the DealDesk API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

MetricSource = Literal["auto", "manual"]
MetricSourceDetail = Literal["notes", "facts", "hubspot", "manual", "market_research"]
DocumentType = Literal["deck", "financial", "legal", "other"]
LinkIngestStatus = Literal["ingested", "email_required", "failed"]
EvidenceStatus = Literal["supported", "weakly_supported", "unknown", "contradicted"]
RecordStatus = Literal["in_progress", "completed", "passed", "declined"]
ThesisFitLabel = Literal["on_thesis", "mixed", "off_thesis"]
ScoringMode = Literal["incremental", "full"]

METRIC_KEYS = (
    "arr", "tam", "market_growth_rate", "acv", "yoy_growth_rate",
    "funding_amount", "committed", "valuation", "deal_terms", "lead",
    "current_runway", "post_funding_runway", "location",
)


# ---------------------------------------------------------------------------
# Record substructures
# ---------------------------------------------------------------------------


class MetricValue(BaseModel):
    value: str
    source: MetricSource = "manual"
    source_detail: MetricSourceDetail | None = None
    updated_at: str | None = None


class CategorizedNote(BaseModel):
    id: str
    category: str
    title: str = ""
    content: str = ""
    created_at: str | None = None
    updated_at: str | None = None


class DiligenceQuestion(BaseModel):
    id: str
    question: str
    answer: str = ""
    status: Literal["open", "answered"] = "open"
    created_at: str | None = None


class DiligenceDocument(BaseModel):
    id: str
    name: str
    type: DocumentType = "other"
    file_type: str = ""
    storage_key: str | None = None
    external_url: str | None = None
    access_email: str | None = None
    extracted_text: str | None = None
    link_ingest_status: LinkIngestStatus | None = None
    link_ingest_message: str | None = None
    link_ingested_at: str | None = None
    uploaded_at: str | None = None
    size: int | None = None


class CriterionScore(BaseModel):
    name: str
    score: int
    manual_override: int | None = None
    reasoning: str = ""
    evidence: list[str] = []
    confidence: int = 50
    evidence_status: EvidenceStatus = "unknown"
    missing_data: list[str] = []
    follow_up_questions: list[str] = []


class CategoryScore(BaseModel):
    category: str
    score: int
    manual_override: int | None = None
    weight: float
    weighted_score: float = 0.0
    criteria: list[CriterionScore] = []
    override_reason: str | None = None
    override_suppress_topics: list[str] = []
    overrided_at: str | None = None


class DiligenceScore(BaseModel):
    overall: int
    categories: list[CategoryScore]
    data_quality: int = 50
    scored_at: str
    rescore_explanation: str | None = None
    follow_up_questions: list[str] = []
    scoring_input_fingerprint: str | None = None
    scoring_mode: ScoringMode | None = None


class CompanySnapshot(BaseModel):
    """Cached CRM company fields, refreshed on link and on create."""
    company_id: str
    name: str = ""
    domain: str = ""
    description: str = ""
    website: str = ""
    industry: str = ""
    funding_amount: str = ""
    funding_valuation: str = ""
    current_commitments: str = ""
    tam_range: str = ""
    current_runway: str = ""
    post_funding_runway: str = ""
    lead_information: str = ""
    pitch_deck_url: str = ""
    fetched_at: str | None = None


class ThesisFit(BaseModel):
    fit: ThesisFitLabel
    confidence: int
    why_fits: list[str] = []
    why_not_fit: list[str] = []
    evidence_gaps: list[str] = []
    evidence_anchors: list[str] = []
    crux_question: str = ""
    computed_at: str
    model_version: str


class DecisionOutcome(BaseModel):
    decision: str
    decision_reason: str = ""
    decided_at: str | None = None


class DiligenceRecord(BaseModel):
    id: str
    company_name: str
    company_url: str | None = None
    company_description: str | None = None
    company_one_liner: str | None = None
    industry: str | None = None
    priority: str | None = None
    metrics: dict[str, MetricValue] = {}
    notes: str = ""
    categorized_notes: list[CategorizedNote] = []
    questions: list[DiligenceQuestion] = []
    folder_id: str | None = None
    documents: list[DiligenceDocument] = []
    score: DiligenceScore | None = None
    recommendation: str | None = None
    status: RecordStatus = "in_progress"
    decision_outcome: DecisionOutcome | None = None
    hubspot_deal_id: str | None = None
    hubspot_company_id: str | None = None
    hubspot_company_name: str | None = None
    hubspot_company_data: CompanySnapshot | None = None
    hubspot_synced_at: str | None = None
    hubspot_deal_stage_id: str | None = None
    hubspot_deal_stage_label: str | None = None
    hubspot_pipeline_id: str | None = None
    hubspot_pipeline_label: str | None = None
    hubspot_amount: str | None = None
    thesis_fit: ThesisFit | None = None
    created_at: str
    updated_at: str

    @field_validator("categorized_notes", "questions", "documents", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


# ---------------------------------------------------------------------------
# Criteria config
# ---------------------------------------------------------------------------


class Criterion(BaseModel):
    name: str
    description: str = ""
    scoring_guidance: str = ""
    insufficient_evidence_cap: int | None = None


class CriteriaCategory(BaseModel):
    name: str
    weight: float
    criteria: list[Criterion] = []


class DiligenceCriteria(BaseModel):
    categories: list[CriteriaCategory]
    last_updated: str | None = None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class RecordCreate(BaseModel):
    company_name: str
    company_url: str | None = None
    company_description: str | None = None
    industry: str | None = None
    priority: str | None = None
    notes: str = ""
    hubspot_deal_id: str | None = None

    @field_validator("company_name")
    @classmethod
    def name_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company_name is required")
        return v


class RecordUpdate(BaseModel):
    """Partial update. ``None`` means "leave as is"; an empty ``hubspot_deal_id`` unlinks."""
    company_name: str | None = None
    company_url: str | None = None
    company_description: str | None = None
    company_one_liner: str | None = None
    industry: str | None = None
    priority: str | None = None
    notes: str | None = None
    categorized_notes: list[CategorizedNote] | None = None
    questions: list[DiligenceQuestion] | None = None
    metrics: dict[str, MetricValue] | None = None
    recommendation: str | None = None
    status: RecordStatus | None = None
    decision_outcome: DecisionOutcome | None = None
    hubspot_deal_id: str | None = None
    hubspot_deal_stage_id: str | None = None
    hubspot_deal_stage_label: str | None = None
    hubspot_pipeline_id: str | None = None
    hubspot_pipeline_label: str | None = None
    hubspot_deal_stage_properties: dict[str, Any] | None = None


class CategoryOverrideRequest(BaseModel):
    category: str
    score: int = Field(ge=0, le=100)
    reason: str | None = None
    suppress_topics: list[str] = []


class CriterionOverrideRequest(BaseModel):
    category: str
    criterion: str
    score: int = Field(ge=0, le=100)


class RescoreRequest(BaseModel):
    force_full: bool = False
    category: str | None = None


class LinkDocumentRequest(BaseModel):
    url: str
    name: str | None = None
    type: DocumentType = "deck"
    access_email: str | None = None


class CreateCommitRequest(BaseModel):
    company_properties: dict[str, str] = {}
    deal_properties: dict[str, str] = {}
    deal_id: str | None = None


class PushScoreRequest(BaseModel):
    deal_stage: str | None = None


class FeedbackCreate(BaseModel):
    diligence_id: str
    company_name: str
    reviewer_fit: str
    model_fit: str | None = None
    model_confidence: Any = None
    reviewer_confidence: Any = None
    reviewer: str | None = None
    notes: str | None = None
    why_fits: list[Any] = []
    why_not_fit: list[Any] = []
    evidence_gaps: list[Any] = []
    tags: list[Any] = []


class FeedbackImport(BaseModel):
    entries: list[dict[str, Any]]


class PartnerProfile(BaseModel):
    """The investor a batch of CRM deals is matched against."""
    name: str
    type: str = ""
    thesis: str = ""
    check_size: str = ""
    investment_stage: str = ""
    investment_space: str = ""
    regions: str = ""


class MatchDeal(BaseModel):
    id: str
    name: str
    industry: str = ""
    description: str = ""
    stage: str = ""
    stage_name: str = ""
    amount: str = ""
    deal_terms: str = ""


class MatchWeights(BaseModel):
    industry: float = 30
    thesis: float = 30
    stage: float = 25
    check_size: float = 15


class MatchRequest(BaseModel):
    partner: PartnerProfile
    deals: list[MatchDeal]
    custom_guidance: str = ""
    min_match_score: int = Field(50, ge=0, le=100)
    scoring_weights: MatchWeights = Field(default_factory=MatchWeights)
    check_size_strictness: float = Field(25, ge=0, le=100)
    min_data_quality: int = Field(30, ge=0, le=100)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class DealMatch(BaseModel):
    deal_id: str
    deal_name: str
    deal_stage: str = ""
    deal_industry: str = ""
    deal_amount: str = ""
    score: int
    reasoning: str = ""
    strengths: list[str] = []
    concerns: list[str] = []
    dealbreakers: list[str] = []
    industry_score: int | None = None
    thesis_score: int | None = None
    stage_score: int | None = None
    check_size_score: int | None = None
    deal_data_quality: int = 0
    partner_data_quality: int = 0
    diligence_id: str | None = None


class ThesisFitFeedbackEntry(BaseModel):
    id: str
    diligence_id: str
    company_name: str
    reviewer_fit: ThesisFitLabel
    model_fit: ThesisFitLabel | None = None
    model_confidence: int | None = None
    reviewer_confidence: int | None = None
    reviewer: str = ""
    notes: str = ""
    why_fits: list[str] = []
    why_not_fit: list[str] = []
    evidence_gaps: list[str] = []
    tags: list[str] = []
    signature: str
    created_at: str


class DealLookup(BaseModel):
    id: str
    name: str
    stage_id: str | None = None
    stage_label: str | None = None
    pipeline_id: str | None = None
    pipeline_label: str | None = None
    amount: str | None = None
    priority: str | None = None
    raise_amount: str | None = None
    committed_funding: str | None = None
    deal_valuation: str | None = None
    deal_terms: str | None = None
    current_runway: str | None = None
    post_funding_runway: str | None = None
    description: str = ""
    url: str = ""


class AutoLinkResult(BaseModel):
    status: Literal["linked", "no_match", "ambiguous", "error", "skipped"]
    deal_id: str | None = None
    candidate_count: int = 0
    message: str | None = None


class RecordResponse(BaseModel):
    success: bool = True
    record: DiligenceRecord
    warnings: list[str] = []


class RecordListResponse(BaseModel):
    success: bool = True
    records: list[DiligenceRecord]
    auto_link: dict[str, AutoLinkResult] = {}
