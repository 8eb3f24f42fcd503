from __future__ import annotations

import csv
import io
import logging
import os
import threading
import time
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from dealdesk.errors import ConfigurationMissing
from dealdesk.schemas import CriteriaCategory, Criterion, DiligenceCriteria
from dealdesk.utils import now_iso

log = logging.getLogger(__name__)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_flag(name: str) -> bool:
    return _env(name).lower() in ("1", "true", "yes", "on")


def _resolve_project_root() -> Path:
    override = _env("DEALDESK_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_data_dir() -> Path:
    override = _env("DEALDESK_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_project_root() / "data"


class DealFields(BaseModel):
    """CRM deal property names the synchronizer writes; each overridable by env."""
    priority: str = Field(default_factory=lambda: _env("HUBSPOT_DEAL_PRIORITY_PROPERTY", "hs_priority"))
    raise_amount: str = Field(default_factory=lambda: _env("HUBSPOT_DEAL_RAISE_AMOUNT_PROPERTY", "raise_amount"))
    committed_funding: str = Field(
        default_factory=lambda: _env("HUBSPOT_DEAL_COMMITTED_FUNDING_PROPERTY", "committed_funding")
    )
    valuation: str = Field(default_factory=lambda: _env("HUBSPOT_DEAL_VALUATION_PROPERTY", "deal_valuation"))
    deal_terms: str = Field(default_factory=lambda: _env("HUBSPOT_DEAL_TERMS_PROPERTY", "deal_terms"))
    current_runway: str = Field(
        default_factory=lambda: _env("HUBSPOT_DEAL_CURRENT_RUNWAY_PROPERTY", "current_runway")
    )
    post_funding_runway: str = Field(
        default_factory=lambda: _env("HUBSPOT_DEAL_POST_FUNDING_RUNWAY_PROPERTY", "post_runway_funding")
    )
    lead: str = Field(default_factory=lambda: _env("HUBSPOT_DEAL_LEAD_PROPERTY", "deal_lead"))

    def read_properties(self) -> list[str]:
        return [
            "dealname", "dealstage", "pipeline", "amount", "description",
            self.priority, self.raise_amount, self.committed_funding, self.valuation,
            self.deal_terms, self.current_runway, self.post_funding_runway, self.lead,
        ]


# CRM company property -> CompanySnapshot field
COMPANY_PROPERTY_MAP: dict[str, str] = {
    "name": "name",
    "domain": "domain",
    "description": "description",
    "website": "website",
    "industry": "industry",
    "funding_amount": "funding_amount",
    "funding_valuation": "funding_valuation",
    "current_commitments": "current_commitments",
    "tam_range": "tam_range",
    "what_is_your_current_runway_": "current_runway",
    "post_funding_runway": "post_funding_runway",
    "lead_information": "lead_information",
    "pitch_deck_url": "pitch_deck_url",
}


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=_resolve_data_dir)
    config_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "config")

    storage_backend: str = Field(default_factory=lambda: _env("STORAGE_BACKEND", "local").lower())
    gcs_bucket: str = Field(default_factory=lambda: _env("GCS_BUCKET"))

    google_client_email: str = Field(default_factory=lambda: _env("GOOGLE_CLIENT_EMAIL"))
    google_private_key: str = Field(default_factory=lambda: _env("GOOGLE_PRIVATE_KEY"))
    google_drive_folder_id: str = Field(default_factory=lambda: _env("GOOGLE_DRIVE_FOLDER_ID"))
    google_drive_scope: str = Field(
        default_factory=lambda: _env("GOOGLE_DRIVE_SCOPE", "https://www.googleapis.com/auth/drive")
    )

    hubspot_access_token: str = Field(default_factory=lambda: _env("HUBSPOT_ACCESS_TOKEN"))
    hubspot_base_url: str = Field(default_factory=lambda: _env("HUBSPOT_BASE_URL", "https://api.hubapi.com"))
    hubspot_portal_id: str = Field(default_factory=lambda: _env("HUBSPOT_PORTAL_ID"))
    default_pipeline_id: str = Field(default_factory=lambda: _env("HUBSPOT_DEFAULT_DEAL_PIPELINE_ID", "default"))
    default_stage_id: str = Field(default_factory=lambda: _env("HUBSPOT_DEFAULT_DEAL_STAGE_ID", "qualifiedtobuy"))
    deal_fields: DealFields = Field(default_factory=DealFields)

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic").lower())
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    llm_max_tokens: int = Field(default_factory=lambda: int(_env("LLM_MAX_TOKENS", "4096")))
    anthropic_api_key: str = Field(default_factory=lambda: _env("ANTHROPIC_API_KEY"))
    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    openai_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL"))

    app_url: str = Field(default_factory=lambda: _env("DEALDESK_APP_URL", "http://localhost:8001"))
    criteria_file: Path = Field(
        default_factory=lambda: Path(_env("DILIGENCE_CRITERIA_FILE"))
        if _env("DILIGENCE_CRITERIA_FILE") else _resolve_project_root() / "config" / "criteria.yaml"
    )
    criteria_ttl_seconds: float = Field(default_factory=lambda: float(_env("DILIGENCE_CRITERIA_TTL", "3600")))
    thesis_file: Path = Field(default_factory=lambda: _resolve_project_root() / "config" / "thesis.md")
    web_research: bool = Field(default_factory=lambda: _env_flag("DEALDESK_WEB_RESEARCH"))
    debug: bool = Field(default_factory=lambda: _env_flag("DEALDESK_DEBUG"))

    request_timeout_seconds: float = 15.0
    mirror_timeout_seconds: float = 20.0

    def ensure_directories(self) -> None:
        if self.storage_backend == "local":
            self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def ocr_configured(self) -> bool:
        return bool(self.google_client_email and self.google_private_key)

    @property
    def crm_configured(self) -> bool:
        token = self.hubspot_access_token
        return bool(token) and token != "your_hubspot_access_token_here"

    def deal_url(self, deal_id: str) -> str:
        return f"https://app.hubspot.com/contacts/{self.hubspot_portal_id or '0'}/record/0-3/{deal_id}"

    def diligence_link(self, record_id: str) -> str:
        return f"{self.app_url.rstrip('/')}/diligence/{record_id}"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_thesis(self) -> str:
        if not self.thesis_file.exists():
            return "No thesis document configured."
        return self.thesis_file.read_text(encoding="utf-8").strip() or "No thesis document configured."


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings


# ---------------------------------------------------------------------------
# Criteria config service
# ---------------------------------------------------------------------------

_CSV_COLUMNS = ("category", "weight", "criterion", "description", "scoring guidance",
                "insufficient evidence cap")


def _parse_cap(raw: Any) -> int | None:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def parse_criteria_rows(rows: list[list[str]]) -> DiligenceCriteria:
    """Sheet-style rows: a category name (and weight) starts a block, blank category
    cells continue it."""
    categories: dict[str, CriteriaCategory] = {}
    current = ""
    for row in rows:
        cells = [c.strip() for c in row] + [""] * (len(_CSV_COLUMNS) - len(row))
        category, weight, criterion, description, guidance, cap = cells[:6]
        if not category and not criterion:
            continue
        if category:
            current = category
            if current not in categories:
                try:
                    parsed_weight = float(weight) if weight else 0.0
                except ValueError:
                    parsed_weight = 0.0
                categories[current] = CriteriaCategory(name=current, weight=parsed_weight)
        if criterion and current:
            categories[current].criteria.append(Criterion(
                name=criterion, description=description, scoring_guidance=guidance,
                insufficient_evidence_cap=_parse_cap(cap),
            ))
    return DiligenceCriteria(categories=list(categories.values()), last_updated=now_iso())


def parse_criteria_yaml(data: dict[str, Any]) -> DiligenceCriteria:
    raw = data.get("categories")
    if not isinstance(raw, list):
        return DiligenceCriteria(categories=[], last_updated=now_iso())
    try:
        categories = [CriteriaCategory.model_validate(c) for c in raw]
    except ValidationError as exc:
        raise ConfigurationMissing(f"Criteria config is malformed: {exc.error_count()} errors") from exc
    return DiligenceCriteria(categories=categories, last_updated=now_iso())


class CriteriaConfig:
    """Scoring rubric loaded from a YAML or CSV file, cached for ``ttl`` seconds.

    Injected into the scoring orchestrator; ``refresh()`` forces a reload.
    """

    def __init__(self, path: Path, ttl: float = 3600.0, clock=time.monotonic):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: DiligenceCriteria | None = None
        self._loaded_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> CriteriaConfig:
        return cls(settings.criteria_file, settings.criteria_ttl_seconds)

    def get(self) -> DiligenceCriteria:
        with self._lock:
            if self._cached is not None and self._clock() - self._loaded_at < self.ttl:
                return self._cached
        return self.refresh()

    def refresh(self) -> DiligenceCriteria:
        criteria = self._load()
        total = sum(c.weight for c in criteria.categories)
        if abs(total - 100) > 0.1:
            log.warning("Total category weights = %s%%, expected 100%%", total)
        with self._lock:
            self._cached = criteria
            self._loaded_at = self._clock()
        return criteria

    def _load(self) -> DiligenceCriteria:
        if not self.path.exists():
            raise ConfigurationMissing(
                f"Criteria file not found: {self.path}",
                hint="Set DILIGENCE_CRITERIA_FILE to a YAML or CSV rubric",
            )
        text = self.path.read_text(encoding="utf-8")
        if self.path.suffix.lower() == ".csv":
            rows = list(csv.reader(io.StringIO(text)))
            if rows and rows[0] and rows[0][0].strip().lower() == "category":
                rows = rows[1:]
            criteria = parse_criteria_rows(rows)
        else:
            criteria = parse_criteria_yaml(yaml.safe_load(text) or {})
        if not criteria.categories:
            raise ConfigurationMissing(f"No categories found in {self.path}")
        return criteria
