"""Pydantic models used across the prior-art engine configuration flow."""

from __future__ import annotations

import hashlib
import json
import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class VariantLabel(str, Enum):
    """The three fixed query formulations executed per run."""

    BROAD = "broad"
    BASELINE = "baseline"
    NARROW = "narrow"


VARIANT_ORDER: tuple[VariantLabel, ...] = (
    VariantLabel.BROAD,
    VariantLabel.BASELINE,
    VariantLabel.NARROW,
)

DEFAULT_DETAIL_FIELDS: tuple[str, ...] = (
    "title",
    "abstract",
    "claims",
    "classifications",
    "publication_date",
    "priority_date",
    "worldwide_applications",
    "events",
    "patent_citations",
    "non_patent_citations",
    "pdf",
    "description",
)


# ----------------------------------------------------------------------
# Bundle input
# ----------------------------------------------------------------------
class QueryVariantSpec(BaseModel):
    """One labelled query of an approved bundle."""

    model_config = ConfigDict(frozen=True)

    label: VariantLabel
    q: str = Field(min_length=1, max_length=300)
    num: int = Field(default=20, ge=1, le=50)
    page: int = Field(default=1, ge=1, le=20)
    notes: str = ""

    @field_validator("q")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("query text cannot be blank")
        return text


class SearchBundle(BaseModel):
    """Frozen, approved query bundle consumed read-only by the engine.

    The per-variant fields are validated here; whether the bundle carries
    exactly one variant per label is checked by the orchestrator so that a
    corrupt bundle produces a FAILED run rather than a rejected request.
    """

    model_config = ConfigDict(frozen=True)

    bundle_id: str
    title: str = ""
    query_variants: tuple[QueryVariantSpec, ...]
    cpc_candidates: tuple[str, ...] = ()
    ipc_candidates: tuple[str, ...] = ()
    core_concepts: tuple[str, ...] = ()
    technical_features: tuple[str, ...] = ()
    fields_for_details: tuple[str, ...] | None = None
    include_scholar: bool = False

    @field_validator("cpc_candidates", "ipc_candidates", mode="before")
    @classmethod
    def _coerce_codes(cls, value: Any) -> tuple[str, ...]:
        if value in (None, ""):
            return ()
        if isinstance(value, str):
            value = [value]
        return tuple(str(code).strip().upper() for code in value if str(code).strip())

    def variant(self, label: VariantLabel) -> QueryVariantSpec | None:
        for spec in self.query_variants:
            if spec.label is label:
                return spec
        return None

    def classification_codes(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for code in (*self.cpc_candidates, *self.ipc_candidates):
            seen.setdefault(code.replace(" ", ""), None)
        return tuple(seen)

    def detail_fields(self) -> tuple[str, ...]:
        return self.fields_for_details or DEFAULT_DETAIL_FIELDS

    def fingerprint(self) -> str:
        """Return a stable sha256 over the canonical JSON form of the bundle."""

        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ----------------------------------------------------------------------
# Engine configuration
# ----------------------------------------------------------------------
class ProviderConfig(BaseModel):
    """External search provider endpoint settings.

    The API key itself never lives in the configuration file; only the
    name of the environment variable holding it does.
    """

    base_url: str = "https://serpapi.com/search"
    api_key_env: str = "SERP_API_KEY"
    locale: str = "en"
    request_timeout: float = 30.0
    patents_engine: str = "google_patents"
    scholar_engine: str = "google_scholar"
    details_engine: str = "google_patents_details"
    cost_per_call: float = 0.01

    @field_validator("request_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("request_timeout must be > 0")
        return value

    def resolve_api_key(self) -> str:
        return os.environ.get(self.api_key_env, "").strip()


class RateLimitConfig(BaseModel):
    """Minimum spacing between calls to one provider endpoint."""

    min_interval_seconds: float = Field(default=5.0, ge=0.0)
    acquire_timeout_seconds: float | None = Field(default=300.0)

    @field_validator("acquire_timeout_seconds")
    @classmethod
    def _positive_deadline(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("acquire_timeout_seconds must be > 0 or null")
        return value


class RetryConfig(BaseModel):
    """Exponential backoff for transient provider failures."""

    max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_max_seconds: float = Field(default=30.0, ge=0.0)


class SearchConfig(BaseModel):
    """Paging caps and variant parallelism."""

    max_pages_per_variant: int = Field(default=1, ge=1)
    max_results_per_page: int = Field(default=50, ge=1, le=100)
    variant_parallelism: int = Field(default=3, ge=1, le=3)


class ShortlistConfig(BaseModel):
    size: int = Field(default=10, ge=1)


class DetailConfig(BaseModel):
    """Detail enrichment staleness policy."""

    staleness_days: int = Field(default=14, ge=1, le=365)


class ScoringWeights(BaseModel):
    """Weights and bonuses of the relevance score."""

    title_density: float = Field(default=0.35, ge=0.0)
    snippet_density: float = Field(default=0.20, ge=0.0)
    variant_signal: float = Field(default=0.20, ge=0.0)
    classification_overlap: float = Field(default=0.15, ge=0.0)
    recency: float = Field(default=0.10, ge=0.0)
    consensus_i3: float = Field(default=0.15, ge=0.0)
    consensus_i2: float = Field(default=0.08, ge=0.0)
    variant_weights: dict[VariantLabel, float] = Field(
        default_factory=lambda: {
            VariantLabel.NARROW: 1.0,
            VariantLabel.BASELINE: 0.6,
            VariantLabel.BROAD: 0.3,
        }
    )
    recency_window_years: float = Field(default=10.0, gt=0.0)

    @model_validator(mode="after")
    def _validate_variant_weights(self) -> "ScoringWeights":
        missing = [label.value for label in VARIANT_ORDER if label not in self.variant_weights]
        if missing:
            raise ValueError(f"variant_weights missing labels: {missing}")
        for label, weight in self.variant_weights.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"variant weight for {label.value} must be within [0, 1]")
        return self


class EngineConfig(BaseModel):
    """Global controls shared by every run in a deployment."""

    database_path: Path = Field(default=Path("data/priorart.db"))
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    shortlist: ShortlistConfig = Field(default_factory=ShortlistConfig)
    details: DetailConfig = Field(default_factory=DetailConfig)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_paths(cls, value: Any) -> Path:
        return Path(value)

    def resolved_database_path(self, base_dir: Path) -> Path:
        """Return the database path relative to the project data directory."""

        if not self.database_path.is_absolute():
            return (base_dir / self.database_path).resolve()
        return self.database_path


__all__ = [
    "DEFAULT_DETAIL_FIELDS",
    "DetailConfig",
    "EngineConfig",
    "ProviderConfig",
    "QueryVariantSpec",
    "RateLimitConfig",
    "RetryConfig",
    "ScoringWeights",
    "SearchBundle",
    "SearchConfig",
    "ShortlistConfig",
    "VARIANT_ORDER",
    "VariantLabel",
]
