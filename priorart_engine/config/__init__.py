"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository, parse_bundle
from .models import (
    DEFAULT_DETAIL_FIELDS,
    VARIANT_ORDER,
    DetailConfig,
    EngineConfig,
    ProviderConfig,
    QueryVariantSpec,
    RateLimitConfig,
    RetryConfig,
    ScoringWeights,
    SearchBundle,
    SearchConfig,
    ShortlistConfig,
    VariantLabel,
)

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
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
    "parse_bundle",
]
