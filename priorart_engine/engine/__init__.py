"""Engine components: resolve → search → normalize → merge → score → shortlist → details."""

from .detail_fetcher import DetailFetcher, DetailOutcome
from .local_resolver import LocalResolution, LocalResolver, tokenize_query
from .merge import MergedRecord, classify, merge_hits
from .normalizer import normalize_detail, normalize_identifier, normalize_page
from .provider import ProviderClient, ProviderResponse
from .rate_limiter import DETAIL_ENDPOINT, SEARCH_ENDPOINT, Clock, RateLimiter, SystemClock
from .retry import RetryPolicy
from .scoring import ScoreBreakdown, ScoredRecord, ScoringEngine
from .shortlist import ShortlistSelector
from .state import RunEvent, RunState, transition
from .thread_pool import ThreadPoolManager

__all__ = [
    "Clock",
    "DETAIL_ENDPOINT",
    "DetailFetcher",
    "DetailOutcome",
    "LocalResolution",
    "LocalResolver",
    "MergedRecord",
    "ProviderClient",
    "ProviderResponse",
    "RateLimiter",
    "RetryPolicy",
    "RunEvent",
    "RunState",
    "SEARCH_ENDPOINT",
    "ScoreBreakdown",
    "ScoredRecord",
    "ScoringEngine",
    "ShortlistSelector",
    "SystemClock",
    "ThreadPoolManager",
    "classify",
    "merge_hits",
    "normalize_detail",
    "normalize_identifier",
    "normalize_page",
    "tokenize_query",
    "transition",
]
