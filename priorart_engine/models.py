"""Domain records persisted and exchanged by the engine."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .config.models import SearchBundle, VariantLabel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING_VARIANTS = "RUNNING_VARIANTS"
    MERGING = "MERGING"
    SHORTLISTING = "SHORTLISTING"
    FETCHING_DETAILS = "FETCHING_DETAILS"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_WARNINGS = "COMPLETED_WITH_WARNINGS"
    CREDIT_EXHAUSTED = "CREDIT_EXHAUSTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        RunStatus.COMPLETED,
        RunStatus.COMPLETED_WITH_WARNINGS,
        RunStatus.CREDIT_EXHAUSTED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    }
)


class RecordKind(str, Enum):
    PATENT = "patent"
    SCHOLAR = "scholar"


class HitSource(str, Enum):
    LOCAL = "local"
    PROVIDER = "provider"


class VariantOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class IntersectionClass(str, Enum):
    NONE = "none"
    I2 = "I2"
    I3 = "I3"


class DetailStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


class ShortlistOrigin(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


# ----------------------------------------------------------------------
# Run level records
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Run:
    """One search execution launched from a frozen bundle."""

    run_id: str
    bundle_id: str
    bundle_json: str
    fingerprint: str
    owner: str
    status: RunStatus
    started_at: str
    finished_at: str | None = None
    api_calls: int = 0
    credits_charged: int = 1
    cost_estimate: float = 0.0
    warnings: tuple[str, ...] = ()
    summary: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def bundle(self) -> SearchBundle:
        return SearchBundle.model_validate(json.loads(self.bundle_json))


@dataclass(frozen=True, slots=True)
class QueryVariantRecord:
    run_id: str
    label: VariantLabel
    query: str
    num: int
    page: int
    outcome: VariantOutcome = VariantOutcome.PENDING
    api_calls: int = 0
    result_count: int = 0
    executed_at: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RawResult:
    """Unmodified snapshot of one page of local or provider output."""

    run_id: str
    label: VariantLabel
    source: HitSource
    engine: str
    page: int
    payload: dict[str, Any]
    captured_at: str
    raw_id: int | None = None


@dataclass(frozen=True, slots=True)
class VariantHit:
    run_id: str
    label: VariantLabel
    record_id: str
    rank: int
    snippet: str = ""
    source: HitSource = HitSource.PROVIDER


@dataclass(frozen=True, slots=True)
class UnifiedResult:
    """Per-run aggregate of one canonical record."""

    run_id: str
    record_id: str
    found_in: tuple[VariantLabel, ...]
    ranks: Mapping[VariantLabel, int | None]
    intersection: IntersectionClass
    score: float = 0.0
    breakdown: Mapping[str, float] = field(default_factory=dict)
    position: int = 0
    shortlisted: bool = False
    shortlist_origin: ShortlistOrigin | None = None
    detail_status: DetailStatus | None = None


@dataclass(frozen=True, slots=True)
class ShortlistOverride:
    run_id: str
    record_id: str
    include: bool
    created_at: str


# ----------------------------------------------------------------------
# Long-lived records shared across runs
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CanonicalRecord:
    """Deduplicated representation of one real document.

    Dates are ISO ``YYYY-MM-DD`` strings; scholarly records that only carry
    a year use the first day of that year.
    """

    record_id: str
    kind: RecordKind
    title: str = ""
    abstract: str = ""
    language: str = ""
    publication_date: str | None = None
    priority_date: str | None = None
    filing_date: str | None = None
    grant_date: str | None = None
    assignees: tuple[str, ...] = ()
    inventors: tuple[str, ...] = ()
    cpc_codes: tuple[str, ...] = ()
    ipc_codes: tuple[str, ...] = ()
    link: str = ""
    pdf_link: str = ""
    venue: str = ""
    extras: Mapping[str, Any] = field(default_factory=dict)
    first_seen: str | None = None
    last_seen: str | None = None

    def classification_codes(self) -> tuple[str, ...]:
        return (*self.cpc_codes, *self.ipc_codes)


_SCALAR_FIELDS = (
    "title",
    "abstract",
    "language",
    "publication_date",
    "priority_date",
    "filing_date",
    "grant_date",
    "link",
    "pdf_link",
    "venue",
)
_LIST_FIELDS = ("assignees", "inventors", "cpc_codes", "ipc_codes")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == () or value == [] or value == {}


def _union(existing: tuple[str, ...], incoming: tuple[str, ...]) -> tuple[str, ...]:
    seen: dict[str, None] = dict.fromkeys(existing)
    for item in incoming:
        seen.setdefault(item, None)
    return tuple(seen)


def merge_records(existing: CanonicalRecord | None, incoming: CanonicalRecord) -> CanonicalRecord:
    """Field-wise merge used for every canonical upsert.

    A non-empty incoming scalar replaces the stored one; an empty incoming
    value never clears a populated field. List fields are unioned keeping
    first-seen order and extras are merged key by key under the same rule.
    """

    if existing is None:
        return incoming
    if existing.record_id != incoming.record_id:
        raise ValueError(
            f"Cannot merge different records: {existing.record_id} != {incoming.record_id}"
        )

    updates: dict[str, Any] = {}
    for name in _SCALAR_FIELDS:
        value = getattr(incoming, name)
        if not _is_empty(value):
            updates[name] = value
    for name in _LIST_FIELDS:
        updates[name] = _union(getattr(existing, name), getattr(incoming, name))

    extras = dict(existing.extras)
    for key, value in incoming.extras.items():
        if not _is_empty(value):
            extras[key] = value
    updates["extras"] = extras

    updates["first_seen"] = existing.first_seen or incoming.first_seen
    updates["last_seen"] = max(
        (stamp for stamp in (existing.last_seen, incoming.last_seen) if stamp),
        default=None,
    )
    return replace(existing, **updates)


@dataclass(frozen=True, slots=True)
class DetailRecord:
    """Full-record detail for one canonical record, reused until stale."""

    record_id: str
    status: DetailStatus
    fetched_at: str
    claims: tuple[str, ...] = ()
    description: str = ""
    classifications: tuple[dict[str, Any], ...] = ()
    patent_citations: tuple[str, ...] = ()
    non_patent_citations: tuple[str, ...] = ()
    events: tuple[dict[str, Any], ...] = ()
    worldwide_applications: tuple[dict[str, Any], ...] = ()
    pdf_link: str = ""
    error: str | None = None

    def is_fresh(self, now: datetime, staleness_days: int) -> bool:
        if self.status is not DetailStatus.OK:
            return False
        fetched = parse_timestamp(self.fetched_at)
        if fetched is None:
            return False
        return (now - fetched).total_seconds() < staleness_days * 86400


@dataclass(frozen=True, slots=True)
class LocalDocument:
    """Row of the read-only local corpus."""

    record_id: str
    kind: RecordKind
    title: str
    abstract: str = ""
    publication_date: str | None = None
    cpc_codes: tuple[str, ...] = ()
    kind_code: str | None = None
    source_id: str | None = None


__all__ = [
    "CanonicalRecord",
    "DetailRecord",
    "DetailStatus",
    "HitSource",
    "IntersectionClass",
    "LocalDocument",
    "QueryVariantRecord",
    "RawResult",
    "RecordKind",
    "Run",
    "RunStatus",
    "ShortlistOrigin",
    "ShortlistOverride",
    "TERMINAL_STATUSES",
    "UnifiedResult",
    "VariantHit",
    "VariantOutcome",
    "isoformat",
    "merge_records",
    "parse_timestamp",
    "utc_now",
]
