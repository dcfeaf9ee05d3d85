"""Selective detail enrichment for shortlisted records."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Sequence

import structlog

from ..errors import ProviderError, QuotaExceededError, RateLimitTimeout
from ..models import DetailRecord, DetailStatus, RecordKind, isoformat, utc_now
from .normalizer import identifier_kind, looks_like_patent, normalize_detail
from .provider import ProviderClient

if TYPE_CHECKING:
    from ..infra.repository import RunRepository


@dataclass(slots=True)
class DetailOutcome:
    fetched: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    api_calls: int = 0
    warnings: list[str] = field(default_factory=list)


class DetailFetcher:
    """Fetch details one record at a time, reusing fresh cached details."""

    def __init__(
        self,
        provider: ProviderClient,
        repository: "RunRepository",
        staleness_days: int = 14,
        now: Callable[[], datetime] = utc_now,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.provider = provider
        self.repository = repository
        self.staleness_days = staleness_days
        self.now = now
        self.logger = logger or structlog.get_logger("priorart_engine.detail_fetcher")

    def fetch_for(
        self,
        run_id: str,
        record_ids: Sequence[str],
        fields: Sequence[str] = (),
        *,
        timeout: float | None = None,
        on_calls: Callable[[int], None] | None = None,
    ) -> DetailOutcome:
        """Enrich ``record_ids`` in order.

        Record-level failures are recorded and the loop continues; a quota
        signal is re-raised after the spent calls have been reported.
        """

        outcome = DetailOutcome()

        def _spent(count: int) -> None:
            outcome.api_calls += count
            if on_calls and count:
                on_calls(count)

        for record_id in record_ids:
            if identifier_kind(record_id) is RecordKind.SCHOLAR or not looks_like_patent(record_id):
                outcome.skipped.append(record_id)
                self.repository.set_detail_status(run_id, record_id, DetailStatus.SKIPPED)
                continue

            now = self.now()
            existing = self.repository.get_detail(record_id)
            if existing is not None and existing.is_fresh(now, self.staleness_days):
                outcome.reused.append(record_id)
                self.repository.set_detail_status(run_id, record_id, DetailStatus.OK)
                self.logger.debug("detail_reused", run_id=run_id, record_id=record_id)
                continue

            try:
                response = self.provider.fetch_detail(record_id, fields, timeout=timeout)
            except QuotaExceededError as exc:
                _spent(exc.attempts)
                raise
            except (ProviderError, RateLimitTimeout) as exc:
                _spent(getattr(exc, "attempts", 0))
                self._record_failure(run_id, record_id, existing, str(exc), now)
                outcome.failed.append(record_id)
                outcome.warnings.append(f"Detail fetch failed for {record_id}: {exc}")
                continue

            _spent(response.attempts)
            fetched_at = isoformat(now)
            self.repository.insert_raw_detail(record_id, response.payload, fetched_at, run_id=run_id)
            update, detail = normalize_detail(record_id, response.payload, fetched_at)
            self.repository.upsert_detail(detail)
            self.repository.upsert_record(update)
            self.repository.set_detail_status(run_id, record_id, DetailStatus.OK)
            outcome.fetched.append(record_id)
            self.logger.info("detail_fetched", run_id=run_id, record_id=record_id)
        return outcome

    def _record_failure(
        self,
        run_id: str,
        record_id: str,
        existing: DetailRecord | None,
        error: str,
        now: datetime,
    ) -> None:
        self.logger.warning("detail_fetch_failed", run_id=run_id, record_id=record_id, error=error)
        if existing is not None:
            failed = replace(existing, status=DetailStatus.FAILED, error=error)
        else:
            failed = DetailRecord(
                record_id=record_id,
                status=DetailStatus.FAILED,
                fetched_at=isoformat(now),
                error=error,
            )
        self.repository.upsert_detail(failed)
        self.repository.set_detail_status(run_id, record_id, DetailStatus.FAILED)


__all__ = ["DetailFetcher", "DetailOutcome"]
