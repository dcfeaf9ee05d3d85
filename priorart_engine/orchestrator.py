"""Run orchestrator wiring resolver, provider, merge, scoring, shortlist and details."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Event, Lock
from typing import Any, Callable, Mapping

import structlog

from .config import (
    VARIANT_ORDER,
    ConfigRepository,
    EngineConfig,
    QueryVariantSpec,
    SearchBundle,
    VariantLabel,
    parse_bundle,
)
from .engine import (
    DetailFetcher,
    DetailOutcome,
    LocalResolver,
    ProviderClient,
    RateLimiter,
    RetryPolicy,
    RunEvent,
    RunState,
    ScoringEngine,
    ShortlistSelector,
    ThreadPoolManager,
    merge_hits,
    normalize_identifier,
    normalize_page,
    transition,
)
from .engine.local_resolver import CorpusReader
from .errors import (
    InvalidTransition,
    InvariantViolation,
    ProviderError,
    QuotaExceededError,
    RateLimitTimeout,
    ShortlistOverrideError,
)
from .infra import LocalCorpus, RunRepository, SQLiteManager
from .logging_conf import close_run_logger, configure_logging, run_logger
from .models import (
    CanonicalRecord,
    HitSource,
    QueryVariantRecord,
    RawResult,
    RecordKind,
    Run,
    RunStatus,
    ShortlistOverride,
    UnifiedResult,
    VariantOutcome,
    isoformat,
    parse_timestamp,
    utc_now,
)

LOCAL_ENGINE = "local"


@dataclass(slots=True)
class VariantReport:
    label: VariantLabel
    outcome: VariantOutcome = VariantOutcome.PENDING
    api_calls: int = 0
    local_count: int = 0
    result_count: int = 0
    error: str | None = None


@dataclass
class _RunContext:
    """Mutable per-run bookkeeping shared with the variant workers."""

    run_id: str
    bundle: SearchBundle
    started_at: datetime
    logger: structlog.BoundLogger
    call_timeout: float | None = None
    state: RunState = field(default_factory=RunState)
    quota: Event = field(default_factory=Event)
    cancel: Event = field(default_factory=Event)
    notes: list[str] = field(default_factory=list)
    _notes_lock: Lock = field(default_factory=Lock)

    def note(self, message: str) -> None:
        with self._notes_lock:
            if message not in self.notes:
                self.notes.append(message)


class Orchestrator:
    """Central coordinator managing the lifecycle of search runs."""

    def __init__(
        self,
        config: EngineConfig,
        repository: RunRepository,
        corpus: CorpusReader,
        provider: ProviderClient,
        thread_pool: ThreadPoolManager | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.repository = repository
        self.provider = provider
        self.thread_pool = thread_pool or ThreadPoolManager(config.search.variant_parallelism)
        self.now = now
        self.resolver = LocalResolver(corpus)
        self.scoring = ScoringEngine(config.scoring)
        self.selector = ShortlistSelector(config.shortlist.size)
        self.detail_fetcher = DetailFetcher(
            provider,
            repository,
            staleness_days=config.details.staleness_days,
            now=now,
        )
        self.logger = configure_logging().bind(component="orchestrator")
        self._active: dict[str, _RunContext] = {}
        self._active_lock = Lock()

    @classmethod
    def from_repository(
        cls,
        config_repository: ConfigRepository,
        storage: SQLiteManager,
        rate_limiter: RateLimiter | None = None,
        thread_pool: ThreadPoolManager | None = None,
    ) -> "Orchestrator":
        config = config_repository.load_global_config()
        db_path = config_repository.database_path()
        limiter = rate_limiter or RateLimiter(config.rate_limit.min_interval_seconds)
        provider = ProviderClient(
            config.provider,
            limiter,
            retry=RetryPolicy.from_config(config.retry),
        )
        return cls(
            config=config,
            repository=RunRepository(storage, db_path),
            corpus=LocalCorpus(storage, db_path),
            provider=provider,
            thread_pool=thread_pool,
        )

    def close(self) -> None:
        self.provider.close()
        self.thread_pool.shutdown()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def start_run(
        self,
        bundle: SearchBundle | Mapping[str, Any],
        owner: str = "local",
        run_id: str | None = None,
        call_timeout: float | None = None,
    ) -> Run:
        """Execute one run to a terminal status and return it.

        A malformed bundle raises ``BundleValidationError`` before any run
        row exists. Everything after that is reported through the run's
        status and summary.
        """

        if not isinstance(bundle, SearchBundle):
            bundle = parse_bundle(dict(bundle))
        run_id = run_id or uuid.uuid4().hex
        started_at = self.now()
        run = Run(
            run_id=run_id,
            bundle_id=bundle.bundle_id,
            bundle_json=json.dumps(bundle.model_dump(mode="json"), ensure_ascii=False, sort_keys=True),
            fingerprint=bundle.fingerprint(),
            owner=owner,
            status=RunStatus.PENDING,
            started_at=isoformat(started_at),
            credits_charged=1,
        )
        variants: dict[VariantLabel, QueryVariantRecord] = {}
        for spec in bundle.query_variants:
            variants.setdefault(
                spec.label,
                QueryVariantRecord(
                    run_id=run_id, label=spec.label, query=spec.q, num=spec.num, page=spec.page
                ),
            )
        self.repository.create_run(run, list(variants.values()))

        timeout = call_timeout if call_timeout is not None else self.config.rate_limit.acquire_timeout_seconds
        ctx = _RunContext(
            run_id=run_id,
            bundle=bundle,
            started_at=started_at,
            logger=run_logger(run_id),
            call_timeout=timeout,
        )
        ctx.logger.info(
            "run_created", bundle_id=bundle.bundle_id, fingerprint=run.fingerprint, owner=owner
        )
        with self._active_lock:
            self._active[run_id] = ctx
        try:
            self._execute(ctx)
        finally:
            with self._active_lock:
                self._active.pop(run_id, None)
            close_run_logger(run_id)
        return self.repository.get_run(run_id)

    def start_run_async(self, bundle: SearchBundle, owner: str = "local") -> str:
        run_id = uuid.uuid4().hex
        self.thread_pool.get("runs").submit(self.start_run, bundle, owner, run_id)
        return run_id

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; honoured only before merging begins."""

        with self._active_lock:
            ctx = self._active.get(run_id)
        if ctx is not None:
            if ctx.state.status in (RunStatus.PENDING, RunStatus.RUNNING_VARIANTS):
                ctx.cancel.set()
                ctx.logger.info("cancel_requested")
                return True
            return False
        run = self.repository.get_run(run_id)
        if run.status is RunStatus.PENDING:
            return self.repository.compare_and_set_status(
                run_id,
                RunStatus.PENDING,
                RunStatus.CANCELLED,
                finished_at=isoformat(self.now()),
                summary="Run cancelled before execution.",
            )
        return False

    def get_run(self, run_id: str) -> Run:
        return self.repository.get_run(run_id)

    def list_results(
        self, run_id: str, shortlisted_only: bool = False, limit: int | None = None
    ) -> list[UnifiedResult]:
        self.repository.get_run(run_id)
        return self.repository.list_unified_results(run_id, shortlisted_only=shortlisted_only, limit=limit)

    def override_shortlist(self, run_id: str, record_id: str, include: bool) -> list[UnifiedResult]:
        """Force a record onto (or off) the shortlist; the choice survives rescoring."""

        run = self.repository.get_run(run_id)
        try:
            canonical_id = normalize_identifier(record_id)
        except ValueError as exc:
            raise ShortlistOverrideError(str(exc)) from exc
        results = self.repository.list_unified_results(run_id)
        if not results:
            raise ShortlistOverrideError(f"Run {run_id} has no results to shortlist yet")
        ordered_ids = [result.record_id for result in results]
        overrides = self.repository.list_overrides(run_id)
        self.selector.check_override(ordered_ids, overrides, canonical_id, include)
        self.repository.set_override(
            ShortlistOverride(
                run_id=run_id,
                record_id=canonical_id,
                include=include,
                created_at=isoformat(self.now()),
            )
        )
        updated = self._apply_shortlist(run_id, results)
        self.repository.replace_unified_results(run_id, updated)
        run_logger(run_id).info(
            "shortlist_overridden", record_id=canonical_id, include=include, status=run.status.value
        )
        close_run_logger(run_id)
        return updated

    def recompute(self, run_id: str) -> list[UnifiedResult]:
        """Rerun merge, scoring and shortlist over the stored hits of a finished run."""

        run = self.repository.get_run(run_id)
        if not run.is_terminal:
            raise InvalidTransition(f"Run {run_id} is still {run.status.value}")
        reference = parse_timestamp(run.started_at) or self.now()
        previous = {result.record_id: result for result in self.repository.list_unified_results(run_id)}
        results = self._apply_shortlist(run_id, self._build_unified(run_id, run.bundle(), reference, previous))
        self.repository.replace_unified_results(run_id, results)
        return results

    def fetch_details(self, run_id: str, call_timeout: float | None = None) -> DetailOutcome:
        """Refresh details for a finished run's current shortlist.

        Fresh cached details are reused. New failures are appended to the
        run's warnings without changing its terminal status.
        """

        run = self.repository.get_run(run_id)
        if not run.is_terminal:
            raise InvalidTransition(f"Run {run_id} is still {run.status.value}")
        log = run_logger(run_id)
        shortlisted = [r.record_id for r in self.repository.list_unified_results(run_id, shortlisted_only=True)]
        try:
            outcome = self.detail_fetcher.fetch_for(
                run_id,
                shortlisted,
                run.bundle().detail_fields(),
                timeout=call_timeout,
                on_calls=lambda count: self._spend(run_id, count),
            )
        except QuotaExceededError:
            log.error("detail_refresh_quota_exceeded")
            self.repository.update_run(
                run_id, warnings=(*run.warnings, "Detail refresh stopped: provider quota exhausted")
            )
            raise
        finally:
            close_run_logger(run_id)
        if outcome.warnings:
            warnings = tuple(dict.fromkeys((*run.warnings, *outcome.warnings)))
            self.repository.update_run(run_id, warnings=warnings)
        self.logger.info(
            "detail_refresh_finished",
            run_id=run_id,
            fetched=len(outcome.fetched),
            reused=len(outcome.reused),
            failed=len(outcome.failed),
        )
        return outcome

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def _execute(self, ctx: _RunContext) -> None:
        try:
            self._check_variant_invariant(ctx.bundle)
        except InvariantViolation as exc:
            ctx.logger.error("run_invariant_violation", error=str(exc))
            self._advance(ctx, RunEvent.INTERNAL_ERROR, summary=f"Run failed: {exc}")
            return

        try:
            self._run_pipeline(ctx)
        except Exception as exc:  # noqa: BLE001
            ctx.logger.exception("run_failed", error=str(exc))
            if not ctx.state.is_terminal:
                self._advance(
                    ctx, RunEvent.INTERNAL_ERROR, summary=f"Run failed: internal error ({type(exc).__name__})"
                )

    def _run_pipeline(self, ctx: _RunContext) -> None:
        if ctx.cancel.is_set():
            self._advance(ctx, RunEvent.CANCELLED, summary="Run cancelled before execution.")
            return

        self._advance(ctx, RunEvent.DISPATCHED)
        specs = [ctx.bundle.variant(label) for label in VARIANT_ORDER]
        settled = self.thread_pool.run_settled(lambda spec: self._run_variant(ctx, spec), specs)
        for item in settled:
            if item.error is not None:
                raise item.error
        reports = [item.result for item in settled]

        if ctx.quota.is_set():
            ctx.logger.error("quota_exceeded", stage="variants")
            self._advance(
                ctx,
                RunEvent.QUOTA_EXCEEDED,
                summary="Run stopped: provider search quota exhausted during variant execution.",
            )
            return
        if ctx.cancel.is_set():
            self._advance(ctx, RunEvent.CANCELLED, summary="Run cancelled between variants.")
            return

        for message in ctx.notes:
            ctx.state = ctx.state.with_warning(message)
        failed = [report for report in reports if report.outcome is VariantOutcome.FAILED]
        for report in failed:
            ctx.state = ctx.state.with_warning(f"Variant {report.label.value} failed: {report.error}")
        if len(failed) == len(reports):
            ctx.logger.error("all_variants_failed")
            self._advance(ctx, RunEvent.INTERNAL_ERROR, summary="Run failed: every query variant failed.")
            return

        self._advance(ctx, RunEvent.VARIANTS_SETTLED)
        results = self._build_unified(ctx.run_id, ctx.bundle, ctx.started_at, {})
        self.repository.replace_unified_results(ctx.run_id, results)
        ctx.logger.info("merge_finished", records=len(results))

        self._advance(ctx, RunEvent.MERGED)
        results = self._apply_shortlist(ctx.run_id, results)
        self.repository.replace_unified_results(ctx.run_id, results)
        shortlisted = [result.record_id for result in results if result.shortlisted]
        ctx.logger.info("shortlist_selected", shortlisted=len(shortlisted))

        self._advance(ctx, RunEvent.SHORTLISTED)
        try:
            outcome = self.detail_fetcher.fetch_for(
                ctx.run_id,
                shortlisted,
                ctx.bundle.detail_fields(),
                timeout=ctx.call_timeout,
                on_calls=lambda count: self._spend(ctx.run_id, count),
            )
        except QuotaExceededError:
            ctx.logger.error("quota_exceeded", stage="details")
            self._advance(
                ctx,
                RunEvent.QUOTA_EXCEEDED,
                summary="Run stopped: provider quota exhausted while fetching details.",
            )
            return
        for message in outcome.warnings:
            ctx.state = ctx.state.with_warning(message)

        run = self.repository.get_run(ctx.run_id)
        summary = (
            f"{len(results)} unified result(s), {len(shortlisted)} shortlisted, "
            f"{len(outcome.fetched) + len(outcome.reused)} with details, "
            f"{len(outcome.failed)} detail failure(s), {run.api_calls} external call(s)."
        )
        self._advance(ctx, RunEvent.DETAILS_FETCHED, summary=summary)

    @staticmethod
    def _check_variant_invariant(bundle: SearchBundle) -> None:
        labels = [spec.label for spec in bundle.query_variants]
        if len(labels) != len(VARIANT_ORDER) or set(labels) != set(VARIANT_ORDER):
            raise InvariantViolation(
                "bundle must carry exactly one broad, baseline and narrow variant; "
                f"got {[label.value for label in labels]}"
            )

    def _advance(self, ctx: _RunContext, event: RunEvent, summary: str | None = None) -> None:
        previous = ctx.state
        new_state = transition(previous, event)
        fields: dict[str, Any] = {}
        if new_state.is_terminal:
            fields["finished_at"] = isoformat(self.now())
            fields["warnings"] = new_state.warnings
            fields["summary"] = summary or new_state.status.value
        if not self.repository.compare_and_set_status(
            ctx.run_id, previous.status, new_state.status, **fields
        ):
            raise InvariantViolation(
                f"Run {ctx.run_id} left {previous.status.value} before {event.value} was applied"
            )
        ctx.state = new_state
        ctx.logger.info("run_transition", run_event=event.value, status=new_state.status.value)

    def _spend(self, run_id: str, count: int) -> None:
        self.repository.add_api_calls(run_id, count, self.config.provider.cost_per_call)

    # ------------------------------------------------------------------
    # Variant execution
    # ------------------------------------------------------------------
    def _run_variant(self, ctx: _RunContext, spec: QueryVariantSpec) -> VariantReport:
        report = VariantReport(label=spec.label)
        if ctx.quota.is_set() or ctx.cancel.is_set():
            report.outcome = VariantOutcome.SKIPPED
            self.repository.update_variant(ctx.run_id, spec.label, outcome=VariantOutcome.SKIPPED)
            ctx.logger.info("variant_skipped", label=spec.label.value)
            return report

        ctx.logger.info("variant_started", label=spec.label.value, num=spec.num, page=spec.page)
        try:
            self._search_variant(ctx, spec, report)
            report.outcome = VariantOutcome.SUCCEEDED
        except QuotaExceededError as exc:
            ctx.quota.set()
            if report.api_calls == 0:
                # Another variant hit the quota before this one sent anything
                report.outcome = VariantOutcome.SKIPPED
                ctx.logger.info("variant_skipped", label=spec.label.value, reason="quota")
            else:
                report.outcome = VariantOutcome.FAILED
                report.error = "provider quota exhausted"
                ctx.logger.error("variant_quota_exceeded", label=spec.label.value, status=exc.status_code)
        except (ProviderError, RateLimitTimeout) as exc:
            report.outcome = VariantOutcome.FAILED
            report.error = str(exc)
            ctx.logger.warning("variant_failed", label=spec.label.value, error=str(exc))
        self.repository.update_variant(
            ctx.run_id,
            spec.label,
            outcome=report.outcome,
            api_calls=report.api_calls,
            result_count=report.result_count,
            executed_at=isoformat(self.now()),
            error=report.error,
        )
        ctx.logger.info(
            "variant_finished",
            label=spec.label.value,
            outcome=report.outcome.value,
            local=report.local_count,
            results=report.result_count,
            api_calls=report.api_calls,
        )
        return report

    def _search_variant(self, ctx: _RunContext, spec: QueryVariantSpec, report: VariantReport) -> None:
        resolution = self.resolver.resolve(spec.q, spec.num)
        report.local_count = len(resolution)
        if resolution.matches:
            self._store_page(
                ctx, spec, report, resolution.as_payload(), LOCAL_ENGINE, RecordKind.PATENT, HitSource.LOCAL
            )

        remaining = spec.num - report.local_count
        if remaining <= 0:
            ctx.logger.info("variant_satisfied_locally", label=spec.label.value, local=report.local_count)
            return

        engines = [(self.config.provider.patents_engine, RecordKind.PATENT)]
        if ctx.bundle.include_scholar:
            engines.append((self.config.provider.scholar_engine, RecordKind.SCHOLAR))
        per_page = min(remaining, self.config.search.max_results_per_page)
        for engine, kind in engines:
            collected = 0
            for page_index in range(self.config.search.max_pages_per_variant):
                want = min(per_page, remaining - collected)
                if want <= 0:
                    break
                start = (spec.page - 1) * spec.num + page_index * per_page
                try:
                    response = self.provider.search(
                        spec.q,
                        want,
                        spec.page,
                        engine=engine,
                        start=start,
                        timeout=ctx.call_timeout,
                        quota_signal=ctx.quota,
                    )
                except ProviderError as exc:
                    self._count(ctx, report, exc.attempts)
                    raise
                self._count(ctx, report, response.attempts)
                if response.skipped:
                    ctx.note("Provider API key not configured; external search was skipped.")
                    break
                results = response.results
                self._store_page(ctx, spec, report, response.payload, engine, kind, HitSource.PROVIDER)
                collected += len(results)
                if len(results) < want:
                    break

    def _count(self, ctx: _RunContext, report: VariantReport, attempts: int) -> None:
        report.api_calls += attempts
        self._spend(ctx.run_id, attempts)

    def _store_page(
        self,
        ctx: _RunContext,
        spec: QueryVariantSpec,
        report: VariantReport,
        payload: dict[str, Any],
        engine: str,
        kind: RecordKind,
        source: HitSource,
    ) -> None:
        captured_at = isoformat(self.now())
        # Raw snapshot first so a normalization failure never loses the payload
        self.repository.insert_raw_result(
            RawResult(
                run_id=ctx.run_id,
                label=spec.label,
                source=source,
                engine=engine,
                page=spec.page,
                payload=payload,
                captured_at=captured_at,
            )
        )
        page = normalize_page(
            payload,
            run_id=ctx.run_id,
            label=spec.label,
            kind=kind,
            source=source,
            seen_at=captured_at,
        )
        for record in page.records:
            self.repository.upsert_record(record)
        for hit in page.hits:
            if self.repository.insert_hit(replace(hit, rank=report.result_count + 1)):
                report.result_count += 1

    # ------------------------------------------------------------------
    # Merge, score, shortlist
    # ------------------------------------------------------------------
    def _build_unified(
        self,
        run_id: str,
        bundle: SearchBundle,
        reference: datetime,
        previous: Mapping[str, UnifiedResult],
    ) -> list[UnifiedResult]:
        merged = merge_hits(self.repository.list_hits(run_id))
        records = self._scoring_records(run_id, [item.record_id for item in merged])
        scored = self.scoring.rank(merged, records, bundle, reference)
        results: list[UnifiedResult] = []
        for position, item in enumerate(scored, start=1):
            prior = previous.get(item.record_id)
            results.append(
                UnifiedResult(
                    run_id=run_id,
                    record_id=item.record_id,
                    found_in=item.merged.found_in,
                    ranks=dict(item.merged.ranks),
                    intersection=item.merged.intersection,
                    score=item.score,
                    breakdown=item.breakdown.as_dict(),
                    position=position,
                    detail_status=prior.detail_status if prior else None,
                )
            )
        return results

    def _scoring_records(self, run_id: str, record_ids: list[str]) -> dict[str, CanonicalRecord]:
        # Scores read the records as they were at the run's first merge, never
        # the shared rows that detail enrichment keeps updating.
        records = self.repository.get_run_records(run_id)
        missing = [record_id for record_id in record_ids if record_id not in records]
        if missing:
            fresh = self.repository.get_records(missing)
            self.repository.snapshot_records(run_id, fresh.values())
            records.update(fresh)
        return records

    def _apply_shortlist(self, run_id: str, results: list[UnifiedResult]) -> list[UnifiedResult]:
        overrides = self.repository.list_overrides(run_id)
        selection = self.selector.select([result.record_id for result in results], overrides)
        return [
            replace(
                result,
                shortlisted=result.record_id in selection,
                shortlist_origin=selection.get(result.record_id),
            )
            for result in results
        ]


__all__ = ["Orchestrator", "VariantReport"]
