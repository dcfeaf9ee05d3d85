"""Typer CLI entrypoint for the prior-art search engine."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, NoReturn, Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, SearchBundle
from .engine import RateLimiter, ThreadPoolManager
from .engine.local_resolver import LocalResolver
from .errors import (
    BundleValidationError,
    InvalidTransition,
    QuotaExceededError,
    RunNotFoundError,
    ShortlistOverrideError,
)
from .infra import LocalCorpus, SQLiteManager
from .logging_conf import available_run_logs, configure_logging, engine_log_path, run_log_path, tail_log
from .models import Run, RunStatus, UnifiedResult
from .orchestrator import Orchestrator

app = typer.Typer(
    help="Prior-art search execution and ranking engine",
    no_args_is_help=True,
    rich_markup_mode=None,
)
bundle_app = typer.Typer(name="bundle", help="Approved bundle commands", no_args_is_help=True)
shortlist_app = typer.Typer(name="shortlist", help="Manual shortlist overrides", no_args_is_help=True)
corpus_app = typer.Typer(name="corpus", help="Local corpus commands", no_args_is_help=True)
log_app = typer.Typer(name="log", help="Log viewing commands", no_args_is_help=True)

console = Console()

_STATUS_STYLES = {
    RunStatus.COMPLETED: "green",
    RunStatus.COMPLETED_WITH_WARNINGS: "yellow",
    RunStatus.CREDIT_EXHAUSTED: "red",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "dim",
}


@dataclass
class AppState:
    repository: ConfigRepository
    orchestrator: Orchestrator
    corpus: LocalCorpus
    storage: SQLiteManager


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    global_config = repository.load_global_config()
    storage = SQLiteManager()
    rate_limiter = RateLimiter(global_config.rate_limit.min_interval_seconds)
    thread_pool = ThreadPoolManager(global_config.search.variant_parallelism)
    orchestrator = Orchestrator.from_repository(
        repository,
        storage,
        rate_limiter=rate_limiter,
        thread_pool=thread_pool,
    )
    corpus = LocalCorpus(storage, repository.database_path())
    return AppState(
        repository=repository,
        orchestrator=orchestrator,
        corpus=corpus,
        storage=storage,
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _render_run(run: Run) -> Table:
    table = Table(title=f"Run {run.run_id}", box=box.SIMPLE_HEAD, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", overflow="fold")
    table.add_row("Status", f"[{_STATUS_STYLES.get(run.status, 'white')}]{run.status.value}[/]")
    table.add_row("Bundle", run.bundle_id)
    table.add_row("Owner", run.owner)
    table.add_row("Started", run.started_at)
    table.add_row("Finished", run.finished_at or "-")
    table.add_row("External calls", str(run.api_calls))
    table.add_row("Credits", str(run.credits_charged))
    table.add_row("Cost estimate", f"{run.cost_estimate:.4f}")
    table.add_row("Summary", run.summary or "-")
    for warning in run.warnings:
        table.add_row("Warning", f"[yellow]{warning}[/]")
    return table


def _render_runs(runs: Sequence[Run]) -> Table:
    table = Table(title=f"Recent runs · {len(runs)}", box=box.SIMPLE_HEAD)
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Bundle")
    table.add_column("Status")
    table.add_column("Started", style="green")
    table.add_column("Calls", justify="right")
    for run in runs:
        style = _STATUS_STYLES.get(run.status, "white")
        table.add_row(run.run_id, run.bundle_id, f"[{style}]{run.status.value}[/]", run.started_at, str(run.api_calls))
    return table


def _render_results(run_id: str, results: Iterable[UnifiedResult]) -> Table:
    table = Table(title=f"Unified results · {run_id}", box=box.SIMPLE_HEAD)
    table.add_column("#", justify="right")
    table.add_column("Record", style="cyan", no_wrap=True)
    table.add_column("Score", justify="right")
    table.add_column("Class")
    table.add_column("Variants")
    table.add_column("Shortlist")
    table.add_column("Detail")
    for result in results:
        shortlist = result.shortlist_origin.value if result.shortlisted and result.shortlist_origin else "-"
        table.add_row(
            str(result.position),
            result.record_id,
            f"{result.score:.4f}",
            result.intersection.value,
            ",".join(label.value for label in result.found_in),
            shortlist,
            result.detail_status.value if result.detail_status else "-",
        )
    return table


def _abort(exc: Exception, details: Iterable[str] = ()) -> NoReturn:
    console.print(str(exc), style="red")
    for message in details:
        console.print(f"- {message}", style="red")
    raise typer.Exit(code=1) from exc


def _load_bundle(state: AppState, identifier: str) -> SearchBundle:
    try:
        return state.repository.load_bundle(identifier)
    except FileNotFoundError as exc:
        _abort(exc)
    except BundleValidationError as exc:
        _abort(exc, exc.errors)


app.add_typer(bundle_app, name="bundle")
app.add_typer(shortlist_app, name="shortlist")
app.add_typer(corpus_app, name="corpus")
app.add_typer(log_app, name="log")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


@app.command("run", help="Execute a search run for an approved bundle.")
def run_command(
    ctx: typer.Context,
    bundle: str = typer.Argument(..., help="Bundle id or path to a bundle file."),
    owner: str = typer.Option("local", "--owner", help="User launching the run."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-call deadline in seconds."),
) -> None:
    state = _get_state(ctx)
    approved = _load_bundle(state, bundle)
    run = state.orchestrator.start_run(approved, owner=owner, call_timeout=timeout)
    console.print(_render_run(run))
    if run.status in (RunStatus.FAILED, RunStatus.CREDIT_EXHAUSTED):
        raise typer.Exit(code=1)


@app.command("status", help="Show one run, or the most recent runs.")
def status_command(
    ctx: typer.Context,
    run_id: Optional[str] = typer.Argument(None, help="Run identifier."),
    limit: int = typer.Option(20, "--limit", help="Number of runs to list."),
) -> None:
    state = _get_state(ctx)
    if run_id is None:
        runs = state.orchestrator.repository.list_runs(limit=limit)
        if not runs:
            console.print("No runs yet.", style="dim")
            return
        console.print(_render_runs(runs))
        return
    try:
        run = state.orchestrator.get_run(run_id)
    except RunNotFoundError as exc:
        _abort(exc)
    console.print(_render_run(run))


@app.command("results", help="List unified results of a run.")
def results_command(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
    shortlisted: bool = typer.Option(False, "--shortlisted", help="Only shortlisted records.", is_flag=True),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum rows."),
) -> None:
    state = _get_state(ctx)
    try:
        results = state.orchestrator.list_results(run_id, shortlisted_only=shortlisted, limit=limit)
    except RunNotFoundError as exc:
        _abort(exc)
    if not results:
        console.print("No results for this run.", style="dim")
        return
    console.print(_render_results(run_id, results))


@app.command("details", help="Show or refresh details for a run's shortlist.")
def details_command(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
    fetch: bool = typer.Option(False, "--fetch", help="Refresh stale or missing details first.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    orchestrator = state.orchestrator
    try:
        if fetch:
            outcome = orchestrator.fetch_details(run_id)
            console.print(
                f"Fetched {len(outcome.fetched)}, reused {len(outcome.reused)}, "
                f"failed {len(outcome.failed)}, skipped {len(outcome.skipped)}.",
                style="green" if not outcome.failed else "yellow",
            )
        results = orchestrator.list_results(run_id, shortlisted_only=True)
    except (RunNotFoundError, InvalidTransition, QuotaExceededError) as exc:
        _abort(exc)

    table = Table(title=f"Shortlist details · {run_id}", box=box.SIMPLE_HEAD)
    table.add_column("Record", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Claims", justify="right")
    table.add_column("Citations", justify="right")
    table.add_column("Fetched", style="green")
    for result in results:
        detail = orchestrator.repository.get_detail(result.record_id)
        if detail is None:
            table.add_row(result.record_id, "-", "-", "-", "-")
            continue
        table.add_row(
            result.record_id,
            detail.status.value,
            str(len(detail.claims)),
            str(len(detail.patent_citations) + len(detail.non_patent_citations)),
            detail.fetched_at,
        )
    console.print(table)


@app.command("cancel", help="Cancel a run that has not started merging.")
def cancel_command(ctx: typer.Context, run_id: str = typer.Argument(..., help="Run identifier.")) -> None:
    state = _get_state(ctx)
    try:
        accepted = state.orchestrator.cancel(run_id)
    except RunNotFoundError as exc:
        _abort(exc)
    if accepted:
        console.print(f"Cancellation requested for {run_id}.", style="green")
    else:
        console.print(f"Run {run_id} can no longer be cancelled.", style="yellow")


def _override(ctx: typer.Context, run_id: str, record_id: str, include: bool) -> None:
    state = _get_state(ctx)
    try:
        results = state.orchestrator.override_shortlist(run_id, record_id, include)
    except (RunNotFoundError, ShortlistOverrideError) as exc:
        _abort(exc)
    console.print(_render_results(run_id, [result for result in results if result.shortlisted]))


@shortlist_app.command("include", help="Force a record onto the shortlist.")
def shortlist_include(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
    record_id: str = typer.Argument(..., help="Record identifier."),
) -> None:
    _override(ctx, run_id, record_id, include=True)


@shortlist_app.command("exclude", help="Keep a record off the shortlist.")
def shortlist_exclude(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
    record_id: str = typer.Argument(..., help="Record identifier."),
) -> None:
    _override(ctx, run_id, record_id, include=False)


@bundle_app.command("list", help="List approved bundles.")
def bundle_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    bundles = state.repository.list_bundles()
    if not bundles:
        console.print("No approved bundles found.", style="yellow")
        raise typer.Exit(code=0)
    table = Table(title=f"Approved bundles · {len(bundles)}", box=box.SIMPLE_HEAD)
    table.add_column("Bundle", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Variants")
    table.add_column("Classes", overflow="fold")
    for bundle in bundles:
        table.add_row(
            bundle.bundle_id,
            bundle.title or "-",
            ", ".join(spec.label.value for spec in bundle.query_variants),
            ", ".join(bundle.classification_codes()) or "-",
        )
    console.print(table)


@bundle_app.command("validate", help="Validate a bundle file.")
def bundle_validate(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Path to a YAML or JSON bundle."),
) -> None:
    state = _get_state(ctx)
    bundle = _load_bundle(state, str(path))
    console.print(
        f"Bundle {bundle.bundle_id} is valid (fingerprint {bundle.fingerprint()[:12]}).",
        style="green",
    )


@corpus_app.command("import", help="Import local documents from a CSV export.")
def corpus_import(
    ctx: typer.Context,
    csv_path: Path = typer.Argument(..., help="CSV file to import."),
) -> None:
    state = _get_state(ctx)
    if not csv_path.exists():
        console.print(f"File not found: {csv_path}", style="red")
        raise typer.Exit(code=1)
    try:
        summary = state.corpus.import_csv(csv_path)
    except ValueError as exc:
        _abort(exc)
    console.print(
        f"Inserted {summary.inserted}, updated {summary.updated}, skipped {summary.skipped}.",
        style="green",
    )


@corpus_app.command("search", help="Rank local documents for a query.")
def corpus_search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Free-text query."),
    limit: int = typer.Option(10, "--limit", help="Maximum matches."),
) -> None:
    state = _get_state(ctx)
    resolution = LocalResolver(state.corpus).resolve(query, limit)
    if not resolution.matches:
        console.print("No local matches.", style="dim")
        return
    table = Table(title=f"Local matches · {' '.join(resolution.tokens)}", box=box.SIMPLE_HEAD)
    table.add_column("Record", style="cyan", no_wrap=True)
    table.add_column("Score", justify="right")
    table.add_column("Title", overflow="fold")
    for match in resolution.matches:
        table.add_row(match.document.record_id, str(match.score), match.document.title)
    console.print(table)


@log_app.command("list", help="List per-run log files.")
def log_list() -> None:
    logs = list(available_run_logs())
    if not logs:
        console.print("No run logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("tail", help="Show the latest lines of the engine log or a run log.")
def log_tail(
    run_id: Optional[str] = typer.Option(None, "--run", help="Run identifier (engine log when omitted)."),
    lines: int = typer.Option(100, "--lines", help="Number of lines."),
) -> None:
    if run_id:
        path = run_log_path(run_id)
    else:
        path = engine_log_path()
    content = tail_log(path, lines)
    if not content:
        console.print("No log entries yet.", style="dim")
        return
    console.print(f"{'Run log' if run_id else 'Engine log'} · last {len(content)} line(s)", style="cyan")
    console.print("".join(content), markup=False, highlight=False)


def cli() -> None:
    app()


__all__ = ["AppState", "app", "build_state", "cli"]
