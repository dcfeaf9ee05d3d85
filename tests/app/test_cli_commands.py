from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

from typer.testing import CliRunner

from priorart_engine.app import AppState, app
from priorart_engine.config import VariantLabel
from priorart_engine.errors import RunNotFoundError, ShortlistOverrideError
from priorart_engine.models import (
    DetailStatus,
    IntersectionClass,
    Run,
    RunStatus,
    ShortlistOrigin,
    UnifiedResult,
)


def _run(status: RunStatus = RunStatus.COMPLETED, warnings: tuple[str, ...] = ()) -> Run:
    return Run(
        run_id="run-1",
        bundle_id="pv-cleaning",
        bundle_json="{}",
        fingerprint="abc",
        owner="tester",
        status=status,
        started_at="2024-01-01T00:00:00+00:00",
        finished_at="2024-01-01T00:05:00+00:00",
        api_calls=13,
        cost_estimate=0.13,
        warnings=warnings,
        summary="15 unified result(s)",
    )


def _result(record_id: str, position: int, shortlisted: bool = True) -> UnifiedResult:
    return UnifiedResult(
        run_id="run-1",
        record_id=record_id,
        found_in=(VariantLabel.BROAD, VariantLabel.NARROW),
        ranks={VariantLabel.BROAD: position, VariantLabel.NARROW: position},
        intersection=IntersectionClass.I2,
        score=0.5,
        position=position,
        shortlisted=shortlisted,
        shortlist_origin=ShortlistOrigin.MANUAL if shortlisted else None,
        detail_status=DetailStatus.OK if shortlisted else None,
    )


class StubOrchestrator:
    def __init__(self, run: Run | None = None, results: list[UnifiedResult] | None = None) -> None:
        self.run = run or _run()
        self.results = results or []
        self.calls: list[tuple] = []
        self.repository = SimpleNamespace(list_runs=lambda limit: [self.run], get_detail=lambda record_id: None)

    def start_run(self, bundle, owner="local", run_id=None, call_timeout=None) -> Run:
        self.calls.append(("start_run", bundle.bundle_id, owner, call_timeout))
        return self.run

    def get_run(self, run_id: str) -> Run:
        if run_id != self.run.run_id:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return self.run

    def list_results(self, run_id, shortlisted_only=False, limit=None) -> list[UnifiedResult]:
        self.get_run(run_id)
        self.calls.append(("list_results", run_id, shortlisted_only, limit))
        return [result for result in self.results if result.shortlisted or not shortlisted_only]

    def override_shortlist(self, run_id, record_id, include) -> list[UnifiedResult]:
        if record_id == "EP999A1":
            raise ShortlistOverrideError(f"Record {record_id} is not part of this run")
        self.calls.append(("override", run_id, record_id, include))
        return self.results

    def cancel(self, run_id: str) -> bool:
        self.calls.append(("cancel", run_id))
        return False


def make_state(orchestrator: StubOrchestrator, repository=None, corpus=None) -> AppState:
    return AppState(
        repository=repository or SimpleNamespace(),
        orchestrator=orchestrator,
        corpus=corpus or SimpleNamespace(),
        storage=SimpleNamespace(),
    )


def test_cli_run_bundle(monkeypatch, make_bundle) -> None:
    bundle = make_bundle()
    orchestrator = StubOrchestrator(run=_run(RunStatus.COMPLETED_WITH_WARNINGS, ("Detail fetch failed for US1B2",)))
    repository = SimpleNamespace(load_bundle=lambda identifier: bundle)
    state = make_state(orchestrator, repository=repository)
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["run", "pv-cleaning", "--owner", "alice", "--timeout", "30"])

    assert result.exit_code == 0, result.stdout
    assert orchestrator.calls == [("start_run", "pv-cleaning", "alice", 30.0)]
    assert "COMPLETED_WITH_WARNINGS" in result.stdout
    assert "US1B2" in result.stdout


def test_cli_run_exits_non_zero_when_credit_exhausted(monkeypatch, make_bundle) -> None:
    bundle = make_bundle()
    state = make_state(
        StubOrchestrator(run=_run(RunStatus.CREDIT_EXHAUSTED)),
        repository=SimpleNamespace(load_bundle=lambda identifier: bundle),
    )
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["run", "pv-cleaning"])
    assert result.exit_code == 1
    assert "CREDIT_EXHAUSTED" in result.stdout


def test_cli_run_missing_bundle(monkeypatch) -> None:
    def _missing(identifier):
        raise FileNotFoundError(f"Bundle not found: {identifier}")

    orchestrator = StubOrchestrator()
    state = make_state(orchestrator, repository=SimpleNamespace(load_bundle=_missing))
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["run", "ghost"])
    assert result.exit_code == 1
    assert "Bundle not found" in result.stdout
    assert orchestrator.calls == []


def test_cli_status(monkeypatch) -> None:
    state = make_state(StubOrchestrator())
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)
    runner = CliRunner()

    listed = runner.invoke(app, ["status"])
    assert listed.exit_code == 0, listed.stdout
    assert "Recent runs" in listed.stdout
    assert "run-1" in listed.stdout

    missing = runner.invoke(app, ["status", "ghost"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.stdout


def test_cli_results(monkeypatch) -> None:
    orchestrator = StubOrchestrator(results=[_result("US1B2", 1), _result("US2B2", 2, shortlisted=False)])
    state = make_state(orchestrator)
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["results", "run-1", "--shortlisted", "--limit", "5"])

    assert result.exit_code == 0, result.stdout
    assert orchestrator.calls == [("list_results", "run-1", True, 5)]
    assert "US1B2" in result.stdout
    assert "US2B2" not in result.stdout


def test_cli_shortlist_include(monkeypatch) -> None:
    orchestrator = StubOrchestrator(results=[_result("US7B2", 1)])
    state = make_state(orchestrator)
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)
    runner = CliRunner()

    result = runner.invoke(app, ["shortlist", "include", "run-1", "US7B2"])
    assert result.exit_code == 0, result.stdout
    assert ("override", "run-1", "US7B2", True) in orchestrator.calls
    assert "manual" in result.stdout

    rejected = runner.invoke(app, ["shortlist", "include", "run-1", "EP999A1"])
    assert rejected.exit_code == 1
    assert "not part of this run" in rejected.stdout


def test_cli_cancel_refused(monkeypatch) -> None:
    state = make_state(StubOrchestrator())
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)
    result = CliRunner().invoke(app, ["cancel", "run-1"])
    assert result.exit_code == 0
    assert "can no longer be cancelled" in result.stdout


def test_cli_bundle_validate_reports_errors(monkeypatch, temp_config_repository, tmp_path: Path) -> None:
    path = tmp_path / "bundle.yaml"
    path.write_text("bundle_id: bad\nquery_variants:\n  - label: broad\n    q: solar\n    num: 500\n", encoding="utf-8")
    state = make_state(StubOrchestrator(), repository=temp_config_repository)
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["bundle", "validate", str(path)])

    assert result.exit_code == 1
    assert "Malformed bundle" in result.stdout
    assert "query_variants.0.num" in result.stdout


def test_cli_bundle_validate_ok(monkeypatch, temp_config_repository, make_bundle) -> None:
    bundle = make_bundle()
    path = temp_config_repository.save_bundle(bundle)
    state = make_state(StubOrchestrator(), repository=temp_config_repository)
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)

    result = CliRunner().invoke(app, ["bundle", "validate", str(path)])
    assert result.exit_code == 0, result.stdout
    assert f"fingerprint {bundle.fingerprint()[:12]}" in result.stdout


def test_cli_corpus_import_and_search(monkeypatch, corpus, tmp_path: Path) -> None:
    path = tmp_path / "corpus.csv"
    path.write_text(
        "id,publication_number,kind,title,abstract_original,abstract_normalized\n"
        "1,US1234567B2,B2,Solar panel brush robot,Cleans panels,\n"
        "2,US7654321B2,B2,,No title,\n",
        encoding="utf-8",
    )
    state = make_state(StubOrchestrator(), corpus=corpus)
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)
    runner = CliRunner()

    imported = runner.invoke(app, ["corpus", "import", str(path)])
    assert imported.exit_code == 0, imported.stdout
    assert "Inserted 1, updated 0, skipped 1." in imported.stdout

    found = runner.invoke(app, ["corpus", "search", "solar brush"])
    assert found.exit_code == 0, found.stdout
    assert "US1234567B2" in found.stdout

    missing = runner.invoke(app, ["corpus", "import", str(tmp_path / "nope.csv")])
    assert missing.exit_code == 1
    assert "File not found" in missing.stdout


def test_cli_log_tail(monkeypatch, priorart_home: Path) -> None:
    log_dir = priorart_home / "logs" / "runs"
    log_dir.mkdir(parents=True, exist_ok=True)
    (log_dir / "run-1.log").write_text("first\nsecond\nthird\n", encoding="utf-8")
    state = make_state(StubOrchestrator())
    monkeypatch.setattr("priorart_engine.app.build_state", lambda verbose: state)
    runner = CliRunner()

    result = runner.invoke(app, ["log", "tail", "--run", "run-1", "--lines", "2"])
    assert result.exit_code == 0, result.stdout
    assert "last 2 line(s)" in result.stdout
    assert "third" in result.stdout
    assert "first" not in result.stdout

    listed = runner.invoke(app, ["log", "list"])
    assert "run-1.log" in listed.stdout
