from __future__ import annotations

import logging
from pathlib import Path

from priorart_engine.logging_conf import (
    REDACTED,
    close_run_logger,
    redact_secrets,
    run_log_path,
    run_logger,
    tail_log,
)


def test_redact_secrets_masks_credentials() -> None:
    event = redact_secrets(
        None,
        "info",
        {"event": "provider_call", "api_key": "abc", "params": {"q": "solar", "api_key": "abc"}, "token": ""},
    )
    assert event["api_key"] == REDACTED
    assert event["params"] == {"q": "solar", "api_key": REDACTED}
    assert event["token"] == ""


def test_run_logger_writes_audit_file_until_closed(priorart_home: Path) -> None:
    path = run_log_path("run-audit")
    assert path == priorart_home.resolve() / "logs" / "runs" / "run-audit.log"

    run_logger("run-audit").info("run_created", bundle_id="pv-cleaning")
    run_logger("run-audit").info("run_transition", status="RUNNING_VARIANTS")
    py_logger = logging.getLogger("priorart_engine.run.run-audit")
    assert len(py_logger.handlers) == 1

    close_run_logger("run-audit")
    assert py_logger.handlers == []
    lines = tail_log(path)
    assert len(lines) == 2
    assert "run_created" in lines[0]
    assert tail_log(path, 1) == lines[-1:]
    assert tail_log(path.with_name("missing.log")) == []
