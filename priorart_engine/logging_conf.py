"""Logging configuration built around structlog JSON logging.

Everything is routed through the ``priorart_engine`` stdlib logger: console,
``logs/engine.log`` (rotated) and ``logs/error.log``. Each run additionally
writes an audit trail to ``logs/runs/<run_id>.log``.
"""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Iterable, MutableMapping

import structlog

ROOT_LOGGER = "priorart_engine"
SECRET_KEYS = frozenset({"api_key", "apikey", "token", "authorization"})
REDACTED = "***"

_LOGGING_INITIALISED = False


def _default_log_dir() -> Path:
    env_root = os.environ.get("PRIORART_HOME")
    if env_root:
        return Path(env_root).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def engine_log_path() -> Path:
    return _default_log_dir() / "engine.log"


def run_log_path(run_id: str) -> Path:
    return _default_log_dir() / "runs" / f"{run_id}.log"


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking credential-like fields before rendering."""

    for key in list(event_dict):
        if key.lower() in SECRET_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    params = event_dict.get("params")
    if isinstance(params, dict) and SECRET_KEYS.intersection(params):
        event_dict["params"] = {
            name: REDACTED if name in SECRET_KEYS else value for name, value in params.items()
        }
    return event_dict


def _dict_config(level: str, engine_log: Path, error_log: Path) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "json",
            },
            "engine_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "filename": str(engine_log),
                "maxBytes": 5 * 1024 * 1024,
                "backupCount": 3,
                "encoding": "utf-8",
                "formatter": "json",
            },
            "error_file": {
                "class": "logging.FileHandler",
                "level": "ERROR",
                "filename": str(error_log),
                "encoding": "utf-8",
                "formatter": "json",
            },
        },
        "loggers": {
            ROOT_LOGGER: {
                "handlers": ["console", "engine_file", "error_file"],
                "level": level,
                "propagate": False,
            },
        },
    }


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers once and return the engine logger."""

    global _LOGGING_INITIALISED
    log_dir = _default_log_dir()
    (log_dir / "runs").mkdir(parents=True, exist_ok=True)

    if not _LOGGING_INITIALISED:
        level = "DEBUG" if verbose else "INFO"
        logging.config.dictConfig(_dict_config(level, engine_log_path(), log_dir / "error.log"))
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                redact_secrets,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger(ROOT_LOGGER)


def _run_logger_name(run_id: str) -> str:
    return f"{ROOT_LOGGER}.run.{run_id}"


def run_logger(run_id: str, verbose: bool = False) -> structlog.BoundLogger:
    """Return a logger bound to ``run_id`` that also writes the run's audit file."""

    configure_logging(verbose)
    path = run_log_path(run_id)
    py_logger = logging.getLogger(_run_logger_name(run_id))
    attached = any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path)
        for handler in py_logger.handlers
    )
    if not attached:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        root_handlers = logging.getLogger(ROOT_LOGGER).handlers
        if root_handlers:
            handler.setFormatter(root_handlers[0].formatter)
        handler.setLevel(logging.INFO)
        py_logger.addHandler(handler)
    return structlog.get_logger(_run_logger_name(run_id)).bind(run_id=run_id)


def close_run_logger(run_id: str) -> None:
    """Detach and close the audit file handler of a finished run."""

    py_logger = logging.getLogger(_run_logger_name(run_id))
    for handler in list(py_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            py_logger.removeHandler(handler)
            handler.close()


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def available_run_logs() -> Iterable[Path]:
    runs_dir = _default_log_dir() / "runs"
    if not runs_dir.exists():
        return []
    return sorted(runs_dir.glob("*.log"))


__all__ = [
    "available_run_logs",
    "close_run_logger",
    "configure_logging",
    "engine_log_path",
    "redact_secrets",
    "run_log_path",
    "run_logger",
    "tail_log",
]
