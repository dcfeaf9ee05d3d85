"""Configuration and bundle loading helpers for the prior-art engine."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from ..errors import BundleValidationError
from .models import EngineConfig, SearchBundle

YAML_SUFFIXES = frozenset({".yaml", ".yml"})
CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
GLOBAL_CONFIG_FILENAME = "global_config.yaml"
BUNDLE_SUFFIX = ".yaml"
HOME_ENV = "PRIORART_HOME"


def _slugify(name: str) -> str:
    slug = [ch.lower() if ch.isalnum() else "-" for ch in name.strip()]
    return "".join(slug).strip("-")


def _load_mapping(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    payload = (yaml.safe_load(raw) or {}) if path.suffix in YAML_SUFFIXES else json.loads(raw)
    if isinstance(payload, dict):
        return payload
    raise ValueError(f"{path} does not contain a mapping")


def _dump_mapping(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix in YAML_SUFFIXES:
        text = yaml.safe_dump(payload, allow_unicode=True, sort_keys=False)
    else:
        text = json.dumps(payload, indent=2, ensure_ascii=False)
    path.write_text(text, encoding="utf-8")


def _format_validation_errors(exc: ValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return messages


def parse_bundle(payload: dict[str, Any]) -> SearchBundle:
    """Validate a raw bundle mapping, raising ``BundleValidationError`` on bad input."""

    try:
        return SearchBundle.model_validate(payload)
    except ValidationError as exc:
        errors = _format_validation_errors(exc)
        raise BundleValidationError(
            f"Malformed bundle: {len(errors)} validation error(s)", errors
        ) from exc


def _engine_home(fallback: Path | None) -> Path:
    override = os.environ.get(HOME_ENV)
    if override:
        return Path(override).expanduser().resolve()
    return (fallback or Path(__file__).resolve().parents[2]).resolve()


@dataclass(slots=True)
class ConfigLocator:
    """Engine home layout: ``data/`` (config, bundles, database) and ``logs/``.

    ``PRIORART_HOME`` wins over ``project_root`` when set.
    """

    project_root: Path | None = None
    data_dir: Path | None = None
    bundles_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        home = _engine_home(self.project_root)
        self.project_root = home
        self.data_dir = home / "data"
        self.bundles_dir = self.data_dir / "bundles"
        self.logs_dir = home / "logs"
        for directory in (self.bundles_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def global_config_path(self) -> Path:
        return self.data_dir / GLOBAL_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO, bundle IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._engine_config: EngineConfig | None = None

    # ------------------------------------------------------------------
    # Engine configuration
    # ------------------------------------------------------------------
    def load_global_config(self) -> EngineConfig:
        if self._engine_config is None:
            path = self.locator.global_config_path()
            if path.exists():
                self._engine_config = EngineConfig.model_validate(_load_mapping(path))
            else:
                self.save_global_config(EngineConfig())
        return self._engine_config

    def save_global_config(self, config: EngineConfig) -> None:
        _dump_mapping(self.locator.global_config_path(), config.model_dump(mode="json"))
        self._engine_config = config

    def database_path(self) -> Path:
        return self.load_global_config().resolved_database_path(self.locator.project_root)

    # ------------------------------------------------------------------
    # Approved bundles
    # ------------------------------------------------------------------
    def bundle_path(self, bundle_id: str) -> Path:
        return self.locator.bundles_dir / f"{_slugify(bundle_id)}{BUNDLE_SUFFIX}"

    def list_bundle_files(self) -> Iterable[Path]:
        return [
            path
            for path in sorted(self.locator.bundles_dir.iterdir())
            if path.is_file() and path.suffix in CONFIG_EXTENSIONS
        ]

    def list_bundles(self) -> list[SearchBundle]:
        return [self.load_bundle(path) for path in self.list_bundle_files()]

    def load_bundle(self, identifier: str | Path) -> SearchBundle:
        path = Path(identifier)
        if not isinstance(identifier, Path) and not (path.suffix in CONFIG_EXTENSIONS and path.is_file()):
            path = self.bundle_path(identifier)
        if not path.is_file():
            raise FileNotFoundError(f"Bundle not found: {identifier}")
        return parse_bundle(_load_mapping(path))

    def save_bundle(self, bundle: SearchBundle) -> Path:
        path = self.bundle_path(bundle.bundle_id)
        _dump_mapping(path, bundle.model_dump(mode="json"))
        return path


__all__ = ["ConfigLocator", "ConfigRepository", "CONFIG_EXTENSIONS", "parse_bundle"]
