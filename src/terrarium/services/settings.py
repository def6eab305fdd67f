"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..utils import file_io
from .errors import PersistenceError

__all__ = [
    "Settings",
    "SettingsStore",
    "default_cache_dir",
    "DEFAULT_INVOKE_TIMEOUT",
    "DEFAULT_DEBOUNCE_SECONDS",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".terrarium"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
DEFAULT_INVOKE_TIMEOUT = 120.0
DEFAULT_DEBOUNCE_SECONDS = 0.3
_ENV_OVERRIDES: Mapping[str, str] = {
    "TERRARIUM_CACHE_DIR": "cache_dir",
    "TERRARIUM_BUNDLER_PATH": "toolchain_script",
    "TERRARIUM_NODE_PATH": "runtime_path",
    "TERRARIUM_OUTPUT_DIR": "output_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TERRARIUM_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TERRARIUM_INVOKE_TIMEOUT": "invoke_timeout",
    "TERRARIUM_DEBOUNCE_SECONDS": "debounce_seconds",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def default_cache_dir() -> Path:
    """Return the directory holding the toolchain cache and recent-files list."""

    return _SETTINGS_DIR


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    cache_dir: str | None = None
    runtime_name: str = "node"
    runtime_path: str | None = None
    toolchain_script: str | None = None
    invoke_timeout: float = DEFAULT_INVOKE_TIMEOUT
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    watch_batch_ms: int = 50
    source_extension: str = ".tsx"
    output_dir: str | None = None
    debug_logging: bool = False

    def resolved_cache_dir(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return default_cache_dir()

    def resolved_toolchain_script(self) -> Path:
        if self.toolchain_script:
            return Path(self.toolchain_script).expanduser()
        return self.resolved_cache_dir() / "bundler.mjs"

    def resolved_output_dir(self) -> Path:
        if self.output_dir:
            return Path(self.output_dir).expanduser()
        return self.resolved_cache_dir() / "previews"


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s: %s", self._path, sorted(data))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = asdict(settings)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        try:
            file_io.write_text(self._path, body)
        except OSError as exc:
            raise PersistenceError(
                message=f"Failed to save settings to {self._path}: {exc}",
                path=str(self._path),
            ) from exc
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(data, Mapping):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return dict(data)

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
