"""Persisted list of recently opened source files."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

import jsonschema

from ..utils import file_io

__all__ = [
    "MAX_RECENT",
    "DECORATION_COUNT",
    "RecentEntry",
    "RecencyStore",
    "decoration_index",
    "iso_timestamp",
]

LOGGER = logging.getLogger(__name__)

MAX_RECENT = 6
DECORATION_COUNT = 6
_RECENT_FILENAME = "recent-files.json"
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_RECENT_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["path", "decoration", "lastOpened"],
        "properties": {
            "path": {"type": "string", "minLength": 1},
            "decoration": {"type": "integer", "minimum": 0, "maximum": DECORATION_COUNT - 1},
            "lastOpened": {"type": "string"},
        },
    },
}


@dataclass(slots=True, frozen=True)
class RecentEntry:
    """One row of the recent-files list."""

    path: str
    decoration: int
    last_opened: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "decoration": self.decoration, "lastOpened": self.last_opened}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecentEntry":
        return cls(
            path=str(payload["path"]),
            decoration=int(payload["decoration"]),
            last_opened=str(payload["lastOpened"]),
        )


def decoration_index(path: str) -> int:
    """Deterministic cosmetic index in ``[0, 6)`` derived from the path bytes."""

    value = 0
    for byte in path.encode("utf-8"):
        value = (value * 31 + byte) & 0xFFFFFFFF
    return value % DECORATION_COUNT


def iso_timestamp(instant: datetime | None = None) -> str:
    """Return ``instant`` (default: now) as ``YYYY-MM-DDTHH:MM:SSZ`` in UTC."""

    moment = instant or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(_TIMESTAMP_FORMAT)


class RecencyStore:
    """Reads and updates ``recent-files.json`` under the cache directory.

    Concurrent writers follow last-writer-wins; a lost update only drops a
    recent entry.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        capacity: int = MAX_RECENT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(cache_dir) / _RECENT_FILENAME
        self._capacity = max(1, capacity)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> list[RecentEntry]:
        """Return the stored entries, or an empty list if the file is unusable."""

        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Recent files %s unreadable: %s", self._path, exc)
            return []
        try:
            payload = json.loads(text)
            jsonschema.validate(payload, _RECENT_SCHEMA)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Recent files %s is not valid JSON: %s", self._path, exc)
            return []
        except jsonschema.ValidationError as exc:
            LOGGER.warning("Recent files %s has an unexpected shape: %s", self._path, exc.message)
            return []
        return [RecentEntry.from_dict(item) for item in payload]

    def record(self, path: str) -> list[RecentEntry]:
        """Move ``path`` to the front of the list, persist it and return the new list."""

        entries = self.read()
        now = iso_timestamp(self._clock() if self._clock else None)

        existing = next((entry for entry in entries if entry.path == path), None)
        if existing is not None:
            entries.remove(existing)
            entry = replace(existing, last_opened=now)
        else:
            entry = RecentEntry(path=path, decoration=decoration_index(path), last_opened=now)

        entries.insert(0, entry)
        del entries[self._capacity:]

        self._persist(entries)
        return entries

    def _persist(self, entries: list[RecentEntry]) -> bool:
        body = json.dumps([entry.to_dict() for entry in entries], indent=2)
        try:
            file_io.write_text(self._path, body)
        except OSError as exc:
            LOGGER.warning("Recent files not saved to %s: %s", self._path, exc)
            return False
        return True
