"""File helpers shared by the preview pipeline."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

__all__ = [
    "DEFAULT_SOURCE_EXTENSION",
    "has_source_extension",
    "is_preview_source",
    "resolve_source_path",
    "write_text",
]

DEFAULT_SOURCE_EXTENSION = ".tsx"


def has_source_extension(path: Path | str, extension: str = DEFAULT_SOURCE_EXTENSION) -> bool:
    """Return ``True`` when ``path`` ends with ``extension`` (case-insensitive)."""

    suffix = Path(path).suffix
    return bool(suffix) and suffix.lower() == extension.lower()


def is_preview_source(path: Path | str, extension: str = DEFAULT_SOURCE_EXTENSION) -> bool:
    """Return ``True`` for an existing regular file with the preview extension."""

    target = Path(path).expanduser()
    return target.is_file() and has_source_extension(target, extension)


def resolve_source_path(path: Path | str) -> Path:
    """Return ``path`` as an absolute path without following symlinks.

    A symlinked source keeps its own location so watchers observe the
    directory the user opened it from.
    """

    return Path(os.path.abspath(Path(path).expanduser()))


def write_text(path: Path | str, content: str, *, encoding: str = "utf-8") -> Path:
    """Write text to disk, replacing the target atomically."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return target
