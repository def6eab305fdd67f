"""Error types raised by the preview pipeline.

Invocation outcomes (timeouts, crashed or failing bundler runs) are not
exceptions; they travel as :mod:`terrarium.services.toolchain` results. The
classes below cover the remaining failure paths: discovery, validation,
session lookup and the best-effort infrastructure pieces.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "ErrorCode",
    "PreviewError",
    "RuntimeNotFoundError",
    "SourceFileError",
    "SessionNotFoundError",
    "WatchSetupError",
    "PersistenceError",
    "NODE_DOWNLOAD_HINT",
]

NODE_DOWNLOAD_HINT = "Install it from https://nodejs.org"


class ErrorCode:
    """Constants for machine-readable error codes."""

    RUNTIME_NOT_FOUND = "runtime_not_found"
    FILE_NOT_FOUND = "file_not_found"
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    SESSION_NOT_FOUND = "session_not_found"
    WATCH_SETUP_FAILED = "watch_setup_failed"
    PERSISTENCE_FAILED = "persistence_failed"


@dataclass
class PreviewError(Exception):
    """Base exception for Terrarium errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable description, shown verbatim to the user.
        suggestion: Optional remediation hint.
    """

    error_code: str
    message: str
    suggestion: str = ""

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return self.message


@dataclass
class RuntimeNotFoundError(PreviewError):
    """No Node.js runtime could be located. Terminal until the user installs one."""

    error_code: str = field(default=ErrorCode.RUNTIME_NOT_FOUND)
    message: str = field(default=f"Node.js not found. {NODE_DOWNLOAD_HINT}")
    suggestion: str = field(default=NODE_DOWNLOAD_HINT)

    searched: tuple[str, ...] = field(default_factory=tuple)


@dataclass
class SourceFileError(PreviewError):
    """A path handed to ``open_file`` is missing or is not a preview source."""

    error_code: str = field(default=ErrorCode.FILE_NOT_FOUND)
    message: str = field(default="File not found")
    suggestion: str = field(default="")

    path: str | None = field(default=None)

    @classmethod
    def missing(cls, path: str) -> "SourceFileError":
        return cls(message=f"File not found: {path}", path=path)

    @classmethod
    def wrong_type(cls, path: str, extension: str) -> "SourceFileError":
        kind = extension.lstrip(".").upper()
        return cls(
            error_code=ErrorCode.UNSUPPORTED_FILE_TYPE,
            message=f"Not a {kind} file: {path}",
            path=path,
        )


@dataclass
class SessionNotFoundError(PreviewError):
    """The session has no file registered."""

    error_code: str = field(default=ErrorCode.SESSION_NOT_FOUND)
    message: str = field(default="No file loaded")
    suggestion: str = field(default="")

    session_id: str | None = field(default=None)


@dataclass
class WatchSetupError(PreviewError):
    """A change subscription could not be created. Callers degrade to manual reloads."""

    error_code: str = field(default=ErrorCode.WATCH_SETUP_FAILED)
    message: str = field(default="Failed to watch file")
    suggestion: str = field(default="")

    path: str | None = field(default=None)


@dataclass
class PersistenceError(PreviewError):
    """Writing a best-effort store failed."""

    error_code: str = field(default=ErrorCode.PERSISTENCE_FAILED)
    message: str = field(default="Failed to persist state")
    suggestion: str = field(default="")

    path: str | None = field(default=None)
