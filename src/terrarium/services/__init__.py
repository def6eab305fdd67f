"""Service layer helpers (runtime discovery, bundling, watching, persistence)."""

from .errors import (
    PreviewError,
    RuntimeNotFoundError,
    SessionNotFoundError,
    SourceFileError,
    WatchSetupError,
)
from .toolchain import (
    BundleSuccess,
    InvocationResult,
    InvocationTimeout,
    ProcessError,
    RuntimeNotFound,
    StructuredError,
    ToolchainInvoker,
)

__all__ = [
    "BundleSuccess",
    "InvocationResult",
    "InvocationTimeout",
    "PreviewError",
    "ProcessError",
    "RuntimeNotFound",
    "RuntimeNotFoundError",
    "SessionNotFoundError",
    "SourceFileError",
    "StructuredError",
    "ToolchainInvoker",
    "WatchSetupError",
]
