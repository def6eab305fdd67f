"""Invocation of the external bundler and classification of its output."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Union

import jsonschema

from .errors import RuntimeNotFoundError
from .runtime_locator import RuntimeLocator
from .settings import DEFAULT_INVOKE_TIMEOUT

__all__ = [
    "BundleSuccess",
    "StructuredError",
    "ProcessError",
    "InvocationTimeout",
    "RuntimeNotFound",
    "InvocationResult",
    "ToolchainInvoker",
    "ERROR_SENTINEL",
    "classify_output",
    "describe_structured_error",
    "build_path_env",
]

LOGGER = logging.getLogger(__name__)

ERROR_SENTINEL = '{"error":true'
_MARKER_PACKAGE = ("node_modules", "react")
_FALLBACK_PATH = "/usr/bin:/bin"
_STRUCTURED_ERROR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["error", "message"],
    "properties": {
        "error": {"const": True},
        "message": {"type": "string"},
        "errors": {"type": "array"},
    },
}

SetupCallback = Callable[[], None]


@dataclass(slots=True, frozen=True)
class BundleSuccess:
    """The bundler produced a script."""

    payload: str
    kind = "success"

    @property
    def ok(self) -> bool:
        return True

    @property
    def display_text(self) -> str:
        return self.payload


@dataclass(slots=True, frozen=True)
class StructuredError:
    """The bundler ran but reported an application-level problem as JSON."""

    payload: str
    kind = "structured"

    @property
    def ok(self) -> bool:
        return False

    @property
    def display_text(self) -> str:
        return self.payload


@dataclass(slots=True, frozen=True)
class ProcessError:
    """The bundler could not be started, crashed, or exited non-zero."""

    message: str
    kind = "process"

    @property
    def ok(self) -> bool:
        return False

    @property
    def display_text(self) -> str:
        return f"Bundler failed:\n{self.message}"


@dataclass(slots=True, frozen=True)
class InvocationTimeout:
    """The bundler exceeded the wall-clock limit and was killed."""

    seconds: float
    kind = "timeout"

    @property
    def ok(self) -> bool:
        return False

    @property
    def display_text(self) -> str:
        return f"Bundler timed out after {self.seconds:g} seconds"


@dataclass(slots=True, frozen=True)
class RuntimeNotFound:
    """No runtime could be located; the user has to install one."""

    hint: str
    kind = "runtime_missing"

    @property
    def ok(self) -> bool:
        return False

    @property
    def display_text(self) -> str:
        return self.hint


InvocationResult = Union[BundleSuccess, StructuredError, ProcessError, InvocationTimeout, RuntimeNotFound]


def classify_output(returncode: int | None, stdout: str, stderr: str) -> InvocationResult:
    """Map a finished bundler run onto an :data:`InvocationResult`.

    The sentinel check comes first because the bundler may report failures on
    stdout with a clean exit status.
    """

    if stdout.startswith(ERROR_SENTINEL):
        return StructuredError(stdout)
    if returncode != 0:
        if stdout and stdout.startswith("{"):
            return StructuredError(stdout)
        return ProcessError(stderr)
    return BundleSuccess(stdout)


def describe_structured_error(payload: str) -> str:
    """Return the ``message`` of a structured error payload, or the raw text."""

    try:
        data = json.loads(payload)
        jsonschema.validate(data, _STRUCTURED_ERROR_SCHEMA)
    except (json.JSONDecodeError, jsonschema.ValidationError):
        return payload.strip()
    message = data["message"].strip()
    details = [
        str(item.get("text"))
        for item in data.get("errors") or []
        if isinstance(item, Mapping) and item.get("text")
    ]
    if details:
        return f"{message} ({'; '.join(details)})"
    return message


def build_path_env(runtime: Path, inherited: str | None) -> str:
    """Prepend the runtime's directory to ``PATH`` so the bundler finds npm."""

    runtime_dir = str(runtime.parent)
    if inherited:
        return f"{runtime_dir}{os.pathsep}{inherited}"
    return f"{runtime_dir}{os.pathsep}{_FALLBACK_PATH}"


class ToolchainInvoker:
    """Runs the bundler script against a source file."""

    def __init__(
        self,
        *,
        locator: RuntimeLocator,
        script: Path,
        cache_dir: Path,
        timeout: float = DEFAULT_INVOKE_TIMEOUT,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._locator = locator
        self._script = Path(script)
        self._cache_dir = Path(cache_dir)
        self._timeout = timeout
        self._base_env = dict(env) if env is not None else None

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def needs_install(self) -> bool:
        """Return ``True`` until the bundler has populated its dependency cache."""

        return not self._cache_dir.joinpath(*_MARKER_PACKAGE).exists()

    async def invoke(
        self,
        source: Path | str,
        *,
        on_setup_started: SetupCallback | None = None,
        on_setup_finished: SetupCallback | None = None,
    ) -> InvocationResult:
        """Bundle ``source`` and classify the outcome. Never raises for bundler failures."""

        installing = self.needs_install()
        if installing:
            _notify(on_setup_started, "setup-started")
        try:
            return await self._run(Path(source))
        finally:
            if installing:
                _notify(on_setup_finished, "setup-finished")

    async def _run(self, source: Path) -> InvocationResult:
        try:
            runtime = await asyncio.to_thread(self._locator.locate)
        except RuntimeNotFoundError as exc:
            LOGGER.warning("Bundling %s skipped: %s", source.name, exc.message)
            return RuntimeNotFound(exc.message)

        if not self._script.exists():
            return ProcessError(f"Bundler script not found: {self._script}")

        env = dict(self._base_env if self._base_env is not None else os.environ)
        env["PATH"] = build_path_env(runtime, env.get("PATH"))
        env.setdefault("TERRARIUM_CACHE_DIR", str(self._cache_dir))

        started = time.perf_counter()
        try:
            proc = await asyncio.create_subprocess_exec(
                str(runtime),
                str(self._script),
                str(source.absolute()),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            # Force a fresh runtime search on the next invocation.
            self._locator.clear_cache()
            return ProcessError(f"Failed to run bundler: {exc}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            LOGGER.warning("Bundler timed out after %.1fs for %s", self._timeout, source)
            return InvocationTimeout(self._timeout)
        except asyncio.CancelledError:
            LOGGER.debug("Bundling %s cancelled; killing pid %s", source.name, proc.pid)
            await asyncio.shield(_terminate(proc))
            raise

        result = classify_output(
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if isinstance(result, StructuredError):
            LOGGER.info(
                "Bundler reported an error for %s in %.0fms: %s",
                source.name,
                elapsed_ms,
                describe_structured_error(result.payload)[:200],
            )
        else:
            LOGGER.debug(
                "Bundled %s in %.0fms (rc=%s, kind=%s)",
                source.name,
                elapsed_ms,
                proc.returncode,
                result.kind,
            )
        return result


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=5.0)
    except asyncio.TimeoutError:  # pragma: no cover - kill is not ignorable
        LOGGER.error("Bundler process %s did not exit after kill", proc.pid)


def _notify(callback: SetupCallback | None, name: str) -> None:
    if callback is None:
        return
    try:
        callback()
    except Exception:
        LOGGER.debug("Ignoring failure in %s notification", name, exc_info=True)
