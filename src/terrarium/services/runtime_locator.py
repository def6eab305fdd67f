"""Discovery of the Node.js runtime used to execute the bundler script.

Desktop launches usually inherit a minimal ``PATH`` (``/usr/bin:/bin``), so the
locator cannot rely on ``shutil.which``. It checks, in fixed order:

1. well-known install locations,
2. version-manager trees (nvm, fnm), picking the numerically newest version,
3. the user's login shell, asked non-interactively for ``command -v``.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .errors import RuntimeNotFoundError

__all__ = [
    "RuntimeLocator",
    "VersionManagerRoot",
    "DEFAULT_FIXED_CANDIDATES",
    "default_version_roots",
    "parse_version",
    "select_latest_version",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_FIXED_CANDIDATES: tuple[Path, ...] = (
    Path("/usr/local/bin/node"),
    Path("/opt/homebrew/bin/node"),
)
_SHELL_LOOKUP_TIMEOUT = 10.0
_VERSION_PREFIX = re.compile(r"^[^0-9]*")

ShellRunner = Callable[[Sequence[str], float], "subprocess.CompletedProcess[str]"]


@dataclass(slots=True, frozen=True)
class VersionManagerRoot:
    """A directory of installed runtime versions.

    ``binary`` is the path of the executable relative to a version directory,
    e.g. ``bin/node`` for nvm or ``installation/bin/node`` for fnm.
    """

    name: str
    root: Path
    binary: str


def default_version_roots(home: Path | None = None, runtime_name: str = "node") -> tuple[VersionManagerRoot, ...]:
    base = home or Path.home()
    return (
        VersionManagerRoot("nvm", base / ".nvm" / "versions" / "node", f"bin/{runtime_name}"),
        VersionManagerRoot(
            "fnm",
            base / "Library" / "Application Support" / "fnm" / "node-versions",
            f"installation/bin/{runtime_name}",
        ),
        VersionManagerRoot(
            "fnm",
            base / ".local" / "share" / "fnm" / "node-versions",
            f"installation/bin/{runtime_name}",
        ),
    )


def parse_version(name: str) -> tuple[int, ...] | None:
    """Parse ``v18.17.0`` style directory names into integer tuples.

    Returns ``None`` when any dotted component is not an integer.
    """

    stripped = _VERSION_PREFIX.sub("", name.strip())
    if not stripped:
        return None
    parts: list[int] = []
    for component in stripped.split("."):
        if not component.isdigit():
            return None
        parts.append(int(component))
    return tuple(parts)


def select_latest_version(root: VersionManagerRoot) -> Path | None:
    """Return the runtime binary of the numerically highest installed version."""

    try:
        entries = list(root.root.iterdir())
    except OSError:
        return None

    best: tuple[tuple[int, ...], Path] | None = None
    for entry in entries:
        version = parse_version(entry.name)
        if version is None:
            continue
        binary = entry / root.binary
        if not binary.exists():
            continue
        if best is None or version > best[0]:
            best = (version, binary)
    return best[1] if best else None


def _run_shell(command: Sequence[str], timeout: float) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(
        list(command),
        capture_output=True,
        text=True,
        timeout=timeout,
        stdin=subprocess.DEVNULL,
        check=False,
    )


class RuntimeLocator:
    """Finds an executable able to run the bundler script."""

    def __init__(
        self,
        *,
        runtime_name: str = "node",
        explicit_path: Path | str | None = None,
        fixed_candidates: Iterable[Path] | None = None,
        version_roots: Iterable[VersionManagerRoot] | None = None,
        shell: str | None = None,
        shell_runner: ShellRunner | None = None,
        shell_timeout: float = _SHELL_LOOKUP_TIMEOUT,
    ) -> None:
        self._runtime_name = runtime_name
        self._explicit_path = Path(explicit_path).expanduser() if explicit_path else None
        self._fixed_candidates = tuple(
            DEFAULT_FIXED_CANDIDATES if fixed_candidates is None else fixed_candidates
        )
        self._version_roots = tuple(
            default_version_roots(runtime_name=runtime_name)
            if version_roots is None
            else version_roots
        )
        self._shell = shell
        self._shell_runner = shell_runner or _run_shell
        self._shell_timeout = shell_timeout
        self._cached: Path | None = None
        self._lock = threading.Lock()

    @property
    def runtime_name(self) -> str:
        return self._runtime_name

    def locate(self) -> Path:
        """Return the runtime path or raise :class:`RuntimeNotFoundError`."""

        with self._lock:
            cached = self._cached
        if cached is not None and cached.exists():
            return cached

        found = self._search()
        with self._lock:
            self._cached = found
        LOGGER.debug("Located %s runtime at %s", self._runtime_name, found)
        return found

    def clear_cache(self) -> None:
        with self._lock:
            self._cached = None

    # ------------------------------------------------------------------
    # Search steps
    # ------------------------------------------------------------------
    def _search(self) -> Path:
        searched: list[str] = []

        if self._explicit_path is not None:
            searched.append(str(self._explicit_path))
            if self._explicit_path.exists():
                return self._explicit_path
            LOGGER.warning("Configured runtime %s does not exist; searching", self._explicit_path)

        for candidate in self._fixed_candidates:
            searched.append(str(candidate))
            if candidate.exists():
                return candidate

        for root in self._version_roots:
            searched.append(str(root.root))
            if not root.root.is_dir():
                continue
            latest = select_latest_version(root)
            if latest is not None:
                LOGGER.debug("Using %s-managed runtime %s", root.name, latest)
                return latest

        shell = self._login_shell()
        searched.append(f"{shell} -l")
        resolved = self._lookup_via_shell(shell)
        if resolved is not None:
            return resolved

        raise RuntimeNotFoundError(searched=tuple(searched))

    def _login_shell(self) -> str:
        return self._shell or os.environ.get("SHELL") or "/bin/sh"

    def _lookup_via_shell(self, shell: str) -> Path | None:
        command = [shell, "-l", "-c", f"command -v {self._runtime_name}"]
        try:
            completed = self._shell_runner(command, self._shell_timeout)
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.debug("Login shell lookup via %s failed: %s", shell, exc)
            return None
        if completed.returncode != 0:
            return None
        # Login shells may print banners before the answer; take the first absolute path.
        for line in (completed.stdout or "").splitlines():
            candidate = line.strip()
            if candidate and os.path.isabs(candidate):
                return Path(candidate)
        return None
