"""Registry of display sessions and the file each one previews."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ...services.errors import SessionNotFoundError

__all__ = ["PRIMARY_SESSION_ID", "Session", "SessionRegistry", "WatchHandle"]

LOGGER = logging.getLogger(__name__)

PRIMARY_SESSION_ID = "main"
_ALLOCATED_PREFIX = "preview"


class WatchHandle(Protocol):
    """Anything owning an OS-level subscription that can be released."""

    def stop(self) -> None:  # pragma: no cover - protocol stub
        ...


@dataclass(slots=True)
class Session:
    """One display context tracking a single source file."""

    id: str
    file: Path
    watcher: WatchHandle | None = None


class SessionRegistry:
    """Thread-safe mapping from session id to :class:`Session`.

    The lock only guards the dictionary. Watchers are released and file paths
    are handed out after the lock is dropped, so no caller ever holds it while
    talking to the filesystem or a subprocess.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        # Slot 0 belongs to the primary session.
        self._counter = itertools.count(1)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def allocate_id(self) -> str:
        """Return a fresh id for a programmatically created session."""

        with self._lock:
            value = next(self._counter)
        return f"{_ALLOCATED_PREFIX}-{value}"

    def register(self, session_id: str, file: Path | str) -> Session:
        """Insert or replace the session, releasing any previous watcher."""

        session = Session(id=session_id, file=Path(file))
        with self._lock:
            previous = self._sessions.get(session_id)
            self._sessions[session_id] = session
        if previous is not None:
            _release(previous)
            LOGGER.debug("Session %s switched %s -> %s", session_id, previous.file, session.file)
        else:
            LOGGER.debug("Session %s registered for %s", session_id, session.file)
        return session

    def attach_watcher(self, session_id: str, watcher: WatchHandle, *, file: Path | None = None) -> bool:
        """Give the session ownership of ``watcher``.

        Returns ``False`` (and stops ``watcher``) when the session no longer
        exists, or when ``file`` is given and the session moved on to another
        file in the meantime.
        """

        with self._lock:
            session = self._sessions.get(session_id)
            stale = session is None or (file is not None and session.file != Path(file))
            previous = None
            if not stale and session is not None:
                previous = session.watcher
                session.watcher = watcher
        if stale:
            watcher.stop()
            return False
        if previous is not None and previous is not watcher:
            previous.stop()
        return True

    def lookup(self, session_id: str) -> Path:
        """Return the session's file or raise :class:`SessionNotFoundError`."""

        with self._lock:
            session = self._sessions.get(session_id)
            file = session.file if session is not None else None
        if file is None:
            raise SessionNotFoundError(session_id=session_id)
        return file

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def contains(self, session_id: str) -> bool:
        return session_id in self

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def remove(self, session_id: str) -> bool:
        """Tear the session down. Returns ``False`` if it was unknown."""

        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        _release(session)
        LOGGER.debug("Session %s removed", session_id)
        return True

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            _release(session)


def _release(session: Session) -> None:
    watcher = session.watcher
    session.watcher = None
    if watcher is None:
        return
    try:
        watcher.stop()
    except Exception:
        LOGGER.warning("Failed to release watcher for session %s", session.id, exc_info=True)
