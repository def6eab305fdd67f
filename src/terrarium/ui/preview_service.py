"""Session-facing operations: open, rebuild, close and batch-open preview files."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Protocol

from ..services.change_watcher import ChangeWatcher
from ..services.errors import SourceFileError, WatchSetupError
from ..services.recent_files import RecencyStore, RecentEntry
from ..services.settings import Settings
from ..services.toolchain import BundleSuccess, InvocationResult, ToolchainInvoker
from ..utils import file_io
from .domain.session_registry import PRIMARY_SESSION_ID, SessionRegistry
from .events import (
    BundleFailed,
    BundleReady,
    BundleTrigger,
    Event,
    EventBus,
    NoFileLoaded,
    RecentFilesChanged,
    SessionClosed,
    SessionOpened,
    SetupFinished,
    SetupStarted,
)

__all__ = ["PreviewService", "PreviewWatcher", "WatcherFactory", "change_watcher_factory"]

LOGGER = logging.getLogger(__name__)


class PreviewWatcher(Protocol):
    def start(self) -> None:  # pragma: no cover - protocol stub
        ...

    def stop(self) -> None:  # pragma: no cover - protocol stub
        ...


WatcherFactory = Callable[[Path, Callable[[], None]], PreviewWatcher]


def change_watcher_factory(settings: Settings) -> WatcherFactory:
    """Return a factory building :class:`ChangeWatcher` objects from ``settings``."""

    def _factory(path: Path, on_change: Callable[[], None]) -> PreviewWatcher:
        return ChangeWatcher(
            path,
            on_change,
            debounce_seconds=settings.debounce_seconds,
            batch_ms=settings.watch_batch_ms,
        )

    return _factory


class PreviewService:
    """Coordinates the registry, invoker, watchers and recent-files store.

    All public coroutines run on the asyncio loop that owns ``bus``. Results
    are always published, whatever their kind, and also returned to the
    caller so scripted flows (``--once``) can inspect them.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        invoker: ToolchainInvoker,
        recents: RecencyStore,
        bus: EventBus,
        watcher_factory: WatcherFactory | None = None,
        source_extension: str = file_io.DEFAULT_SOURCE_EXTENSION,
    ) -> None:
        self._registry = registry
        self._invoker = invoker
        self._recents = recents
        self._bus = bus
        self._watcher_factory = watcher_factory
        self._source_extension = source_extension
        self._pending: set[asyncio.Task[InvocationResult | None]] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate_source(self, path: Path | str) -> Path:
        """Return the absolute source path or raise :class:`SourceFileError`."""

        candidate = Path(path).expanduser()
        if not candidate.is_file():
            raise SourceFileError.missing(str(path))
        if not file_io.has_source_extension(candidate, self._source_extension):
            raise SourceFileError.wrong_type(str(path), self._source_extension)
        return file_io.resolve_source_path(candidate)

    def accepts_path(self, path: Path | str) -> bool:
        return file_io.is_preview_source(path, self._source_extension)

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------
    async def open_file(self, session_id: str, path: Path | str) -> InvocationResult:
        """Point ``session_id`` at ``path``, bundle it and start watching it.

        Raises :class:`SourceFileError` before anything else happens when the
        path is missing or has the wrong extension.
        """

        source = self.validate_source(path)
        self._registry.register(session_id, source)
        self._publish(SessionOpened(session_id=session_id, path=str(source)))

        entries = await asyncio.to_thread(self._recents.record, str(source))
        self._publish(RecentFilesChanged(entries=entries))

        result = await self._bundle(session_id, source, BundleTrigger.REQUEST)
        self._watch(session_id, source)
        return result

    async def open_new_session(self, path: Path | str) -> tuple[str, InvocationResult]:
        """Open ``path`` in a freshly allocated session."""

        source = self.validate_source(path)
        session_id = self._registry.allocate_id()
        result = await self.open_file(session_id, source)
        return session_id, result

    async def request_bundle(self, session_id: str) -> InvocationResult:
        """Rebuild the session's current file on demand.

        Raises :class:`~terrarium.services.errors.SessionNotFoundError` when the
        session has no file.
        """

        source = self._registry.lookup(session_id)
        return await self._bundle(session_id, source, BundleTrigger.REQUEST)

    def close_session(self, session_id: str) -> bool:
        if not self._registry.remove(session_id):
            return False
        self._publish(SessionClosed(session_id=session_id))
        return True

    async def open_paths(self, paths: Iterable[Path | str]) -> dict[str, InvocationResult]:
        """Open launch arguments: the first usable path claims the primary session."""

        usable: list[Path | str] = []
        for candidate in paths:
            if self.accepts_path(candidate):
                usable.append(candidate)
            else:
                LOGGER.debug("Skipping launch argument %s", candidate)

        if not usable:
            self._publish(NoFileLoaded(session_id=PRIMARY_SESSION_ID))
            return {}

        results: dict[str, InvocationResult] = {}
        results[PRIMARY_SESSION_ID] = await self.open_file(PRIMARY_SESSION_ID, usable[0])
        for extra in usable[1:]:
            session_id, result = await self.open_new_session(extra)
            results[session_id] = result
        return results

    def recent_files(self) -> list[RecentEntry]:
        return self._recents.read()

    async def wait_for_pending(self) -> None:
        """Wait until every change-triggered rebuild scheduled so far has finished."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        self._registry.close_all()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _bundle(self, session_id: str, source: Path, trigger: BundleTrigger) -> InvocationResult:
        result = await self._invoker.invoke(
            source,
            on_setup_started=lambda: self._publish(SetupStarted(session_id=session_id)),
            on_setup_finished=lambda: self._publish(SetupFinished(session_id=session_id)),
        )
        self._deliver(session_id, result, trigger)
        return result

    def _deliver(self, session_id: str, result: InvocationResult, trigger: BundleTrigger) -> bool:
        if not self._registry.contains(session_id):
            LOGGER.debug("Dropping %s result for closed session %s", result.kind, session_id)
            return False
        if isinstance(result, BundleSuccess):
            self._publish(BundleReady(session_id=session_id, payload=result.payload, trigger=trigger))
        else:
            self._publish(
                BundleFailed(
                    session_id=session_id,
                    message=result.display_text,
                    kind=result.kind,
                    trigger=trigger,
                )
            )
        return True

    def _watch(self, session_id: str, source: Path) -> None:
        if self._watcher_factory is None:
            return
        watcher = self._watcher_factory(source, lambda: self._on_file_changed(session_id, source))
        try:
            watcher.start()
        except WatchSetupError as exc:
            LOGGER.warning("Auto-reload disabled for %s: %s", source, exc.message)
            return
        self._registry.attach_watcher(session_id, watcher, file=source)

    def _on_file_changed(self, session_id: str, source: Path) -> None:
        task = asyncio.get_running_loop().create_task(self._rebuild(session_id, source))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _rebuild(self, session_id: str, source: Path) -> InvocationResult | None:
        session = self._registry.get(session_id)
        if session is None or session.file != source:
            return None
        LOGGER.debug("Rebuilding %s for session %s", source.name, session_id)
        return await self._bundle(session_id, source, BundleTrigger.CHANGE)

    def _publish(self, event: Event) -> None:
        self._bus.publish(event)
