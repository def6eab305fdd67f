"""Filesystem change subscription for a previewed source file.

The watcher subscribes to the file's *directory* rather than the file itself:
editors that save by writing a temporary file and renaming it over the
original replace the inode, which file-level subscriptions lose track of.

``watchfiles`` delivers raw changes on a dedicated notification thread. That
thread does nothing but wrap each change in a :class:`WatchEvent` and hand it
to the asyncio loop through a bounded queue; filtering, debouncing and the
rebuild callback all run on the loop.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import watchfiles

from .errors import WatchSetupError
from .settings import DEFAULT_DEBOUNCE_SECONDS

__all__ = [
    "ChangeWatcher",
    "RebuildDebouncer",
    "WatchEvent",
    "WatchKind",
    "WatcherState",
    "should_rebuild",
]

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]
ChangeCallback = Callable[[], None]

_DEFAULT_QUEUE_SIZE = 256
_JOIN_TIMEOUT = 1.0


class WatchKind(enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    OTHER = "other"


class WatcherState(enum.Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    DEBOUNCING = "debouncing"


_KIND_MAP = {
    watchfiles.Change.added: WatchKind.CREATED,
    watchfiles.Change.modified: WatchKind.MODIFIED,
    watchfiles.Change.deleted: WatchKind.OTHER,
}
_TRIGGER_KINDS = frozenset({WatchKind.CREATED, WatchKind.MODIFIED})


@dataclass(slots=True, frozen=True)
class WatchEvent:
    """A single change notification, stamped with monotonic arrival time."""

    path: str
    kind: WatchKind
    arrived_at: float


def should_rebuild(last_rebuild: float, window: float, now: float) -> bool:
    """Return ``True`` once at least ``window`` seconds passed since ``last_rebuild``."""

    return now - last_rebuild >= window


class RebuildDebouncer:
    """Tracks the last accepted trigger and rejects triggers inside the window."""

    def __init__(
        self,
        window: float = DEFAULT_DEBOUNCE_SECONDS,
        *,
        clock: Clock = time.monotonic,
        started_at: float | None = None,
    ) -> None:
        self._window = max(0.0, float(window))
        self._clock = clock
        self._last = clock() if started_at is None else started_at

    @property
    def window(self) -> float:
        return self._window

    @property
    def last_accepted(self) -> float:
        return self._last

    def accept(self, now: float | None = None) -> bool:
        instant = self._clock() if now is None else now
        if not should_rebuild(self._last, self._window, instant):
            return False
        self._last = instant
        return True

    def in_window(self, now: float | None = None) -> bool:
        instant = self._clock() if now is None else now
        return not should_rebuild(self._last, self._window, instant)

    def reset(self, now: float | None = None) -> None:
        self._last = self._clock() if now is None else now


class ChangeWatcher:
    """Watches one file and calls ``on_change`` for each debounced modification."""

    def __init__(
        self,
        path: Path | str,
        on_change: ChangeCallback,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        batch_ms: int = 50,
        queue_size: int = _DEFAULT_QUEUE_SIZE,
        clock: Clock = time.monotonic,
    ) -> None:
        self._path = Path(path)
        self._directory = self._path.parent
        self._targets = frozenset({str(self._path), os.path.realpath(self._path)})
        self._on_change = on_change
        self._debouncer = RebuildDebouncer(debounce_seconds, clock=clock)
        self._batch_ms = max(1, int(batch_ms))
        self._queue_size = max(1, queue_size)
        self._clock = clock
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[WatchEvent] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._active = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def path(self) -> Path:
        return self._path

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def active(self) -> bool:
        return self._active

    @property
    def state(self) -> WatcherState:
        if not self._active:
            return WatcherState.IDLE
        if self._debouncer.in_window():
            return WatcherState.DEBOUNCING
        return WatcherState.SUBSCRIBED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Subscribe to the containing directory.

        Must be called from the event loop thread (or with ``loop`` given).
        Raises :class:`WatchSetupError` when the subscription cannot be made.
        """

        if self._active:
            return
        if not self._directory.is_dir():
            raise WatchSetupError(
                message=f"Failed to watch file: {self._directory} is not a directory",
                path=str(self._path),
            )
        try:
            self._loop = loop or asyncio.get_running_loop()
        except RuntimeError as exc:
            raise WatchSetupError(
                message="Failed to watch file: no running event loop", path=str(self._path)
            ) from exc

        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._stop_event = threading.Event()
        self._debouncer.reset()
        thread = threading.Thread(
            target=self._notification_loop,
            args=(self._stop_event,),
            name=f"terrarium-watch-{self._path.name}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as exc:
            raise WatchSetupError(
                message=f"Failed to watch file: {exc}", path=str(self._path)
            ) from exc
        self._thread = thread
        self._drain_task = self._loop.create_task(self._drain())
        self._active = True
        LOGGER.debug("Watching %s via %s", self._path, self._directory)

    def stop(self) -> None:
        """Release the subscription. Safe to call repeatedly."""

        if not self._active:
            return
        self._active = False
        self._stop_event.set()

        task = self._drain_task
        self._drain_task = None
        if task is not None and not task.done():
            loop = self._loop
            if loop is not None and _running_loop() is not loop and not loop.is_closed():
                loop.call_soon_threadsafe(task.cancel)
            else:
                task.cancel()

        thread = self._thread
        self._thread = None
        # The notification thread is a daemon and exits within one watch step;
        # never block a running event loop waiting for it.
        if thread is not None and thread is not threading.current_thread() and _running_loop() is None:
            thread.join(timeout=_JOIN_TIMEOUT)
        LOGGER.debug("Stopped watching %s", self._path)

    # ------------------------------------------------------------------
    # Event handling (loop side)
    # ------------------------------------------------------------------
    def accepts(self, event: WatchEvent) -> bool:
        """Return ``True`` when ``event`` concerns the tracked file and could trigger."""

        return event.path in self._targets and event.kind in _TRIGGER_KINDS

    def handle_event(self, event: WatchEvent) -> bool:
        """Filter, debounce and dispatch ``event``. Returns ``True`` if it triggered."""

        if not self.accepts(event):
            return False
        if not self._debouncer.accept(event.arrived_at):
            LOGGER.debug("Debounced %s change to %s", event.kind.value, self._path.name)
            return False
        try:
            self._on_change()
        except Exception:
            LOGGER.exception("Change callback failed for %s", self._path)
        return True

    async def _drain(self) -> None:
        queue = self._queue
        if queue is None:
            return
        while True:
            event = await queue.get()
            self.handle_event(event)

    def _offer(self, event: WatchEvent) -> None:
        queue = self._queue
        if queue is None or not self._active:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            LOGGER.debug("Dropping change event for %s; queue full", event.path)

    # ------------------------------------------------------------------
    # Notification thread
    # ------------------------------------------------------------------
    def _notification_loop(self, stop_event: threading.Event) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            for changes in watchfiles.watch(
                self._directory,
                watch_filter=None,
                debounce=self._batch_ms,
                step=min(self._batch_ms, 50),
                stop_event=stop_event,
                recursive=False,
                raise_interrupt=False,
            ):
                if stop_event.is_set():
                    break
                arrived_at = self._clock()
                for change, raw_path in changes:
                    event = WatchEvent(
                        path=raw_path,
                        kind=_KIND_MAP.get(change, WatchKind.OTHER),
                        arrived_at=arrived_at,
                    )
                    loop.call_soon_threadsafe(self._offer, event)
        except RuntimeError:
            if loop.is_closed():
                LOGGER.debug("Event loop closed; watcher thread for %s exiting", self._path)
            else:
                LOGGER.warning(
                    "Watcher for %s failed; automatic reload disabled",
                    self._path,
                    exc_info=True,
                )
        except Exception:
            LOGGER.warning(
                "Watcher for %s stopped; automatic reload disabled",
                self._path,
                exc_info=True,
            )


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
