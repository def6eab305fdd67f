"""Event bus carrying preview notifications to display surfaces.

Every notification names the session it belongs to, so a display surface only
needs to subscribe once and filter on its own ``session_id``.
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

    from ..services.recent_files import RecentEntry

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system."""

    pass


class BundleTrigger(enum.Enum):
    """Why a bundle was produced."""

    REQUEST = "request"
    CHANGE = "change"


# =============================================================================
# Session lifecycle
# =============================================================================


@dataclass(slots=True)
class SessionOpened(Event):
    """A session started tracking ``path``."""

    session_id: str
    path: str


@dataclass(slots=True)
class SessionClosed(Event):
    """A session was torn down and its watcher released."""

    session_id: str


@dataclass(slots=True)
class NoFileLoaded(Event):
    """The session was started without a usable file."""

    session_id: str


# =============================================================================
# Toolchain notifications
# =============================================================================


@dataclass(slots=True)
class SetupStarted(Event):
    """First-run dependency installation began for a bundle request."""

    session_id: str


@dataclass(slots=True)
class SetupFinished(Event):
    """First-run dependency installation ended (successfully or not)."""

    session_id: str


@dataclass(slots=True)
class BundleReady(Event):
    """A bundled script is ready for display.

    Attributes:
        session_id: Target session.
        payload: The bundled script text.
        trigger: Whether a request or a file change produced it.
    """

    session_id: str
    payload: str
    trigger: BundleTrigger = BundleTrigger.REQUEST


@dataclass(slots=True)
class BundleFailed(Event):
    """Bundling failed; ``message`` is the raw error text for display.

    Attributes:
        session_id: Target session.
        message: Error text, shown verbatim.
        kind: Result tag (``structured``, ``process``, ``timeout``, ``runtime_missing``).
        trigger: Whether a request or a file change produced it.
    """

    session_id: str
    message: str
    kind: str
    trigger: BundleTrigger = BundleTrigger.REQUEST


@dataclass(slots=True)
class RecentFilesChanged(Event):
    """The persisted recent-files list was updated."""

    entries: list["RecentEntry"] = field(default_factory=list)


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Handlers are stored as weak references where possible to prevent memory
    leaks.

    Example::

        bus = EventBus()

        def on_ready(event: BundleReady) -> None:
            print(f"{event.session_id}: {len(event.payload)} bytes")

        bus.subscribe(BundleReady, on_ready)
        bus.publish(BundleReady(session_id="main", payload="..."))
        bus.unsubscribe(BundleReady, on_ready)

    Thread Safety:
        This implementation is NOT thread-safe. Publish only from the asyncio
        loop thread; watcher threads never touch the bus directly.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Subscribing the same handler twice results in two invocations.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``. Unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers run synchronously in registration order. A handler that
        raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)

        if handlers is None:
            logger.debug("No handlers for event type %s", event_type.__name__)
            return

        logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        saw_dead = False

        # Iterate over a copy: handlers may unsubscribe while being called.
        for handler_ref in list(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                saw_dead = True
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        if saw_dead:
            handlers[:] = [item for item in handlers if item.resolve() is not None]

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of handlers for ``event_type`` (or overall)."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Wrapper holding bound methods weakly and plain callables strongly."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "BundleTrigger",
    "SessionOpened",
    "SessionClosed",
    "NoFileLoaded",
    "SetupStarted",
    "SetupFinished",
    "BundleReady",
    "BundleFailed",
    "RecentFilesChanged",
]
