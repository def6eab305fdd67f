"""Display surface that renders each session into a standalone HTML page."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from pathlib import Path

from ..utils import file_io
from .events import (
    BundleFailed,
    BundleReady,
    EventBus,
    NoFileLoaded,
    SessionClosed,
    SessionOpened,
    SetupFinished,
    SetupStarted,
)

__all__ = ["HeadlessPreviewSurface", "SessionView", "render_page"]

LOGGER = logging.getLogger(__name__)

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ margin: 0; font-family: system-ui, sans-serif; }}
.terrarium-banner {{ background: #fde8e8; color: #7a1c1c; padding: 12px 16px; white-space: pre-wrap; font-family: ui-monospace, monospace; }}
.terrarium-placeholder {{ color: #666; padding: 24px; }}
</style>
</head>
<body>
{banner}<div id="root">{placeholder}</div>
{script}</body>
</html>
"""


@dataclass(slots=True)
class SessionView:
    """What a session currently shows."""

    path: str | None = None
    last_good: str | None = None
    error: str | None = None
    installing: bool = False


def render_page(view: SessionView, *, title: str = "Terrarium") -> str:
    """Render ``view`` as HTML. The last good bundle stays visible under an error."""

    banner = ""
    if view.error:
        banner = f'<pre class="terrarium-banner">{html.escape(view.error)}</pre>\n'
    placeholder = ""
    if view.last_good is None:
        if view.installing:
            message = "Installing preview dependencies..."
        elif view.path is None:
            message = "No file loaded"
        else:
            message = ""
        if message:
            placeholder = f'<p class="terrarium-placeholder">{html.escape(message)}</p>'
    script = ""
    if view.last_good is not None:
        body = view.last_good.replace("</script", "<\\/script")
        script = f'<script type="module">\n{body}\n</script>\n'
    return _PAGE_TEMPLATE.format(
        title=html.escape(title),
        banner=banner,
        placeholder=placeholder,
        script=script,
    )


class HeadlessPreviewSurface:
    """Writes ``<output_dir>/<session_id>.html`` whenever a session's view changes."""

    def __init__(self, bus: EventBus, output_dir: Path) -> None:
        self._bus = bus
        self._output_dir = Path(output_dir)
        self._views: dict[str, SessionView] = {}
        self._failures: dict[str, str] = {}
        bus.subscribe(SessionOpened, self._handle_opened)
        bus.subscribe(SessionClosed, self._handle_closed)
        bus.subscribe(NoFileLoaded, self._handle_no_file)
        bus.subscribe(SetupStarted, self._handle_setup_started)
        bus.subscribe(SetupFinished, self._handle_setup_finished)
        bus.subscribe(BundleReady, self._handle_ready)
        bus.subscribe(BundleFailed, self._handle_failed)

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    @property
    def failures(self) -> dict[str, str]:
        """Sessions whose latest result was an error, mapped to the error text."""

        return dict(self._failures)

    def page_path(self, session_id: str) -> Path:
        return self._output_dir / f"{session_id}.html"

    def view(self, session_id: str) -> SessionView | None:
        return self._views.get(session_id)

    def detach(self) -> None:
        self._bus.unsubscribe(SessionOpened, self._handle_opened)
        self._bus.unsubscribe(SessionClosed, self._handle_closed)
        self._bus.unsubscribe(NoFileLoaded, self._handle_no_file)
        self._bus.unsubscribe(SetupStarted, self._handle_setup_started)
        self._bus.unsubscribe(SetupFinished, self._handle_setup_finished)
        self._bus.unsubscribe(BundleReady, self._handle_ready)
        self._bus.unsubscribe(BundleFailed, self._handle_failed)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _handle_opened(self, event: SessionOpened) -> None:
        view = self._views.setdefault(event.session_id, SessionView())
        if view.path != event.path:
            view.last_good = None
            view.error = None
        view.path = event.path
        LOGGER.info("Session %s previewing %s", event.session_id, event.path)

    def _handle_closed(self, event: SessionClosed) -> None:
        self._views.pop(event.session_id, None)
        self._failures.pop(event.session_id, None)

    def _handle_no_file(self, event: NoFileLoaded) -> None:
        self._views[event.session_id] = SessionView()
        LOGGER.info("No file loaded for session %s", event.session_id)
        self._render(event.session_id)

    def _handle_setup_started(self, event: SetupStarted) -> None:
        self._views.setdefault(event.session_id, SessionView()).installing = True
        LOGGER.info("Installing preview dependencies (first run)...")
        self._render(event.session_id)

    def _handle_setup_finished(self, event: SetupFinished) -> None:
        view = self._views.get(event.session_id)
        if view is not None:
            view.installing = False
        LOGGER.info("Dependency setup finished")

    def _handle_ready(self, event: BundleReady) -> None:
        view = self._views.setdefault(event.session_id, SessionView())
        view.last_good = event.payload
        view.error = None
        self._failures.pop(event.session_id, None)
        LOGGER.info(
            "Preview for %s updated (%s, %d bytes)",
            event.session_id,
            event.trigger.value,
            len(event.payload),
        )
        self._render(event.session_id)

    def _handle_failed(self, event: BundleFailed) -> None:
        view = self._views.setdefault(event.session_id, SessionView())
        view.error = event.message
        self._failures[event.session_id] = event.message
        LOGGER.warning("Preview for %s failed (%s): %s", event.session_id, event.kind, event.message)
        self._render(event.session_id)

    def _render(self, session_id: str) -> None:
        view = self._views.get(session_id)
        if view is None:
            return
        title = Path(view.path).name if view.path else "Terrarium"
        target = self.page_path(session_id)
        try:
            file_io.write_text(target, render_page(view, title=title))
        except OSError as exc:
            LOGGER.warning("Unable to write preview page %s: %s", target, exc)
