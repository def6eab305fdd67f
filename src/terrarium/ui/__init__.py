"""UI-facing layer: sessions, preview notifications and display surfaces."""

from .domain.session_registry import PRIMARY_SESSION_ID, Session, SessionRegistry
from .events import EventBus
from .headless import HeadlessPreviewSurface
from .preview_service import PreviewService

__all__ = [
    # Event Bus
    "EventBus",
    # Sessions
    "PRIMARY_SESSION_ID",
    "Session",
    "SessionRegistry",
    "PreviewService",
    # Display surfaces
    "HeadlessPreviewSurface",
]
