"""Domain layer for preview sessions.

Domain objects here hold session state independent of any display surface.
They receive dependencies via constructor injection and never talk to the
event bus directly; :mod:`terrarium.ui.preview_service` does that.
"""

from __future__ import annotations

from .session_registry import PRIMARY_SESSION_ID, Session, SessionRegistry, WatchHandle

__all__ = ["PRIMARY_SESSION_ID", "Session", "SessionRegistry", "WatchHandle"]
