"""Dependency injection for API routes."""
from fastapi import Depends, HTTPException, Request

import kb_picker.core.config as config_module
from kb_picker.services.session import PickerSession, SessionManager


def get_settings():
    """Get application settings."""
    return config_module.settings


def get_sessions(request: Request) -> SessionManager:
    """Session manager attached to the app at startup."""
    return request.app.state.sessions


def require_session(sessions: SessionManager = Depends(get_sessions)) -> PickerSession:
    """The active session, or 404 when no connection is open."""
    if sessions.active is None:
        raise HTTPException(status_code=404, detail="No active session. Open a connection first.")
    return sessions.active
