from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
import os

import kb_picker.core.config as config_module
from kb_picker.api.deps import get_sessions
from kb_picker.core.config import (
    save_settings_to_file,
    reload_settings,
    load_settings_from_file,
)
from kb_picker.services.resource_source import get_resource_source
from kb_picker.services.session import SessionManager

router = APIRouter(prefix="/settings", tags=["settings"])


class SettingsUpdate(BaseModel):
    resource_source_mode: Optional[str] = None
    local_root: Optional[str] = None
    api_base_url: Optional[str] = None
    api_token: Optional[str] = None
    org_id: Optional[str] = None
    poll_interval_seconds: Optional[float] = None
    poll_max_attempts: Optional[int] = None
    resync_interval_seconds: Optional[float] = None
    selection_max_nodes: Optional[int] = None
    prefetch_children: Optional[bool] = None


class SettingsResponse(BaseModel):
    resource_source_mode: str
    local_root: str
    api_base_url: str
    api_token: str  # masked
    org_id: str
    poll_interval_seconds: float
    poll_max_attempts: int
    resync_interval_seconds: float
    selection_max_nodes: int
    prefetch_children: bool


class TestConnectionResponse(BaseModel):
    source: bool
    errors: dict


@router.get("", response_model=SettingsResponse)
async def get_settings():
    """Retrieve current settings with masked sensitive values."""
    return config_module.settings.get_effective_settings()


@router.post("", response_model=SettingsResponse)
async def update_settings(
    update: SettingsUpdate, sessions: SessionManager = Depends(get_sessions)
):
    """Update settings and save to local file.

    The active session and source are dropped: both were built against
    the previous settings.
    """
    if update.resource_source_mode is not None and update.resource_source_mode not in ("mock", "live"):
        raise HTTPException(
            status_code=400,
            detail="resource_source_mode must be 'mock' or 'live'",
        )
    if update.poll_max_attempts is not None and update.poll_max_attempts < 1:
        raise HTTPException(status_code=400, detail="poll_max_attempts must be at least 1")

    # Load existing settings
    current = load_settings_from_file()

    # Update only provided fields
    for field, value in update.model_dump(exclude_none=True).items():
        current[field] = value

    if update.api_token is not None:
        # Also set environment variable for immediate use
        os.environ["API_TOKEN"] = update.api_token

    # Save to file
    save_settings_to_file(current)

    # Reload settings
    new_settings = reload_settings()
    await sessions.reset()

    return new_settings.get_effective_settings()


@router.post("/test", response_model=TestConnectionResponse)
async def test_connection(connection_id: str):
    """List the root of a connection with the configured source."""
    errors = {}
    source_ok = False

    try:
        source = get_resource_source()
        await source.list_children(connection_id, None)
        source_ok = True
    except Exception as e:
        errors["source"] = str(e)

    return TestConnectionResponse(source=source_ok, errors=errors)
