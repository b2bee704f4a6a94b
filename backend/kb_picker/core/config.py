from pydantic_settings import BaseSettings
from typing import List
from pathlib import Path
import json
import os


SETTINGS_FILE = Path(__file__).parent.parent.parent / "settings.json"


def load_settings_from_file() -> dict:
    """Load settings from JSON file if exists."""
    if SETTINGS_FILE.exists():
        try:
            with open(SETTINGS_FILE) as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            pass
    return {}


def save_settings_to_file(settings: dict) -> None:
    """Save settings to JSON file."""
    with open(SETTINGS_FILE, "w") as f:
        json.dump(settings, f, indent=2)


class Settings(BaseSettings):
    # Resource source
    resource_source_mode: str = "mock"
    local_root: str = "./demo-docs"

    # Knowledge base API (live mode)
    api_base_url: str = "https://api.stack-ai.com"
    api_token: str = ""
    org_id: str = ""
    http_timeout_seconds: float = 30.0

    # Indexing reconciliation
    poll_interval_seconds: float = 10.0
    poll_max_attempts: int = 30  # 5 minutes at 10s intervals
    resync_interval_seconds: float = 30.0

    # Folder browsing / selection
    selection_max_nodes: int = 10000
    prefetch_children: bool = True

    # Server
    backend_port: int = 8000
    cors_origins: List[str] = ["http://localhost:3000"]
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    def __init__(self, **kwargs):
        # Load from settings file first
        file_settings = load_settings_from_file()

        # Merge: kwargs > file_settings > env vars (handled by pydantic)
        merged = {**file_settings, **kwargs}

        super().__init__(**merged)

        # Handle CORS_ORIGINS as JSON string from env
        cors_env = os.getenv("CORS_ORIGINS")
        if cors_env:
            try:
                self.cors_origins = json.loads(cors_env)
            except json.JSONDecodeError:
                pass

    def get_effective_settings(self) -> dict:
        """Get current effective settings (for API response)."""
        return {
            "resource_source_mode": self.resource_source_mode,
            "local_root": self.local_root,
            "api_base_url": self.api_base_url,
            "api_token": self._mask_key(self.api_token),
            "org_id": self.org_id,
            "poll_interval_seconds": self.poll_interval_seconds,
            "poll_max_attempts": self.poll_max_attempts,
            "resync_interval_seconds": self.resync_interval_seconds,
            "selection_max_nodes": self.selection_max_nodes,
            "prefetch_children": self.prefetch_children,
        }

    def _mask_key(self, key: str) -> str:
        """Mask a secret key for display."""
        if not key:
            return ""
        if len(key) <= 8:
            return "*" * len(key)
        return key[:4] + "*" * (len(key) - 8) + key[-4:]


def reload_settings() -> "Settings":
    """Reload settings from file and environment."""
    global settings
    settings = Settings()
    return settings


settings = Settings()
