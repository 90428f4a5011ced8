"""Courier application configuration.

Loads settings from a single YAML file:
  * courier.settings.yaml  (path overridable with COURIER_SETTINGS)

A missing file is not an error: every section falls back to its defaults,
which is what the test-suite relies on.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("courier.settings.yaml")
SETTINGS_ENV_VAR = "COURIER_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Where the embedded DuckDB files live.

    ``data_dir`` may be ":memory:" to keep every store in-process.
    """
    data_dir:     str = "./data"
    messages_db:  str = "messages.duckdb"
    directory_db: str = "directory.duckdb"
    outbox_db:    str = "push_outbox.duckdb"

    def path_for(self, filename: str) -> str:
        if self.data_dir == ":memory:":
            return ":memory:"
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        return str(Path(self.data_dir) / filename)


class UploadSettings(BaseModel):
    upload_dir:            str       = "./uploads"
    public_base_url:       str       = ""
    max_file_size_bytes:   int       = 50 * 1024 * 1024
    allowed_mime_prefixes: List[str] = Field(default_factory=lambda: ["image/", "video/"])


class MessagingSettings(BaseModel):
    default_page_size:            int   = 50
    max_page_size:                int   = 100
    max_content_length:           int   = 5000
    persistence_timeout_seconds:  float = 5.0
    heartbeat_timeout_seconds:    float = 60.0   # 0 disables the idle check
    enforce_community_membership: bool  = True

    @field_validator("max_page_size")
    @classmethod
    def _positive_page_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_page_size must be at least 1")
        return v


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    uploads:   UploadSettings    = Field(default_factory=UploadSettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    return Path(override) if override else SETTINGS_FILE


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load settings from *path* (or the default location) into *AppSettings*."""
    settings_data = _load_yaml(path or settings_path())

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, data_dir=%s, enforce_membership=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.data_dir,
        app_settings.messaging.enforce_community_membership,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget cached settings (for testing)."""
    global _config
    _config = None
