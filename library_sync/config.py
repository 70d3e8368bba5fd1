"""
Configuration management for Library Sync Service.
Values come from environment variables (optionally loaded from a .env file).
"""

import os
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from library_sync.errors import ConfigurationError
from library_sync.sync.models import SyncOptions, DEFAULT_CHUNK_SIZE

load_dotenv()


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


class SyncConfig(BaseModel):
    """Configuration for the sync service."""

    # Calibre settings
    calibre_db_path: Optional[str] = Field(
        default=None,
        description="Path to the Calibre library metadata.db"
    )

    # Tracking store
    database_url: str = Field(
        default="sqlite:///data/library-sync.db",
        description="Database connection URL"
    )

    # Sync settings
    sync_interval_minutes: int = Field(
        default=60,
        ge=0,
        description="Scheduled sync interval in minutes (0 disables)"
    )
    chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE,
        gt=0,
        description="Number of catalog records fetched per chunk"
    )
    detect_orphans: bool = Field(default=True, description="Mark books removed from Calibre as orphaned")
    orphan_threshold: float = Field(
        default=0.10,
        ge=0.0,
        le=1.0,
        description="Largest fraction of the library a single sync may orphan"
    )

    # Watcher settings
    enable_watcher: bool = Field(default=True, description="Sync automatically when metadata.db changes")
    watch_interval_seconds: int = Field(default=5, gt=0, description="Watcher polling interval")

    # Application settings
    log_level: str = Field(default="INFO", description="Logging level")
    port: int = Field(default=5000, description="HTTP port")

    def sync_options(self) -> SyncOptions:
        """Build engine options from this configuration."""
        return SyncOptions(
            detect_orphans=self.detect_orphans,
            chunk_size=self.chunk_size,
        )

    def require_calibre_path(self) -> str:
        """Return the Calibre database path or raise if it is not configured."""
        if not self.calibre_db_path:
            raise ConfigurationError(
                "CALIBRE_DB_PATH is not set. Calibre integration will not work."
            )
        return self.calibre_db_path


def get_config_from_env() -> SyncConfig:
    """Load configuration from environment variables."""
    return SyncConfig(
        calibre_db_path=os.getenv("CALIBRE_DB_PATH") or None,
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/library-sync.db"),
        sync_interval_minutes=int(os.getenv("SYNC_INTERVAL_MINUTES", "60")),
        chunk_size=int(os.getenv("SYNC_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE))),
        detect_orphans=_env_bool("DETECT_ORPHANS"),
        orphan_threshold=float(os.getenv("ORPHAN_THRESHOLD", "0.10")),
        enable_watcher=_env_bool("ENABLE_WATCHER"),
        watch_interval_seconds=int(os.getenv("WATCH_INTERVAL_SECONDS", "5")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        port=int(os.getenv("PORT", "5000")),
    )
