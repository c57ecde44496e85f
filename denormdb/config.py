"""
Configuration management for denormdb.

Settings are read from environment variables prefixed with DENORMDB_, so an
embedding application can configure the storage backend and logging without
config files.

Invariants:
    - All settings have defaults suitable for local development and tests
    - The default backend is in-memory, nothing touches disk unless asked

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep create_store (store/base.py) in step with StorageBackend
"""

from __future__ import annotations

import logging
from enum import Enum

import json_log_formatter
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class StorageBackend(str, Enum):
    """Supported document storage backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class DenormDbSettings(BaseSettings):
    """denormdb configuration loaded from environment."""

    # Storage
    storage_backend: StorageBackend = Field(
        default=StorageBackend.MEMORY, description="Document storage backend"
    )
    sqlite_path: str = Field(default="denormdb.sqlite3", description="SQLite database file")
    sqlite_busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy timeout")
    sqlite_wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")

    # Behaviour
    update_references: bool = Field(
        default=True, description="Propagate updates to embedded copies by default"
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (text, json)")

    model_config = {"env_prefix": "DENORMDB_"}


def setup_logging(settings: DenormDbSettings) -> None:
    """Configure root logging based on settings.

    Args:
        settings: Library settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    logger.debug(
        "Logging configured",
        extra={"log_level": settings.log_level, "log_format": settings.log_format},
    )
