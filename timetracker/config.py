"""
Configuration and settings for the time tracking backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the storage core and its HTTP glue."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Which StorageProvider implementation the process runs on.
    storage_backend: Literal["sqlite", "mongo"] = Field(default="sqlite")

    # Embedded SQLite store, held in memory and flushed to this file.
    db_path: str = Field(default="./data/timetracker.db")
    db_auto_save_interval: float = Field(default=5.0, gt=0)

    # MongoDB document store
    mongo_uri: str = Field(default="mongodb://localhost:27017")
    mongo_db_name: str = Field(default="timetracker")

    # One-off SQLite -> MongoDB migration toggle
    migrate_sqlite_to_mongo: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
