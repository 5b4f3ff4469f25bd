"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast).

Usage:
    from config.settings import get_settings

    settings = get_settings()
    store = SQLiteStore(settings.database.db_path, settings.database.pool_size)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# Nested Settings Groups
# =============================================================================


class DatabaseSettings(BaseSettings):
    """State database configuration."""

    model_config = {"env_prefix": "ONRAMP_", "extra": "ignore"}

    data_dir: Path = Path("data")
    db_filename: str = "state.db"
    pool_size: int = Field(default=5, ge=1)
    busy_timeout_ms: int = Field(default=5000, ge=0)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename


class AnsibleSettings(BaseSettings):
    """OnRamp checkout and ansible-playbook configuration."""

    model_config = {"env_prefix": "ONRAMP_", "extra": "ignore"}

    onramp_dir: Path = Path("aether-onramp")
    ansible_playbook_bin: str = "ansible-playbook"
    inventory_file: Optional[Path] = None  # defaults to <onramp_dir>/hosts.ini
    vars_file: Optional[Path] = None  # defaults to <onramp_dir>/vars/main.yml

    @property
    def inventory_path(self) -> Path:
        return self.inventory_file or self.onramp_dir / "hosts.ini"

    @property
    def vars_path(self) -> Path:
        return self.vars_file or self.onramp_dir / "vars" / "main.yml"


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    database: DatabaseSettings = None  # type: ignore[assignment]
    ansible: AnsibleSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("database") is None:
            values["database"] = DatabaseSettings()
        if values.get("ansible") is None:
            values["ansible"] = AnsibleSettings()
        return values


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
