"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for the OrcaScore backend. Reads from .env automatically.

    User-editable values (provider choice, API keys entered in the UI) live in
    the ``settings`` table instead; see ``orcascore.core.settings_store``.
    """

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # SQLite database file. ":memory:" is accepted for tests.
    database_path: str = "orcascore.db"

    @field_validator("database_path")
    @classmethod
    def _resolve_database(cls, value: str) -> str:
        if value and value != ":memory:":
            return str(Path(value).expanduser().resolve())
        return value

    # Fallback Anthropic key when none was saved through the Settings screen
    anthropic_api_key: str = ""

    # Web API (consumed by the webview front-end)
    web_host: str = "127.0.0.1"
    web_port: int = 8421

    # Planning agent
    planning_max_iterations: int = 20
    planning_max_tokens: int = 4096

    # Edit locks: a lock older than the timeout is considered abandoned
    lock_stale_timeout_minutes: int = 5
    lock_sweep_interval_seconds: float = 60.0

    # Outbound LLM calls
    http_timeout_seconds: float = 120.0

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/orcascore.log"
    log_max_bytes: int = Field(default=5_000_000, gt=0)
    log_backup_count: int = Field(default=3, ge=0)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Singleton accessor."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
