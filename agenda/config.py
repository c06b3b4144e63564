"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    agenda_env: str = "development"
    agenda_log_level: str = "INFO"

    # ── API Server ───────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    agenda_allowed_origins: str = "http://localhost:5173"
    agenda_rate_limit_window_seconds: int = 900
    agenda_rate_limit_max_requests: int = 100

    # ── Database ─────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///data/agenda.db"

    # ── Credentials & encryption ─────────────────────────────────────
    agenda_api_key_salt: str = "change-me"
    agenda_custody_key: str = ""
    agenda_kdf_iterations: int = Field(default=200_000, ge=1_000)
    agenda_unattended_execution: bool = True

    # ── Scheduler ────────────────────────────────────────────────────
    agenda_poll_interval_seconds: float = Field(default=5.0, gt=0)
    agenda_max_concurrent_executions: int = Field(default=4, ge=1)
    agenda_execution_timeout_seconds: float = 300.0
    agenda_render_timeout_seconds: float = 120.0
    agenda_delivery_timeout_seconds: float = 30.0
    agenda_delivery_retries: int = Field(default=3, ge=1, le=10)
    agenda_store_retries: int = Field(default=5, ge=1, le=20)
    agenda_require_all_recipients: bool = False
    agenda_shutdown_grace_seconds: float = 30.0

    # ── Email (SMTP) ─────────────────────────────────────────────────
    smtp_server: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_use_ssl: bool = False
    smtp_from: str = ""

    # ── SMS (Twilio) ─────────────────────────────────────────────────
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"

    @field_validator("agenda_log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def data_dir(self) -> Path:
        """Return the data directory, creating it if needed."""
        path = Path("data")
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def allowed_origins(self) -> list[str]:
        """Parse the comma-separated CORS allow-list."""
        return [o.strip() for o in self.agenda_allowed_origins.split(",") if o.strip()]

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_server and self.smtp_username and self.smtp_password)

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
