from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FEEDBACK_", env_file=".env", extra="ignore")

    app_name: str = "Faculty Feedback"
    database_url: str = "sqlite:///./feedback.db"
    session_secret: str = "change-me"
    session_max_age_seconds: int = Field(default=7 * 24 * 60 * 60, ge=60)

    admin_username: str = "admin"
    admin_password: str = "admin"
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    ingest_batch_size: int = Field(default=25, ge=1)
    ingest_batch_pause_seconds: float = Field(default=0.05, ge=0.0)
    final_round_window_days: int = Field(default=7, ge=0)

    log_level: str = "INFO"
