"""Application configuration using pydantic-settings."""

import json
from pathlib import Path

from pydantic import Field, SecretStr, TypeAdapter, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from immo_watch.logging import parse_level
from immo_watch.models import JobConfig

_JOBS_ADAPTER = TypeAdapter(list[JobConfig])


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="IMMO_WATCH_",
        extra="ignore",
    )

    # Storage
    database_path: str = Field(
        default="data/listings.db",
        description="SQLite database file, or ':memory:'",
    )
    data_dir: str = Field(
        default="data",
        description="Directory for downloaded media",
    )
    jobs_file: str = Field(
        default="jobs.json",
        description="JSON file declaring the jobs and their providers",
    )

    # Telegram configuration (optional; notifications are logged only when unset)
    telegram_bot_token: SecretStr = Field(
        default=SecretStr(""),
        description="Telegram bot token from @BotFather",
    )
    telegram_chat_id: int = Field(
        default=0,
        description="Telegram chat ID to send notifications to",
    )

    # Geocoding
    geocoder_base_url: str = Field(
        default="https://nominatim.openstreetmap.org",
        description="Nominatim-compatible search endpoint",
    )
    geocoder_user_agent: str = Field(
        default="immo-watch/0.1",
        description="User agent sent to the geocoder (required by Nominatim's usage policy)",
    )

    # HTTP
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # Scheduling
    pipeline_interval_minutes: int = Field(default=30, ge=1)

    # Rate limiting between per-listing calls, in seconds
    enrichment_delay_min: float = Field(default=0.5, ge=0)
    enrichment_delay_max: float = Field(default=1.5, ge=0)
    media_delay_min: float = Field(default=0.2, ge=0)
    media_delay_max: float = Field(default=0.5, ge=0)

    # Cross-platform duplicate cache
    similarity_cache_ttl_minutes: int = Field(
        default=24 * 60,
        ge=1,
        description="How long a notified listing suppresses look-alikes from other providers",
    )

    # Logging
    log_level: str = Field(default="info")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        parse_level(v)
        return v.lower()

    @model_validator(mode="after")
    def check_delay_ranges(self) -> "Settings":
        if self.enrichment_delay_min > self.enrichment_delay_max:
            raise ValueError("enrichment_delay_min must not exceed enrichment_delay_max")
        if self.media_delay_min > self.media_delay_max:
            raise ValueError("media_delay_min must not exceed media_delay_max")
        return self

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_bot_token.get_secret_value()) and self.telegram_chat_id != 0

    def load_jobs(self) -> list[JobConfig]:
        """Load and validate the jobs file.

        Returns:
            Enabled and disabled jobs, in file order.

        Raises:
            FileNotFoundError: If the jobs file does not exist.
            pydantic.ValidationError: If the file content is invalid.
        """
        return load_jobs(Path(self.jobs_file))


def load_jobs(path: Path) -> list[JobConfig]:
    """Parse a jobs file (a JSON list of job objects)."""
    data = json.loads(path.read_text(encoding="utf-8"))
    return _JOBS_ADAPTER.validate_python(data)
