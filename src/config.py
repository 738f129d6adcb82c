"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All configuration is loaded from ``CONNECT_*`` environment variables (or .env file)."""

    # --- App ---
    app_name: str = "cgm-connect"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    driver_config_path: str | None = None  # defaults to the bundled driver_config.yaml

    # --- Glooko ---
    glooko_email: str = Field(min_length=1)
    glooko_password: str = Field(min_length=1)  # never logged
    glooko_server: str = "default"  # "default" → api.glooko.com, or e.g. eu.api.glooko.com
    glooko_timezone_offset: float = 0.0  # hours

    # --- Nightscout (optional output) ---
    nightscout_url: str | None = None
    nightscout_api_secret: str | None = None
    upload_queue_size: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="CONNECT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("glooko_email")
    @classmethod
    def _email_has_at(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError(
                "CONNECT_GLOOKO_EMAIL must be an email belonging to an active Glooko user"
            )
        return value

    @property
    def glooko_timezone_offset_ms(self) -> int:
        """Offset added to Glooko device timestamps to get UTC.

        A device clock at UTC+2 (offset 2) reports times two hours ahead,
        so -2 h is added.
        """
        return int(self.glooko_timezone_offset * -60 * 60 * 1000)

    @property
    def nightscout_enabled(self) -> bool:
        return bool(self.nightscout_url and self.nightscout_api_secret)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
