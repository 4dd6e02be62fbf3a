"""
Shared configuration management for the client sync layer.
"""

from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Settings for one client sync session."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_name: str = Field(default="client_sync")

    # Transport
    api_base_url: str = Field(default="http://localhost:3001/api")
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    auth_token: str = Field(default="")

    # Cache windows
    stale_time_seconds: float = Field(default=300.0, ge=0)
    gc_time_seconds: float = Field(default=600.0, ge=0)

    # Refetch triggers
    refetch_on_window_focus: bool = Field(default=False)
    refetch_on_reconnect: bool = Field(default=True)
    refetch_on_mount: bool = Field(default=True)

    # Retry
    read_max_retries: int = Field(default=3, ge=0)
    write_max_retries: int = Field(default=2, ge=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_jitter: bool = Field(default=True)

    # Localization
    default_locale: str = Field(default="en")
    supported_locales: List[str] = Field(default_factory=lambda: ["en", "pt", "es"])

    # Notifications
    toast_duration_ms: int = Field(default=5000, gt=0)

    @field_validator("supported_locales")
    @classmethod
    def _validate_locales(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("supported_locales must not be empty")
        return value

    @model_validator(mode="after")
    def _default_locale_supported(self) -> "SyncSettings":
        if self.default_locale not in self.supported_locales:
            raise ValueError(
                f"default_locale {self.default_locale!r} is not in supported_locales"
            )
        return self


def get_config(**overrides) -> SyncSettings:
    """Get configuration for a sync session."""
    return SyncSettings(**overrides)
