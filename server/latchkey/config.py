"""Application configuration."""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env files.

    The identity fields (secret, site, relying party, database) have no
    defaults: a missing value fails at startup instead of running with a
    guessed configuration.
    """

    model_config = SettingsConfigDict(
        env_file=("../.env", ".env"), env_file_encoding="utf-8", extra="ignore"
    )

    # Required
    jwt_secret: str = Field(min_length=32)
    site_url: str
    site_name: str = Field(min_length=1)
    rp_id: str = Field(min_length=1)
    database_url: str = Field(min_length=1)

    # Expected WebAuthn origin, defaults to site_url
    origin: str = ""

    database_echo: bool = False
    auto_migrate: bool = True  # Run alembic upgrade on startup
    jwt_algorithm: str = "HS256"

    # Notifications
    email_backend: Literal["console", "ses"] = "console"
    ses_sender_email: str = "noreply@localhost"
    ses_region: str = "us-east-1"
    ses_configuration_set: str = ""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    dev_mode: bool = False  # Also disables the Secure cookie flag
    log_json: bool = False
    log_dir: str = ""

    # Tracing (OpenTelemetry)
    otel_enabled: bool = False
    otel_service_name: str = "latchkey"
    otel_exporter_endpoint: str = "http://otel-collector:4318"

    @field_validator("site_url")
    @classmethod
    def site_url_is_http(cls, v: str) -> str:
        """SITE_URL must be an absolute http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("SITE_URL must be a valid http(s) URL")
        return v.rstrip("/")

    @model_validator(mode="after")
    def default_origin(self) -> "Settings":
        if not self.origin:
            self.origin = self.site_url
        return self

    @property
    def cookie_secure(self) -> bool:
        return not self.dev_mode


settings = Settings()  # type: ignore[call-arg]
