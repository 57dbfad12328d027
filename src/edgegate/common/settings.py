"""Application configuration for the edge gateway."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class GatewaySettings(BaseSettings):
    """Runtime settings for the gateway service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    client_secrets: dict[str, SecretStr] = Field(default_factory=dict, validation_alias="EDGEGATE_CLIENT_SECRETS")
    idp_validate_url: str = env_field("https://id.twitch.tv/oauth2/validate", "EDGEGATE_IDP_VALIDATE_URL")
    idp_token_url: str = env_field("https://id.twitch.tv/oauth2/token", "EDGEGATE_IDP_TOKEN_URL")
    idp_timeout_seconds: float = env_field(10.0, "EDGEGATE_IDP_TIMEOUT")
    storage_path: Optional[Path] = env_field(None, "EDGEGATE_STORAGE_PATH")
    s3_bucket: Optional[str] = env_field(None, "EDGEGATE_S3_BUCKET")
    s3_endpoint_url: Optional[str] = env_field(None, "EDGEGATE_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "EDGEGATE_S3_REGION")
    list_page_size: int = env_field(1000, "EDGEGATE_LIST_PAGE_SIZE")
    static_path: Optional[Path] = env_field(None, "EDGEGATE_STATIC_PATH")
    log_level: str = env_field("INFO", "EDGEGATE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "EDGEGATE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "EDGEGATE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "EDGEGATE_OTEL_SAMPLER_RATIO")

    @field_validator("client_secrets", mode="before")
    @classmethod
    def _drop_blank_secrets(cls, value):
        if isinstance(value, dict):
            return {str(key): secret for key, secret in value.items() if key and secret}
        return value

    @field_validator("list_page_size")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        return max(1, min(value, 1000))

    @property
    def otel_headers(self) -> dict[str, str]:
        """``key=value`` pairs from ``EDGEGATE_OTEL_EXPORTER_HEADERS``, comma separated."""
        pairs = (item.partition("=") for item in (self.otel_exporter_headers or "").split(","))
        return {key.strip(): value.strip() for key, _, value in pairs if key.strip() and value.strip()}

    @property
    def storage_configured(self) -> bool:
        return bool(self.s3_bucket or self.storage_path)
