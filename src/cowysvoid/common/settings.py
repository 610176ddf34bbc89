"""Application configuration models shared by services."""

from __future__ import annotations

from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class EdgeProxySettings(BaseSettings):
    """Runtime settings for the edge caching proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    archidekt_api_base: str = env_field("https://archidekt.com/api", "COWYSVOID_ARCHIDEKT_API_BASE")
    image_allowed_hosts: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["cards.scryfall.io", "svgs.scryfall.io"],
        validation_alias="COWYSVOID_IMAGE_ALLOWED_HOSTS",
    )
    image_user_agent: str = env_field("cowysvoid-pages-proxy", "COWYSVOID_IMAGE_USER_AGENT")
    edge_ttl_seconds: int = env_field(600, "COWYSVOID_EDGE_TTL")
    client_max_age_seconds: int = env_field(120, "COWYSVOID_CLIENT_MAX_AGE")
    image_max_age_seconds: int = env_field(31536000, "COWYSVOID_IMAGE_MAX_AGE")
    upstream_timeout_seconds: float = env_field(10.0, "COWYSVOID_UPSTREAM_TIMEOUT")
    redis_url: Optional[str] = env_field(None, "COWYSVOID_REDIS_URL")
    memory_cache_max_entries: int = env_field(10_000, "COWYSVOID_MEMORY_CACHE_MAX_ENTRIES")
    store_drain_seconds: float = env_field(5.0, "COWYSVOID_STORE_DRAIN_SECONDS")
    metrics_token: Optional[SecretStr] = env_field(None, "COWYSVOID_METRICS_TOKEN")
    host: str = env_field("0.0.0.0", "COWYSVOID_HOST")
    port: int = env_field(8787, "COWYSVOID_PORT")
    log_level: str = env_field("INFO", "COWYSVOID_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "COWYSVOID_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "COWYSVOID_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "COWYSVOID_OTEL_SAMPLER_RATIO")

    @field_validator("image_allowed_hosts", mode="before")
    @classmethod
    def _split_allowed_hosts(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set, frozenset)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return value

    @field_validator("archidekt_api_base", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("memory_cache_max_entries", mode="after")
    @classmethod
    def _positive_capacity(cls, value: int) -> int:
        if value < 1:
            raise ValueError("memory cache must hold at least one entry")
        return value

    @field_validator("edge_ttl_seconds", "client_max_age_seconds", "image_max_age_seconds", mode="after")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("cache lifetimes must be non-negative")
        return value
