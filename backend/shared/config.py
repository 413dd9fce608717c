"""
Central configuration for the ATP live events services.
Uses pydantic-settings for env-based config with validation.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Annotated, Optional

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

LIVE_MATCHES_ENDPOINT = "/api/live-matches"
LIVE_DRAW_ENDPOINT = "/api/draws/live"


class Environment(str, Enum):
    DEV = "dev"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class CacheKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
    FILESYSTEM = "filesystem"
    NONE = "none"


class Settings(BaseSettings):
    """Root settings shared across all services."""

    model_config = SettingsConfigDict(
        env_prefix="ATP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────
    environment: Environment = Environment.DEV
    debug: bool = Field(default=False, description="Force DEBUG logging and the console renderer")
    log_level: str = "INFO"
    instance_id: str = Field(default="", description="Unique pod/container ID used in log context")

    # ── Upstream feed ────────────────────────────────────────
    api_base_url: str = "https://api.protennislive.com/feeds"
    bearer_token: str = ""
    upstream_timeout_s: float = 10.0
    upstream_max_retries: int = 2

    # ── Cache ────────────────────────────────────────────────
    cache_provider: CacheKind = CacheKind.MEMORY
    cache_default_ttl_s: int = 30
    cache_flush_on_startup: bool = True
    cache_dir: str = Field(default="./cache", description="Root directory for the filesystem cache provider")
    cache_endpoint_ttls: dict[str, int] = Field(
        default={
            # Live data
            "/api/live-matches": 10,
            "/api/match-stats": 10,
            "/api/h2h/match": 10,
            "/api/h2h": 10,
            "/api/draws/live": 60,
            # Results
            "/api/results": 180,
            "/api/draws": 180,
            # Static data
            "/api/player-list": 600,
            "/api/schedules": 600,
            "/api/team-cup-rankings": 600,
            "/api/tournaments": 3600,
        },
        description="Per-endpoint TTL in seconds; also the endpoint's base poll interval.",
    )

    # ── Redis ────────────────────────────────────────────────
    redis_url: RedisDsn = Field(default="redis://redis:6379/0")
    redis_max_connections: int = 20

    # ── Polling backoff ──────────────────────────────────────
    polling_backoff_enabled: bool = True
    polling_backoff_multiplier: float = 1.5
    polling_backoff_max_multiplier: float = 30.0
    polling_backoff_reset_on_success: bool = True

    # ── Event detection ──────────────────────────────────────
    events_enabled: bool = True
    events_endpoints: Annotated[list[str], NoDecode] = Field(
        default=[LIVE_MATCHES_ENDPOINT, LIVE_DRAW_ENDPOINT],
        description="Endpoints permanently polled for event detection.",
    )
    events_console_output: bool = True

    # ── Webhook delivery ─────────────────────────────────────
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_timeout_s: float = 5.0
    webhook_retries: int = 3
    webhook_batch_size: int = 10
    webhook_batch_interval_s: float = 2.0
    webhook_retry_base_delay_s: float = 1.0
    webhook_retry_max_delay_s: float = 10.0

    # ── Response capture / replay ────────────────────────────
    replay_log_dir: str = "./logs/api-responses"
    response_log_enabled: bool = False
    response_log_min_interval_s: float = 60.0
    response_log_skip_unchanged: bool = True

    # ── API ──────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # ── Observability ────────────────────────────────────────
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @field_validator("events_endpoints", mode="before")
    @classmethod
    def split_endpoint_list(cls, value: object) -> object:
        """Accept the comma-separated form used in .env files."""
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @property
    def redis_url_str(self) -> str:
        return str(self.redis_url)

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.webhook_url and self.webhook_secret)

    def endpoint_ttl(self, path: str, default: Optional[int] = None) -> int:
        """
        Resolve the cache TTL (and base poll interval) for an endpoint path.

        Exact match first, then the /api-prefixed form, then the longest
        configured prefix, then the default TTL.
        """
        fallback = default or self.cache_default_ttl_s
        table = self.cache_endpoint_ttls

        if path in table:
            return table[path]

        with_api = path if path.startswith("/api/") else f"/api{path}"
        if with_api in table:
            return table[with_api]

        prefixes = [p for p in table if path.startswith(p) or with_api.startswith(p)]
        if prefixes:
            return table[max(prefixes, key=len)]

        return fallback


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton access to validated settings."""
    return Settings()
