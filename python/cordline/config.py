"""Settings for the API, the worker and the migration environment.

Everything comes from environment variables (or a local .env file):

    CORDLINE_ENV                  local | test | staging | prod
    DATABASE_URL                  required; postgresql+psycopg://... or sqlite://
    CORDLINE_INTERNAL_SECRET      required in staging/prod (BFF header check)

    SUPABASE_JWKS_URL             required; JWKS endpoint for bearer tokens
    SUPABASE_ISSUER               required; trailing slash ignored
    SUPABASE_AUDIENCES            required; comma-separated

    REDIS_URL                     redis fanout and the Celery defaults
    CELERY_BROKER_URL             falls back to REDIS_URL
    CELERY_RESULT_BACKEND         falls back to REDIS_URL

    FANOUT_BACKEND                memory | redis | none
    SSE_KEEPALIVE_S               keepalive comment interval on /events
    DEFAULT_SELF_DESTRUCT_TIMER_S cord timer when a caller gives none (60)
    MAX_SELF_DESTRUCT_TIMER_S     upper bound for any cord timer (7 days)
    REAPER_INTERVAL_S             beat interval of the expired-message reaper
    MODERATION_BLOCKLIST          comma-separated words; empty disables the gate
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class FanoutBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
    NONE = "none"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    cordline_env: Environment = Field(default=Environment.LOCAL, alias="CORDLINE_ENV")
    database_url: str = Field(alias="DATABASE_URL")
    cordline_internal_secret: str | None = Field(default=None, alias="CORDLINE_INTERNAL_SECRET")

    supabase_jwks_url: str | None = Field(default=None, alias="SUPABASE_JWKS_URL")
    supabase_issuer: str | None = Field(default=None, alias="SUPABASE_ISSUER")
    supabase_audiences: str | None = Field(default=None, alias="SUPABASE_AUDIENCES")

    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    fanout_backend: FanoutBackend = Field(default=FanoutBackend.MEMORY, alias="FANOUT_BACKEND")
    sse_keepalive_s: int = Field(default=15, alias="SSE_KEEPALIVE_S")

    default_self_destruct_timer_s: int = Field(default=60, alias="DEFAULT_SELF_DESTRUCT_TIMER_S")
    max_self_destruct_timer_s: int = Field(default=7 * 24 * 3600, alias="MAX_SELF_DESTRUCT_TIMER_S")
    reaper_interval_s: int = Field(default=30, alias="REAPER_INTERVAL_S")

    moderation_blocklist: str = Field(default="badword1,badword2,spam", alias="MODERATION_BLOCKLIST")

    @model_validator(mode="after")
    def check_auth_settings(self) -> "Settings":
        missing = [
            name
            for name, value in (
                ("SUPABASE_JWKS_URL", self.supabase_jwks_url),
                ("SUPABASE_ISSUER", self.supabase_issuer),
                ("SUPABASE_AUDIENCES", self.supabase_audiences),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing required Supabase auth settings: {', '.join(missing)}")
        if self.requires_internal_header and not self.cordline_internal_secret:
            raise ValueError(
                f"CORDLINE_INTERNAL_SECRET is required for CORDLINE_ENV={self.cordline_env.value}"
            )
        return self

    @model_validator(mode="after")
    def check_messaging_settings(self) -> "Settings":
        if self.fanout_backend == FanoutBackend.REDIS and not self.redis_url:
            raise ValueError("REDIS_URL is required when FANOUT_BACKEND=redis")
        if not 0 < self.default_self_destruct_timer_s <= self.max_self_destruct_timer_s:
            raise ValueError(
                "DEFAULT_SELF_DESTRUCT_TIMER_S must be positive and at most "
                "MAX_SELF_DESTRUCT_TIMER_S"
            )
        return self

    @property
    def requires_internal_header(self) -> bool:
        return self.cordline_env in (Environment.STAGING, Environment.PROD)

    @property
    def audience_list(self) -> list[str]:
        return _split_csv(self.supabase_audiences)

    @property
    def normalized_issuer(self) -> str | None:
        return self.supabase_issuer.rstrip("/") if self.supabase_issuer else None

    @property
    def moderation_blocklist_words(self) -> list[str]:
        return [word.lower() for word in _split_csv(self.moderation_blocklist)]

    @property
    def effective_celery_broker_url(self) -> str | None:
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process; raises ValidationError when misconfigured."""
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
