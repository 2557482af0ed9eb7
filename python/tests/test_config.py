"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from cordline.config import Environment, FanoutBackend, Settings


def _make_settings(**overrides) -> Settings:
    """Build a Settings instance with test defaults + overrides."""
    defaults = {
        "DATABASE_URL": "postgresql+psycopg://localhost/test",
        "CORDLINE_ENV": "test",
        "SUPABASE_JWKS_URL": "http://localhost:54321/auth/v1/.well-known/jwks.json",
        "SUPABASE_ISSUER": "http://localhost:54321/auth/v1/",
        "SUPABASE_AUDIENCES": "authenticated, anon",
    }
    defaults.update(overrides)
    return Settings(**defaults)


class TestSettingsDefaults:
    def test_messaging_defaults(self):
        s = _make_settings()
        assert s.fanout_backend == FanoutBackend.MEMORY
        assert s.default_self_destruct_timer_s == 60
        assert s.max_self_destruct_timer_s == 7 * 24 * 3600
        assert s.reaper_interval_s == 30
        assert s.sse_keepalive_s == 15

    def test_derived_values(self):
        s = _make_settings(MODERATION_BLOCKLIST=" Spam, ,Scam ")
        assert s.audience_list == ["authenticated", "anon"]
        assert s.normalized_issuer == "http://localhost:54321/auth/v1"
        assert s.moderation_blocklist_words == ["spam", "scam"]
        assert s.requires_internal_header is False

    def test_celery_falls_back_to_redis_url(self):
        s = _make_settings(REDIS_URL="redis://localhost:6379/0")
        assert s.effective_celery_broker_url == "redis://localhost:6379/0"
        assert s.effective_celery_result_backend == "redis://localhost:6379/0"


class TestSettingsValidation:
    def test_missing_auth_settings_rejected(self):
        with pytest.raises(ValidationError, match="SUPABASE_JWKS_URL"):
            _make_settings(SUPABASE_JWKS_URL="")

    def test_prod_requires_internal_secret(self):
        with pytest.raises(ValidationError, match="CORDLINE_INTERNAL_SECRET"):
            _make_settings(CORDLINE_ENV="prod", CORDLINE_INTERNAL_SECRET="")

    def test_prod_with_secret_requires_header(self):
        s = _make_settings(CORDLINE_ENV="prod", CORDLINE_INTERNAL_SECRET="s3cret")
        assert s.cordline_env == Environment.PROD
        assert s.requires_internal_header is True

    def test_redis_fanout_requires_redis_url(self):
        with pytest.raises(ValidationError, match="REDIS_URL"):
            _make_settings(FANOUT_BACKEND="redis", REDIS_URL="")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"DEFAULT_SELF_DESTRUCT_TIMER_S": 0},
            {"DEFAULT_SELF_DESTRUCT_TIMER_S": 120, "MAX_SELF_DESTRUCT_TIMER_S": 60},
        ],
    )
    def test_default_timer_must_fit_bounds(self, overrides):
        with pytest.raises(ValidationError, match="DEFAULT_SELF_DESTRUCT_TIMER_S"):
            _make_settings(**overrides)
