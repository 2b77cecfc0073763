"""Tests for settings parsing and runtime wiring."""

import pytest
from pydantic import ValidationError

from tenantcrm.config import MIN_JWT_SECRET_LENGTH, AppEnv, Settings
from tenantcrm.service.runtime import _mask_url_password, check_rate_limit, get_runtime

SECRET = "s" * MIN_JWT_SECRET_LENGTH


class TestSettings:
    def test_production_requires_a_strong_secret(self):
        with pytest.raises(ValidationError):
            Settings(app_env="production")
        with pytest.raises(ValidationError):
            Settings(app_env="production", jwt_secret="short")
        assert Settings(app_env="production", jwt_secret=SECRET).jwt_secret == SECRET

    def test_development_generates_an_ephemeral_secret(self):
        first = Settings(app_env="development")
        second = Settings(app_env="development")
        assert len(first.jwt_secret) >= MIN_JWT_SECRET_LENGTH
        assert first.jwt_secret != second.jwt_secret

    def test_app_env_is_case_insensitive(self):
        assert Settings(app_env=" Production ", jwt_secret=SECRET).app_env is AppEnv.PRODUCTION
        with pytest.raises(ValidationError):
            Settings(app_env="staging")

    def test_origins_are_split(self):
        settings = Settings(cors_allow_origins="https://a.example, https://b.example,,")
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_blank_urls_become_none(self):
        settings = Settings(redis_url="  ", cookie_domain="", base_domain="")
        assert settings.redis_url is None
        assert settings.cookie_domain is None
        assert settings.base_domain is None

    def test_reset_delay_bounds_are_checked(self):
        with pytest.raises(ValidationError):
            Settings(password_reset_min_delay_ms=500, password_reset_max_delay_ms=100)

    def test_bearer_tokens_are_cookie_only_in_production(self):
        assert Settings(app_env="test").bearer_tokens_enabled is True
        assert Settings(app_env="production", jwt_secret=SECRET).bearer_tokens_enabled is False
        assert (
            Settings(app_env="production", jwt_secret=SECRET, allow_bearer_tokens=True).bearer_tokens_enabled
            is True
        )

    def test_from_env_reads_declared_names(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://crm.example")
        settings = Settings.from_env()
        assert settings.lockout_threshold == 7
        assert settings.cors_allow_origins == ["https://crm.example"]

    def test_defaults_match_session_lifetimes(self):
        settings = Settings()
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.csrf_token_ttl_minutes == 24 * 60
        assert settings.lockout_threshold == 5
        assert settings.lockout_duration_minutes == 15


class TestRuntime:
    def test_test_runtime_uses_memory_store_without_redis(self, runtime):
        assert runtime.settings.test_mode is True
        assert runtime.cache is None
        assert runtime.store.ping() is True

    def test_runtime_is_a_singleton(self, runtime):
        assert get_runtime() is runtime

    def test_password_is_masked_in_urls(self):
        masked = _mask_url_password("postgresql://crm:hunter2@db:5432/tenantcrm")
        assert "hunter2" not in masked
        assert masked == "postgresql://crm:***@db:5432/tenantcrm"
        assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"


async def test_local_rate_limit_window(runtime):
    results = [await check_rate_limit(runtime, "k", 2, 60, return_remaining=True) for _ in range(3)]
    assert [allowed for allowed, _, _ in results] == [True, True, False]
    assert results[0][1] == 1
    assert 1 <= results[2][2] <= 61
    assert await check_rate_limit(runtime, "other", 2, 60) is True


async def test_zero_limit_disables_the_check(runtime):
    for _ in range(5):
        assert await check_rate_limit(runtime, "k", 0, 60) is True
