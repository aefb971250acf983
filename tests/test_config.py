import pytest
from pydantic import ValidationError

from sessionauth.config import Settings, get_settings, reset_settings_cache

A = "a" * 40
R = "r" * 40


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.setenv("REDIS_URL", "  ")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.access_token_ttl_seconds == 300
    assert settings.cors_allow_origins == ["http://a.test", "http://b.test"]
    assert settings.redis_url is None


def test_defaults():
    settings = Settings(access_token_secret=A, refresh_token_secret=R)
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.login_rate_limit_per_minute == 10


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret="short", refresh_token_secret=R)


def test_identical_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret=A, refresh_token_secret=A)


def test_missing_secrets_are_generated_and_distinct():
    settings = Settings(access_token_secret="", refresh_token_secret="")
    assert len(settings.access_token_secret) >= 32
    assert settings.access_token_secret != settings.refresh_token_secret


def test_refresh_must_outlive_access():
    with pytest.raises(ValidationError):
        Settings(
            access_token_secret=A,
            refresh_token_secret=R,
            access_token_ttl_minutes=60,
            refresh_token_ttl_minutes=30,
        )


def test_non_positive_timeout_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret=A, refresh_token_secret=R, store_timeout_seconds=0)


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("JWT_ISSUER", "other-issuer")
    reset_settings_cache()
    assert get_settings().jwt_issuer == "other-issuer"
    reset_settings_cache()
