import pytest
from pydantic import ValidationError

from identity_engine.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_declared_variable_names(monkeypatch):
    monkeypatch.setenv("SESSION_TTL_HOURS", "12")
    monkeypatch.setenv("ALLOW_SIGNUP", "false")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com,")

    settings = Settings.from_env()

    assert settings.session_ttl_hours == 12
    assert settings.allow_signup is False
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
    assert settings.oauth_google_client_id == "test-client-id"


def test_rate_limit_overrides_are_parsed(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_OVERRIDES", "login=3/5/10, password_reset=2/60/120")

    settings = Settings.from_env()

    assert settings.rate_limit_overrides == {
        "login": (3, 5, 10),
        "password_reset": (2, 60, 120),
    }


@pytest.mark.parametrize("raw", ["login=3/5", "login=0/5/10", "=1/1/1", "login=a/b/c"])
def test_invalid_rate_limit_overrides_are_rejected(raw):
    with pytest.raises(ValidationError):
        Settings(rate_limit_overrides=raw, test_mode=True)


def test_trusted_proxies_parse_csv_of_addresses_and_networks(monkeypatch):
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8, 192.0.2.10 ,")

    settings = Settings.from_env()

    assert settings.trusted_proxies == ["10.0.0.0/8", "192.0.2.10"]
    assert Settings(test_mode=True).trusted_proxies == []


@pytest.mark.parametrize("raw", ["proxy.internal", "10.0.0.0/33"])
def test_invalid_trusted_proxy_is_rejected(raw):
    with pytest.raises(ValidationError):
        Settings(trusted_proxies=raw, test_mode=True)


def test_jwt_secret_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)


def test_test_mode_generates_ephemeral_secret():
    first = Settings(test_mode=True)
    second = Settings(test_mode=True)

    assert len(first.jwt_secret) >= 64
    assert first.jwt_secret != second.jwt_secret


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    assert get_settings() is cached

    monkeypatch.setenv("SESSION_TTL_HOURS", "6")
    reset_settings_cache()

    assert get_settings().session_ttl_hours == 6
    reset_settings_cache()
