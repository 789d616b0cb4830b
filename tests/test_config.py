import pytest
from pydantic import ValidationError

from healthvia.config import Settings, get_settings, reset_settings_cache
from healthvia.logging import _redact_pii


def test_from_env_reads_env_names(monkeypatch):
    monkeypatch.setenv("MAX_FAILED_LOGIN_ATTEMPTS", "7")
    monkeypatch.setenv("LOCKOUT_MINUTES", "45")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    settings = Settings.from_env()
    assert settings.max_failed_login_attempts == 7
    assert settings.lockout_minutes == 45
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_blank_redis_url_disables_denylist(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "   ")
    assert Settings.from_env().redis_url is None


def test_jwt_secret_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)


def test_jwt_secret_generated_in_test_mode():
    first = Settings(test_mode=True)
    second = Settings(test_mode=True)
    assert len(first.jwt_secret) >= 64
    assert first.jwt_secret != second.jwt_secret


@pytest.mark.parametrize("field", ["max_failed_login_attempts", "lockout_minutes"])
def test_lockout_settings_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_settings_cache_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("LOCKOUT_MINUTES", "12")
    reset_settings_cache()
    assert get_settings().lockout_minutes == 12


def test_log_redaction_masks_identifiers():
    event = _redact_pii(
        None,
        "info",
        {"event": "login_failed", "email": "someone@example.com", "phone": "123", "role": "patient"},
    )
    assert event["email"] != "someone@example.com"
    assert "someone" not in event["email"]
    assert event["phone"] == "***"
    assert event["role"] == "patient"
