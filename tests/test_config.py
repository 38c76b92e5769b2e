import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings()
    assert settings.max_failed_attempts == 5
    assert settings.session_ttl_hours == 24
    assert settings.remember_me_ttl_days == 30
    assert settings.mfa_challenge_ttl_minutes == 5
    assert settings.trusted_device_ttl_days == 30


def test_from_env_reads_env_names(monkeypatch):
    monkeypatch.setenv("MAX_FAILED_ATTEMPTS", "7")
    monkeypatch.setenv("MFA_BACKUP_CODE_COUNT", "12")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("PROGRESSIVE_DELAY_ENABLED", "false")

    settings = Settings.from_env()

    assert settings.max_failed_attempts == 7
    assert settings.backup_code_count == 12
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.progressive_delay_enabled is False


def test_blank_secret_is_none():
    assert Settings(jwt_secret="   ").jwt_secret is None
    assert Settings(mfa_encryption_key=" key ").mfa_encryption_key == "key"


@pytest.mark.parametrize("field", ["max_failed_attempts", "session_ttl_hours", "backup_code_count"])
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("SESSION_TTL_HOURS", "12")
    reset_settings_cache()
    assert get_settings().session_ttl_hours == 12
    reset_settings_cache()
