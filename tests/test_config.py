import pytest

from checkin.config import Settings
from checkin.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("VOICE_API_KEY", "APP_URL", "WEBHOOK_REQUIRE_SIGNATURE", "LOG_LEVEL",
                 "SCHEDULER_POLL_INTERVAL_SECONDS", "SCHEDULER_DUPLICATE_LOOKBACK_MINUTES",
                 "SCHEDULER_TRIGGER_WINDOW_MINUTES", "VOICE_TEMPERATURE"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings.from_env()
    assert settings.poll_interval_seconds == 60
    assert settings.duplicate_lookback_minutes == 10
    assert settings.use_provider is False
    assert settings.callback_url == "http://localhost:8000/api/voice/webhook"


def test_overrides(monkeypatch):
    monkeypatch.setenv("VOICE_API_KEY", "sk-live")
    monkeypatch.setenv("APP_URL", "https://checkin.example.com/")
    monkeypatch.setenv("WEBHOOK_REQUIRE_SIGNATURE", "true")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.use_provider is True
    assert settings.callback_url == "https://checkin.example.com/api/voice/webhook"
    assert settings.webhook_require_signature is True
    assert settings.log_level == "DEBUG"


def test_lookback_must_outlast_poll_interval(monkeypatch):
    monkeypatch.setenv("SCHEDULER_POLL_INTERVAL_SECONDS", "600")
    with pytest.raises(ConfigurationError):
        Settings.from_env()


def test_non_numeric_value(monkeypatch):
    monkeypatch.setenv("VOICE_TEMPERATURE", "warm")
    with pytest.raises(ConfigurationError):
        Settings.from_env()
