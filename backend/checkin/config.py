from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
import os
import logging

from dotenv import load_dotenv

from .errors import ConfigurationError


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or len(value.strip()) == 0:
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_str(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    voice_api_key: Optional[str] = None
    voice_api_url: str = "https://api.bland.ai/v1/calls"
    voice_voice: Optional[str] = None
    voice_model: Optional[str] = None
    voice_language: str = "en"
    voice_temperature: float = 0.7
    voice_max_duration_seconds: int = 300
    voice_timeout_seconds: float = 10.0

    app_url: str = "http://localhost:8000"
    webhook_secret: Optional[str] = None
    webhook_signature_header: str = "x-voice-signature"
    webhook_require_signature: bool = False

    poll_interval_seconds: float = 60.0
    trigger_window_minutes: float = 1.0
    duplicate_lookback_minutes: float = 10.0
    reconcile_fallback_window_minutes: float = 60.0

    simulator_line_interval_seconds: float = 1.0
    simulator_duration_seconds: int = 180

    log_level: str = "INFO"

    @property
    def use_provider(self) -> bool:
        return bool(self.voice_api_key)

    @property
    def callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/voice/webhook"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            supabase_url=_env_str("SUPABASE_URL"),
            supabase_key=_env_str("SUPABASE_SERVICE_ROLE_KEY"),
            voice_api_key=_env_str("VOICE_API_KEY"),
            voice_api_url=_env_str("VOICE_API_URL", cls.voice_api_url),
            voice_voice=_env_str("VOICE_VOICE"),
            voice_model=_env_str("VOICE_MODEL"),
            voice_language=_env_str("VOICE_LANGUAGE", cls.voice_language),
            voice_temperature=_env_float("VOICE_TEMPERATURE", cls.voice_temperature),
            voice_max_duration_seconds=int(_env_float("VOICE_MAX_DURATION_SECONDS", cls.voice_max_duration_seconds)),
            voice_timeout_seconds=_env_float("VOICE_TIMEOUT_SECONDS", cls.voice_timeout_seconds),
            app_url=_env_str("APP_URL", cls.app_url),
            webhook_secret=_env_str("WEBHOOK_SECRET"),
            webhook_signature_header=_env_str("WEBHOOK_SIGNATURE_HEADER", cls.webhook_signature_header),
            webhook_require_signature=_env_bool("WEBHOOK_REQUIRE_SIGNATURE", cls.webhook_require_signature),
            poll_interval_seconds=_env_float("SCHEDULER_POLL_INTERVAL_SECONDS", cls.poll_interval_seconds),
            trigger_window_minutes=_env_float("SCHEDULER_TRIGGER_WINDOW_MINUTES", cls.trigger_window_minutes),
            duplicate_lookback_minutes=_env_float("SCHEDULER_DUPLICATE_LOOKBACK_MINUTES", cls.duplicate_lookback_minutes),
            reconcile_fallback_window_minutes=_env_float("RECONCILE_FALLBACK_WINDOW_MINUTES", cls.reconcile_fallback_window_minutes),
            simulator_line_interval_seconds=_env_float("SIMULATOR_LINE_INTERVAL_SECONDS", cls.simulator_line_interval_seconds),
            simulator_duration_seconds=int(_env_float("SIMULATOR_DURATION_SECONDS", cls.simulator_duration_seconds)),
            log_level=(_env_str("LOG_LEVEL", cls.log_level) or "INFO").upper(),
        )
        # Lookback must outlast both the poll cadence and the trigger window,
        # otherwise a single fire could be matched twice.
        lookback_seconds = settings.duplicate_lookback_minutes * 60
        if lookback_seconds <= settings.poll_interval_seconds or settings.duplicate_lookback_minutes <= settings.trigger_window_minutes:
            raise ConfigurationError(
                "SCHEDULER_DUPLICATE_LOOKBACK_MINUTES must exceed both the poll interval and the trigger window"
            )
        return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
        ]
    )
