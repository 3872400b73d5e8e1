# config.py
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash-lite"
    api_base: str = "https://generativelanguage.googleapis.com"
    request_timeout: float = 60.0
    max_tokens_primary: int = 16000
    max_tokens_fallback: int = 32000
    phase1_max_tokens: int = 128
    empty_retry: bool = True
    jpeg_quality: float = 0.6
    my_display_name: str = ""
    telegram_token: str = ""
    share_base_url: str = "https://bill.example/loot"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY", "").strip(),
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            api_base=os.getenv("GEMINI_API_BASE", cls.api_base).rstrip("/"),
            request_timeout=_env_float("REQUEST_TIMEOUT", cls.request_timeout),
            max_tokens_primary=_env_int("MAX_TOKENS_PRIMARY", cls.max_tokens_primary),
            max_tokens_fallback=_env_int("MAX_TOKENS_FALLBACK", cls.max_tokens_fallback),
            phase1_max_tokens=_env_int("PHASE1_MAX_TOKENS", cls.phase1_max_tokens),
            empty_retry=_env_bool("EMPTY_RETRY", cls.empty_retry),
            jpeg_quality=_env_float("JPEG_QUALITY", cls.jpeg_quality),
            my_display_name=os.getenv("MY_DISPLAY_NAME", "").strip(),
            telegram_token=os.getenv("TELEGRAM_TOKEN", "").strip(),
            share_base_url=os.getenv("SHARE_BASE_URL", cls.share_base_url),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
