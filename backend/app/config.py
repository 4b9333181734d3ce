"""
Environment configuration.

Loads backend/.env (or ./.env) with python-dotenv and exposes typed
settings. This is the only module that reads the environment; the engine
receives plain values.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from engine.dialogue import DialogueSettings
from engine.extract import DEFAULT_GOLD_PRICE_PER_GRAM
from engine.semantic import DEFAULT_MODEL

logger = logging.getLogger(__name__)

DEFAULT_ENABLED_TYPES = "transfer,ewallet,pulsa,token"


def load_environment() -> None:
    """Load .env from backend/ or the working directory, whichever exists first."""
    env_paths = [
        Path(__file__).parent.parent / ".env",  # backend/.env
        Path.cwd() / ".env",  # current working directory
    ]
    for env_path in env_paths:
        if env_path.exists():
            load_dotenv(env_path)
            break
    else:
        load_dotenv()


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def mask_key(key: Optional[str]) -> str:
    """Mask API key showing only last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


@dataclass
class Config:
    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_MODEL
    silence_timeout: float = 3.0
    no_response_timeout: float = 5.0
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM
    enabled_types: Optional[List[str]] = None
    rate_limit_per_minute: int = 10
    accessibility_mode: bool = False
    debug: bool = False
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Config":
        enabled_raw = os.getenv("ENABLED_TRANSACTION_TYPES", DEFAULT_ENABLED_TYPES)
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", DEFAULT_MODEL),
            silence_timeout=_get_float("SILENCE_TIMEOUT_SECONDS", 3.0),
            no_response_timeout=_get_float("NO_RESPONSE_TIMEOUT_SECONDS", 5.0),
            gold_price_per_gram=_get_int("GOLD_PRICE_PER_GRAM", DEFAULT_GOLD_PRICE_PER_GRAM),
            enabled_types=[t.strip() for t in enabled_raw.split(",") if t.strip()],
            rate_limit_per_minute=_get_int("RATE_LIMIT_PER_MINUTE", 10),
            accessibility_mode=_get_bool("ACCESSIBILITY_MODE"),
            debug=_get_bool("DEBUG"),
            port=_get_int("PORT", 8000),
        )

    def dialogue_settings(self) -> DialogueSettings:
        return DialogueSettings(
            silence_timeout=self.silence_timeout,
            no_response_timeout=self.no_response_timeout,
            gold_price_per_gram=self.gold_price_per_gram,
            accessibility_mode=self.accessibility_mode,
        )

    def log_summary(self) -> None:
        logger.info(f"OPENAI_API_KEY present: {bool(self.openai_api_key)} ({mask_key(self.openai_api_key)})")
        logger.info(f"OPENAI_MODEL: {self.openai_model}")
        logger.info(f"Enabled transaction types: {', '.join(self.enabled_types or [])}")
        logger.info(
            f"Timeouts: silence={self.silence_timeout}s no_response={self.no_response_timeout}s "
            f"accessibility={self.accessibility_mode}"
        )


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the process-wide Config."""
    global _config
    if _config is None:
        load_environment()
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached Config (tests)."""
    global _config
    _config = None
