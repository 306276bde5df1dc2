from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .constants import (
    DEFAULT_AUTH_TIMEOUT_SECONDS,
    DEFAULT_CALLBACK_HOST,
    DEFAULT_CALLBACK_PORT,
    DEFAULT_CONFIG_DIR,
    LASTFM_API_URL,
    LASTFM_AUTH_URL,
    LOGGER,
    MCP_TRANSPORTS,
    SESSION_BACKENDS,
)


@dataclass(frozen=True)
class Settings:
    api_key: str
    secret_key: str
    api_url: str = LASTFM_API_URL
    auth_url: str = LASTFM_AUTH_URL
    callback_host: str = DEFAULT_CALLBACK_HOST
    callback_port: int = DEFAULT_CALLBACK_PORT
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT_SECONDS
    session_backend: str = "auto"
    config_dir: Path = DEFAULT_CONFIG_DIR
    api_timeout: float = 30.0
    api_max_retries: int = 2
    debug: bool = True
    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int = 8000


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")
    if value <= 0:
        raise RuntimeError(f"{key} must be greater than zero.")
    return value


def _get_env_choice(key: str, default: str, choices: set[str]) -> str:
    value = os.getenv(key, "").strip().lower() or default
    if value not in choices:
        raise RuntimeError(f"{key} must be one of: {', '.join(sorted(choices))}.")
    return value


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def validate_env() -> None:
    required = ("LASTFM_API_KEY", "LASTFM_SECRET_KEY")
    missing = [key for key in required if not os.getenv(key, "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    callback_port = _get_env_int("LASTFM_CALLBACK_PORT", DEFAULT_CALLBACK_PORT)
    if not 1024 <= callback_port <= 65535:
        raise RuntimeError("LASTFM_CALLBACK_PORT must be between 1024 and 65535.")


def load_settings() -> Settings:
    validate_env()
    config_dir = os.getenv("LASTFM_CONFIG_DIR", "").strip()
    return Settings(
        api_key=os.getenv("LASTFM_API_KEY", "").strip(),
        secret_key=os.getenv("LASTFM_SECRET_KEY", "").strip(),
        api_url=os.getenv("LASTFM_API_URL", LASTFM_API_URL).strip(),
        auth_url=os.getenv("LASTFM_AUTH_URL", LASTFM_AUTH_URL).strip(),
        callback_host=os.getenv("LASTFM_CALLBACK_HOST", DEFAULT_CALLBACK_HOST).strip(),
        callback_port=_get_env_int("LASTFM_CALLBACK_PORT", DEFAULT_CALLBACK_PORT),
        auth_timeout=_get_env_float("LASTFM_AUTH_TIMEOUT", DEFAULT_AUTH_TIMEOUT_SECONDS),
        session_backend=_get_env_choice("LASTFM_SESSION_BACKEND", "auto", SESSION_BACKENDS),
        config_dir=Path(config_dir).expanduser() if config_dir else DEFAULT_CONFIG_DIR,
        api_timeout=_get_env_float("LASTFM_API_TIMEOUT", 30.0),
        api_max_retries=_get_env_int("LASTFM_API_MAX_RETRIES", 2),
        debug=is_truthy(os.getenv("LASTFM_DEBUG", "1")),
        transport=_get_env_choice("MCP_TRANSPORT", "stdio", MCP_TRANSPORTS),
        host=os.getenv("MCP_HOST", "127.0.0.1"),
        port=_get_env_int("MCP_PORT", 8000),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("LASTFM_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled
