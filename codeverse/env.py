from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from .constants import (
    AUTH_LOGGER,
    DEFAULT_API_URL,
    DEFAULT_APP_REDIRECT_URI,
    DEFAULT_STATE_PATH,
    LOGGER,
    OAUTH_MODES,
)

_HTTP_URL = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True)
class Settings:
    api_url: str
    google_client_id: str
    github_client_id: str
    oauth_mode: str
    app_redirect_uri: str
    http_timeout: float
    max_retries: int
    state_path: Path
    refresh_threshold_seconds: int
    refresh_interval_seconds: int
    pending_ttl_seconds: int
    loopback_port: int

    @property
    def client_ids(self) -> dict[str, str]:
        return {"google": self.google_client_id, "github": self.github_client_id}


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
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def load_settings() -> Settings:
    state_path = os.getenv("CODEVERSE_STATE_PATH", "").strip()
    return Settings(
        api_url=os.getenv("CODEVERSE_API_URL", DEFAULT_API_URL).strip().rstrip("/"),
        google_client_id=os.getenv("CODEVERSE_GOOGLE_CLIENT_ID", "").strip(),
        github_client_id=os.getenv("CODEVERSE_GITHUB_CLIENT_ID", "").strip(),
        oauth_mode=os.getenv("CODEVERSE_OAUTH_MODE", "backend").strip().lower(),
        app_redirect_uri=os.getenv(
            "CODEVERSE_APP_REDIRECT_URI", DEFAULT_APP_REDIRECT_URI
        ).strip(),
        http_timeout=_get_env_float("CODEVERSE_HTTP_TIMEOUT", 15.0),
        max_retries=_get_env_int("CODEVERSE_MAX_RETRIES", 2),
        state_path=Path(state_path).expanduser() if state_path else DEFAULT_STATE_PATH,
        refresh_threshold_seconds=_get_env_int("CODEVERSE_REFRESH_THRESHOLD", 120),
        refresh_interval_seconds=_get_env_int("CODEVERSE_REFRESH_INTERVAL", 60),
        pending_ttl_seconds=_get_env_int("CODEVERSE_PENDING_TTL", 600),
        loopback_port=_get_env_int("CODEVERSE_LOOPBACK_PORT", 8765),
    )


def validate_env(settings: Settings, *, provider: str | None = None) -> None:
    try:
        _HTTP_URL.validate_python(settings.api_url)
    except ValidationError as error:
        raise RuntimeError(
            "CODEVERSE_API_URL must be a valid HTTP(S) URL (for example: "
            "https://api.codeverse.app)."
        ) from error

    if settings.oauth_mode not in OAUTH_MODES:
        raise RuntimeError(
            f"CODEVERSE_OAUTH_MODE must be one of: {', '.join(OAUTH_MODES)}"
        )

    if settings.max_retries < 0:
        raise RuntimeError("CODEVERSE_MAX_RETRIES must not be negative.")

    if provider is not None and not settings.client_ids.get(provider):
        key = f"CODEVERSE_{provider.upper()}_CLIENT_ID"
        LOGGER.warning("%s is not set; %s sign-in is disabled.", key, provider)
        raise RuntimeError(f"{provider.title()} sign-in is not configured. Set {key}.")


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("CODEVERSE_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
        AUTH_LOGGER.setLevel(logging.INFO)
    return debug_enabled
