from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv


load_dotenv()

DEFAULT_SITE_BASE_URL = "https://www.mountaineers.org/"
DEFAULT_USER_AGENT = "mountaineers-assistant/0.4 (+activity history sync)"


EnvGetter = Callable[[str], str | None]


def _str_env(*names: str, default: str = "", getenv: EnvGetter = os.getenv) -> str:
    """Stripped value of the first of ``names`` that is set."""
    raw = next((value for value in map(getenv, names) if value is not None), None)
    return default if raw is None else raw.strip()


def _optional_str_env(*names: str, getenv: EnvGetter = os.getenv) -> str | None:
    value = _str_env(*names, default="", getenv=getenv)
    return value or None


def _clamp(value: int, minimum: int | None, maximum: int | None) -> int:
    if minimum is not None:
        value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value


def _int_env(
    name: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
    *,
    getenv: EnvGetter = os.getenv,
) -> int:
    raw = _str_env(name, default=str(default), getenv=getenv)
    try:
        value = int(raw)
    except ValueError:
        value = default
    return _clamp(value, minimum, maximum)


def _state_file(state_dir: Path, name: str, default: str) -> Path:
    configured = Path(_str_env(name, default=default) or default)
    if configured.is_absolute():
        return configured
    return state_dir / configured


@dataclass(frozen=True)
class Settings:
    site_base_url: str
    site_cookie: str | None
    site_cookie_file: Path | None
    user_agent: str

    log_level: str
    api_host: str
    api_port: int
    request_timeout_seconds: int
    refresh_timeout_seconds: int
    refresh_lock_ttl_seconds: int

    state_dir: Path
    cache_file: Path
    preferences_file: Path
    runtime_db_file: Path

    @classmethod
    def from_env(cls) -> "Settings":
        state_dir = Path(os.getenv("STATE_DIR", "state")).resolve()

        base_url = _str_env("SITE_BASE_URL", default=DEFAULT_SITE_BASE_URL) or DEFAULT_SITE_BASE_URL
        if not base_url.endswith("/"):
            base_url = f"{base_url}/"

        cookie_file_raw = _optional_str_env("SITE_COOKIE_FILE")
        cookie_file = Path(cookie_file_raw).expanduser() if cookie_file_raw else None

        return cls(
            site_base_url=base_url,
            site_cookie=_optional_str_env("SITE_COOKIE", "MOUNTAINEERS_COOKIE"),
            site_cookie_file=cookie_file,
            user_agent=_str_env("SITE_USER_AGENT", default=DEFAULT_USER_AGENT) or DEFAULT_USER_AGENT,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_host=_str_env("API_HOST", default="127.0.0.1") or "127.0.0.1",
            api_port=_int_env("API_PORT", 1610, minimum=1, maximum=65535),
            request_timeout_seconds=_int_env("REQUEST_TIMEOUT_SECONDS", 30, minimum=5, maximum=300),
            refresh_timeout_seconds=_int_env("REFRESH_TIMEOUT_SECONDS", 60, minimum=5, maximum=3600),
            refresh_lock_ttl_seconds=_int_env("REFRESH_LOCK_TTL_SECONDS", 900, minimum=30, maximum=7200),
            state_dir=state_dir,
            cache_file=_state_file(state_dir, "CACHE_FILE", "mountaineers_assistant_data.json"),
            preferences_file=_state_file(state_dir, "PREFERENCES_FILE", "preferences.json"),
            runtime_db_file=_state_file(state_dir, "RUNTIME_DB_FILE", "runtime_state.db"),
        )

    def validate(self) -> None:
        if self.site_cookie or self.site_cookie_file:
            return
        raise ValueError(
            "Missing required environment variables: SITE_COOKIE (or SITE_COOKIE_FILE)"
        )

    def ensure_state_paths(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
