from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

import requests

from .config import Settings


logger = logging.getLogger(__name__)

TIMEOUT_SECONDS = 30


def _parse_cookie_header(raw: str) -> dict[str, str]:
    cookies: dict[str, str] = {}
    for chunk in raw.split(";"):
        name, sep, value = chunk.strip().partition("=")
        if sep and name.strip():
            cookies[name.strip()] = value.strip()
    return cookies


def _read_cookie_file(path: Path) -> dict[str, str]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unable to read cookie file %s: %s", path, exc)
        return {}

    if isinstance(payload, dict):
        return {str(name): str(value) for name, value in payload.items() if value is not None}

    cookies: dict[str, str] = {}
    if isinstance(payload, list):
        # Browser cookie exports are a list of {"name": ..., "value": ...} objects.
        for item in payload:
            if isinstance(item, dict) and item.get("name") and item.get("value") is not None:
                cookies[str(item["name"])] = str(item["value"])
    return cookies


class SiteClient:
    """HTTP access to the member site using an already-authenticated session."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Any | None = None,
        timeout: int = TIMEOUT_SECONDS,
        user_agent: str | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        if user_agent:
            self.session.headers["User-Agent"] = user_agent

    @classmethod
    def from_settings(cls, settings: Settings) -> "SiteClient":
        client = cls(
            settings.site_base_url,
            timeout=settings.request_timeout_seconds,
            user_agent=settings.user_agent,
        )
        cookies: dict[str, str] = {}
        if settings.site_cookie_file:
            cookies.update(_read_cookie_file(settings.site_cookie_file))
        if settings.site_cookie:
            cookies.update(_parse_cookie_header(settings.site_cookie))
        for name, value in cookies.items():
            client.session.cookies.set(name, value)
        logger.debug("Loaded %s session cookie(s).", len(cookies))
        return client

    def absolute_url(self, href: str, base: str | None = None) -> str:
        return urljoin(base or self.base_url, href)

    def get(self, url: str, *, headers: dict[str, str] | None = None) -> requests.Response:
        return self.session.get(url, headers=headers, timeout=self.timeout)
