from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

import requests
from bs4 import BeautifulSoup

from .errors import FeedError, FeedParseError
from .site_client import SiteClient


logger = logging.getLogger(__name__)

ACTIVITIES_PATH_SUFFIX = "/member-activities"
HISTORY_SUFFIX = "/member-activity-history.json"
SCRIPT_TOKEN_PATTERN = re.compile(r'x-csrf-token\s*=\s*"([^"]+)"', re.IGNORECASE)
FEED_ACCEPT = "application/json, text/javascript, */*; q=0.01"


@dataclass(frozen=True)
class CsrfContext:
    token: str | None
    referer_url: str


def derive_history_url(activities_url: str) -> str:
    trimmed = activities_url[:-1] if activities_url.endswith("/") else activities_url
    if trimmed.endswith(ACTIVITIES_PATH_SUFFIX):
        return f"{trimmed[: -len(ACTIVITIES_PATH_SUFFIX)]}{HISTORY_SUFFIX}"
    raise FeedError("Activities URL does not match expected pattern.")


def extract_csrf_token(page_html: str) -> str | None:
    soup = BeautifulSoup(page_html, "html.parser")
    meta = soup.select_one('meta[name="csrf-token"]')
    meta_token = meta.get("content") if meta else None
    if meta_token:
        return meta_token

    data_node = soup.select_one("[data-csrf-token]")
    data_token = data_node.get("data-csrf-token") if data_node else None
    if data_token:
        return data_token

    match = SCRIPT_TOKEN_PATTERN.search(page_html)
    if match:
        return html.unescape(match.group(1))
    return None


def collect_csrf_token(client: SiteClient, activities_url: str) -> CsrfContext:
    logger.debug("Loading activities page to collect CSRF token")
    try:
        response = client.get(activities_url)
    except requests.RequestException as exc:
        raise FeedError(f"Failed to load activities page: {exc}") from exc
    if not response.ok:
        raise FeedError(f"Failed to load activities page ({response.status_code})")
    return CsrfContext(
        token=extract_csrf_token(response.text),
        referer_url=response.url or activities_url,
    )


def _bare_array(payload: Any) -> list[Any] | None:
    return payload if isinstance(payload, list) else None


def _keyed_array(key: str) -> Callable[[Any], list[Any] | None]:
    def _attempt(payload: Any) -> list[Any] | None:
        if isinstance(payload, dict) and isinstance(payload.get(key), list):
            return payload[key]
        return None

    return _attempt


FEED_SHAPES: tuple[tuple[str, Callable[[Any], list[Any] | None]], ...] = (
    ("array", _bare_array),
    ("items", _keyed_array("items")),
    ("results", _keyed_array("results")),
    ("data", _keyed_array("data")),
)


def extract_feed_items(payload: Any) -> list[Any]:
    for shape, attempt in FEED_SHAPES:
        items = attempt(payload)
        if items is not None:
            logger.debug("History feed matched %s shape with %s record(s)", shape, len(items))
            return items
    raise FeedParseError("Unexpected JSON structure from activity history endpoint.")


def fetch_history_payload(
    client: SiteClient,
    history_url: str,
    csrf: CsrfContext,
) -> list[Any]:
    headers = {
        "Accept": FEED_ACCEPT,
        "X-Requested-With": "XMLHttpRequest",
        "Referer": csrf.referer_url,
    }
    if csrf.token:
        headers["X-CSRF-Token"] = csrf.token

    logger.debug("Requesting history payload %s", history_url)
    try:
        response = client.get(history_url, headers=headers)
    except requests.RequestException as exc:
        raise FeedError(f"Failed to fetch activity history: {exc}") from exc
    if not response.ok:
        raise FeedError(f"Failed to fetch activity history ({response.status_code})")
    try:
        payload = response.json()
    except ValueError as exc:
        raise FeedParseError("Activity history endpoint did not return JSON.") from exc
    return extract_feed_items(payload)


def fetch_activity_history(client: SiteClient, activities_url: str) -> list[Any]:
    history_url = derive_history_url(activities_url)
    csrf = collect_csrf_token(client, activities_url)
    return fetch_history_payload(client, history_url, csrf)
