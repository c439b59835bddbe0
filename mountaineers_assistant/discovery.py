from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import requests
from bs4 import BeautifulSoup

from .errors import DiscoveryError
from .site_client import SiteClient


logger = logging.getLogger(__name__)

ACTIVITIES_LINK_TEXT = "My Activities"
PROFILE_LINK_TEXT = "my profile"
MEMBER_SLUG_PATTERN = re.compile(r"/members/([^/?#]+)")


@dataclass(frozen=True)
class DiscoveryResult:
    activities_url: str
    current_user_uid: str | None


def extract_member_slug(value: str | None) -> str | None:
    if not value:
        return None
    match = MEMBER_SLUG_PATTERN.search(value)
    return match.group(1) if match else None


def extract_profile_slug(soup: BeautifulSoup) -> str | None:
    for anchor in soup.select("a[href*='/members/']"):
        text = anchor.get_text().strip().lower()
        if text and PROFILE_LINK_TEXT in text:
            slug = extract_member_slug(anchor.get("href") or "")
            if slug:
                return slug
    return None


def find_activities_href(soup: BeautifulSoup) -> str | None:
    for anchor in soup.find_all("a"):
        if ACTIVITIES_LINK_TEXT in anchor.get_text().strip():
            return anchor.get("href") or ""
    return None


def discover_activities_url(client: SiteClient) -> DiscoveryResult:
    logger.debug("Fetching homepage to locate activities link")
    try:
        response = client.get(client.base_url)
    except requests.RequestException as exc:
        raise DiscoveryError(f"Failed to load homepage: {exc}") from exc
    if not response.ok:
        raise DiscoveryError(f"Failed to load homepage ({response.status_code})")

    soup = BeautifulSoup(response.text, "html.parser")
    href = find_activities_href(soup)
    if href is None:
        raise DiscoveryError("Unable to locate 'My Activities' link on homepage.")

    activities_url = client.absolute_url(href, response.url or client.base_url)
    logger.debug("Activities URL discovered -> %s", activities_url)

    profile_slug = extract_profile_slug(soup)
    if profile_slug:
        logger.debug("Detected current user slug -> %s", profile_slug)
    return DiscoveryResult(activities_url=activities_url, current_user_uid=profile_slug)
