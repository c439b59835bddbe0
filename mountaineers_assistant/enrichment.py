from __future__ import annotations

import concurrent.futures
import copy
import logging
import re
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Callable
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag

from .discovery import extract_member_slug
from .errors import EnrichmentError
from .models import ActivityRecord, PersonRecord, RosterEntryRecord
from .site_client import SiteClient


logger = logging.getLogger(__name__)

ROSTER_SEGMENT = "roster-tab"
ROSTER_ACCEPT = "text/html, */*; q=0.01"
ACTIVITY_TYPE_LABEL = "activity type"
DEFAULT_ROLE = "Participant"
KNOWN_ROLES = ("Primary Leader", "Assistant Leader", "Instructor", "Participant")
PLACEHOLDER_AVATAR_MARKER = "/placeholder-contact-profile/"
MEMBER_LINK_SELECTOR = "a[href*='/members/']"
MEMBER_IMAGE_SELECTOR = "img[src*='/members/']"


@dataclass
class RosterResult:
    people: list[PersonRecord] = field(default_factory=list)
    entries: list[RosterEntryRecord] = field(default_factory=list)


@dataclass
class EnrichmentOutcome:
    activity: ActivityRecord
    roster: RosterResult
    warnings: list[str] = field(default_factory=list)


def normalize_whitespace(value: str | None) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"\s+", " ", value).strip()
    return cleaned or None


def slugify(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value.lower())
    return re.sub(r"[^a-z0-9]+", "-", decomposed).strip("-")


def normalize_role(role_text: str | None) -> str:
    if not role_text:
        return DEFAULT_ROLE
    cleaned = role_text.strip().lower()
    for role in KNOWN_ROLES:
        if role.lower() == cleaned:
            return role
    return DEFAULT_ROLE


def normalize_avatar_url(value: str | None, base_url: str) -> str | None:
    if not value:
        return None
    url = urljoin(base_url, value)
    if PLACEHOLDER_AVATAR_MARKER in url:
        return None
    return url


def build_member_href(slug: str, base_url: str) -> str:
    return urljoin(base_url, f"/members/{slug}")


def derive_roster_url(activity_href: str) -> str:
    parts = urlsplit(activity_href)
    path = parts.path[:-1] if parts.path.endswith("/") else parts.path
    return urlunsplit((parts.scheme, parts.netloc, f"{path}/{ROSTER_SEGMENT}", "", ""))


def extract_activity_type(page_html: str) -> str | None:
    soup = BeautifulSoup(page_html, "html.parser")
    for item in soup.select(".program-core .details li"):
        label = item.find("label")
        label_text = normalize_whitespace(label.get_text() if label else "")
        if not label_text or re.sub(r":$", "", label_text).lower() != ACTIVITY_TYPE_LABEL:
            continue
        clone = copy.copy(item)
        clone_label = clone.find("label")
        if clone_label:
            clone_label.decompose()
        value = normalize_whitespace(clone.get_text())
        if value:
            return value
    return None


def _extract_text(element: Tag, selectors: list[str]) -> str | None:
    for selector in selectors:
        node = element.select_one(selector)
        text = node.get_text().strip() if node else ""
        if text:
            return text
    return element.get_text().strip() or None


def parse_roster_contact(
    element: Tag,
    activity_uid: str,
    base_url: str,
) -> tuple[PersonRecord, RosterEntryRecord] | None:
    name = _extract_text(element, [".roster-name", MEMBER_LINK_SELECTOR, "div"])
    if not name:
        return None

    anchor = element.select_one(MEMBER_LINK_SELECTOR)
    anchor_href = anchor.get("href") if anchor else None
    href = urljoin(base_url, anchor_href) if anchor_href else None
    image = element.select_one(MEMBER_IMAGE_SELECTOR)
    image_src = image.get("src") if image else None

    slug = extract_member_slug(anchor_href or image_src) or slugify(name)
    if not slug:
        return None

    person = PersonRecord(
        uid=slug,
        href=href or build_member_href(slug, base_url),
        name=name,
        avatar=normalize_avatar_url(image_src, base_url),
    )
    entry = RosterEntryRecord(
        activity_uid=activity_uid,
        person_uid=slug,
        role=normalize_role(_extract_text(element, [".roster-position"])),
    )
    return person, entry


def parse_roster_html(page_html: str, activity_uid: str, base_url: str) -> RosterResult:
    soup = BeautifulSoup(page_html, "html.parser")
    roster = RosterResult()
    for contact in soup.select(".roster-contact"):
        parsed = parse_roster_contact(contact, activity_uid, base_url)
        if parsed is None:
            continue
        person, entry = parsed
        roster.people.append(person)
        roster.entries.append(entry)
    return roster


def load_activity_details(client: SiteClient, activity: ActivityRecord) -> str | None:
    try:
        response = client.get(activity.href)
    except requests.RequestException as exc:
        raise EnrichmentError(f"Failed to load activity page for {activity.uid}: {exc}") from exc
    if not response.ok:
        raise EnrichmentError(f"Activity page unavailable ({response.status_code}) for {activity.uid}")
    return extract_activity_type(response.text)


def load_activity_roster(client: SiteClient, activity: ActivityRecord) -> RosterResult:
    headers = {
        "Accept": ROSTER_ACCEPT,
        "X-Requested-With": "XMLHttpRequest",
        "Referer": activity.href,
    }
    try:
        response = client.get(derive_roster_url(activity.href), headers=headers)
    except requests.RequestException as exc:
        raise EnrichmentError(f"Roster fetch failed for {activity.uid}: {exc}") from exc
    if not response.ok:
        raise EnrichmentError(f"Roster fetch failed ({response.status_code})")

    content_type = response.headers.get("Content-Type") or ""
    if "application/json" in content_type:
        try:
            payload = response.json()
        except ValueError as exc:
            raise EnrichmentError(f"Roster response for {activity.uid} was not valid JSON") from exc
        if isinstance(payload, dict) and payload.get("error_type"):
            raise EnrichmentError(f"Roster request failed: {payload['error_type']}")
        return RosterResult()

    return parse_roster_html(response.text, activity.uid, client.base_url)


def _settle(future: concurrent.futures.Future, description: str, warnings: list[str]) -> tuple[bool, object]:
    try:
        return True, future.result()
    except Exception as exc:
        message = f"Failed to load {description}: {exc}"
        logger.warning(message)
        warnings.append(message)
        return False, None


def enrich_activity(
    client: SiteClient,
    activity: ActivityRecord,
    executor: concurrent.futures.Executor,
    *,
    on_stage: Callable[[str], None] | None = None,
) -> EnrichmentOutcome:
    """Fetch classification and roster for one activity concurrently.

    Each fetch fails independently: a failed detail fetch keeps the known
    activity type, a failed roster fetch yields an empty roster.
    """
    details_future = executor.submit(load_activity_details, client, activity)
    roster_future = executor.submit(load_activity_roster, client, activity)
    warnings: list[str] = []

    if on_stage:
        on_stage("loading-details")
    details_ok, activity_type = _settle(details_future, f"activity details for {activity.uid}", warnings)

    if on_stage:
        on_stage("loading-roster")
    roster_ok, roster = _settle(roster_future, f"roster for {activity.uid}", warnings)

    enriched = activity
    if details_ok and isinstance(activity_type, str) and activity_type:
        enriched = replace(activity, activity_type=activity_type)
    return EnrichmentOutcome(
        activity=enriched,
        roster=roster if roster_ok and isinstance(roster, RosterResult) else RosterResult(),
        warnings=warnings,
    )
