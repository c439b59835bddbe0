from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable
from urllib.parse import urljoin

from dateutil import parser as date_parser

from .models import ActivityRecord


logger = logging.getLogger(__name__)

SUCCESSFUL_RESULT = "successful"


def _string_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def parse_date(value: Any) -> str | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        elif isinstance(value, str):
            parsed = date_parser.parse(value.strip())
        else:
            return None
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def start_timestamp(start_date: str | None) -> float:
    """Seconds since the epoch for sorting; missing or unreadable dates sort as 0."""
    if not start_date:
        return 0.0
    try:
        parsed = datetime.fromisoformat(start_date.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def sort_by_start_date(activities: Iterable[ActivityRecord]) -> list[ActivityRecord]:
    return sorted(activities, key=lambda activity: start_timestamp(activity.start_date), reverse=True)


def ensure_absolute_url(value: str | None, base_url: str) -> str | None:
    if not value:
        return None
    try:
        return urljoin(base_url, value)
    except ValueError as exc:
        logger.warning("Unable to convert href to absolute URL %r: %s", value, exc)
        return value


def normalize_activity(record: Any, base_url: str) -> ActivityRecord | None:
    if not isinstance(record, dict):
        return None
    uid = (_string_or_none(record.get("uid")) or "").strip()
    href = ensure_absolute_url((_string_or_none(record.get("href")) or "").strip(), base_url)
    if not uid or not href:
        return None

    return ActivityRecord(
        uid=uid,
        href=href,
        title=_string_or_none(record.get("title")),
        category=_string_or_none(record.get("category")),
        start_date=parse_date(record.get("start")),
        trip_results=_string_or_none(record.get("trip_results")),
        result=_string_or_none(record.get("result")),
        activity_type=_string_or_none(record.get("activity_type")),
    )


def is_successful(activity: ActivityRecord) -> bool:
    return (activity.result or "").lower() == SUCCESSFUL_RESULT


def select_new_activities(
    records: Iterable[Any],
    known_uids: set[str],
    *,
    base_url: str,
    fetch_limit: int | None = None,
) -> list[ActivityRecord]:
    """Normalize feed records and keep successful activities we have not seen yet.

    Newest first. The limit is applied after sorting so the most recent
    activities always win.
    """
    activities = []
    for record in records:
        activity = normalize_activity(record, base_url)
        if activity is None or not is_successful(activity):
            continue
        if activity.uid in known_uids:
            continue
        activities.append(activity)

    ordered = sort_by_start_date(activities)
    if isinstance(fetch_limit, int) and fetch_limit > 0:
        return ordered[:fetch_limit]
    return ordered
