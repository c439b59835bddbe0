from __future__ import annotations

import time
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


def _string_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _records(raw: Any, parse: Any) -> list[Any]:
    if not isinstance(raw, list):
        return []
    parsed = (parse(item) for item in raw)
    return [item for item in parsed if item is not None]


@dataclass
class ActivityRecord:
    uid: str
    href: str
    title: str | None = None
    category: str | None = None
    start_date: str | None = None
    trip_results: str | None = None
    result: str | None = None
    activity_type: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "ActivityRecord | None":
        if not isinstance(raw, dict):
            return None
        uid = _string_or_none(raw.get("uid"))
        href = _string_or_none(raw.get("href"))
        if not uid or not href:
            return None
        return cls(
            uid=uid,
            href=href,
            title=_string_or_none(raw.get("title")),
            category=_string_or_none(raw.get("category")),
            start_date=_string_or_none(raw.get("start_date")),
            trip_results=_string_or_none(raw.get("trip_results")),
            result=_string_or_none(raw.get("result")),
            activity_type=_string_or_none(raw.get("activity_type")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "href": self.href,
            "title": self.title,
            "category": self.category,
            "start_date": self.start_date,
            "trip_results": self.trip_results,
            "result": self.result,
            "activity_type": self.activity_type,
        }


@dataclass
class PersonRecord:
    uid: str
    href: str | None = None
    name: str | None = None
    avatar: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "PersonRecord | None":
        if not isinstance(raw, dict):
            return None
        uid = _string_or_none(raw.get("uid"))
        if not uid:
            return None
        return cls(
            uid=uid,
            href=_string_or_none(raw.get("href")),
            name=_string_or_none(raw.get("name")),
            avatar=_string_or_none(raw.get("avatar")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"uid": self.uid, "href": self.href, "name": self.name, "avatar": self.avatar}


@dataclass
class RosterEntryRecord:
    activity_uid: str
    person_uid: str
    role: str | None = None

    @property
    def key(self) -> str:
        return f"{self.activity_uid}|{self.person_uid}"

    @classmethod
    def from_dict(cls, raw: Any) -> "RosterEntryRecord | None":
        if not isinstance(raw, dict):
            return None
        activity_uid = _string_or_none(raw.get("activity_uid"))
        person_uid = _string_or_none(raw.get("person_uid"))
        if not activity_uid or not person_uid:
            return None
        return cls(activity_uid=activity_uid, person_uid=person_uid, role=_string_or_none(raw.get("role")))

    def to_dict(self) -> dict[str, Any]:
        return {"activity_uid": self.activity_uid, "person_uid": self.person_uid, "role": self.role}


@dataclass
class CollectorDelta:
    """Partial slice of the cache produced while a collection is still running."""

    activities: list[ActivityRecord] = field(default_factory=list)
    people: list[PersonRecord] = field(default_factory=list)
    roster_entries: list[RosterEntryRecord] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.activities or self.people or self.roster_entries)

    @classmethod
    def from_dict(cls, raw: Any) -> "CollectorDelta | None":
        """Parse a delta, returning None when it carries nothing to merge."""
        if not isinstance(raw, dict):
            return None
        delta = cls(
            activities=_records(raw.get("activities"), ActivityRecord.from_dict),
            people=_records(raw.get("people"), PersonRecord.from_dict),
            roster_entries=_records(raw.get("rosterEntries"), RosterEntryRecord.from_dict),
        )
        if delta.is_empty():
            return None
        return delta

    def to_dict(self) -> dict[str, Any]:
        return {
            "activities": [item.to_dict() for item in self.activities],
            "people": [item.to_dict() for item in self.people],
            "rosterEntries": [item.to_dict() for item in self.roster_entries],
        }


@dataclass
class CollectorPayload(CollectorDelta):
    """Final payload of a successful collection run."""

    current_user_uid: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "CollectorPayload | None":
        if not isinstance(raw, dict):
            return None
        return cls(
            activities=_records(raw.get("activities"), ActivityRecord.from_dict),
            people=_records(raw.get("people"), PersonRecord.from_dict),
            roster_entries=_records(raw.get("rosterEntries"), RosterEntryRecord.from_dict),
            current_user_uid=_string_or_none(raw.get("currentUserUid")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["currentUserUid"] = self.current_user_uid
        return payload


@dataclass
class ExtensionCache:
    activities: list[ActivityRecord] = field(default_factory=list)
    people: list[PersonRecord] = field(default_factory=list)
    roster_entries: list[RosterEntryRecord] = field(default_factory=list)
    last_updated: str | None = None
    current_user_uid: str | None = None

    @classmethod
    def empty(cls) -> "ExtensionCache":
        return cls()

    @classmethod
    def from_dict(cls, raw: Any) -> "ExtensionCache":
        if not isinstance(raw, dict):
            return cls.empty()
        return cls(
            activities=_records(raw.get("activities"), ActivityRecord.from_dict),
            people=_records(raw.get("people"), PersonRecord.from_dict),
            roster_entries=_records(raw.get("rosterEntries"), RosterEntryRecord.from_dict),
            last_updated=_string_or_none(raw.get("lastUpdated")),
            current_user_uid=_string_or_none(raw.get("currentUserUid")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "activities": [item.to_dict() for item in self.activities],
            "people": [item.to_dict() for item in self.people],
            "rosterEntries": [item.to_dict() for item in self.roster_entries],
            "lastUpdated": self.last_updated,
            "currentUserUid": self.current_user_uid,
        }

    def clone(self) -> "ExtensionCache":
        return deepcopy(self)

    def activity_uids(self) -> list[str]:
        return [activity.uid for activity in self.activities]


@dataclass
class RefreshProgress:
    total: int = 0
    completed: int = 0
    remaining: int | None = None
    stage: str = "pending"
    activity_uid: str | None = None
    activity_title: str | None = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "remaining": self.remaining,
            "stage": self.stage,
            "activityUid": self.activity_uid,
            "activityTitle": self.activity_title,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class RefreshSummary:
    activity_count: int
    last_updated: str | None
    new_activities: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "activityCount": self.activity_count,
            "lastUpdated": self.last_updated,
            "newActivities": self.new_activities,
        }


def format_refresh_summary(summary: RefreshSummary) -> str:
    noun = "activity" if summary.activity_count == 1 else "activities"
    text = f"Refreshed {summary.activity_count} {noun} ({summary.new_activities} new)."
    if summary.last_updated:
        text = f"{text} Last updated {summary.last_updated}."
    return text


def sanitize_fetch_limit(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and value > 0:
        return value
    return None


@dataclass
class ExtensionPreferences:
    show_avatars: bool = True
    fetch_limit: int | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "ExtensionPreferences":
        if not isinstance(raw, dict):
            return cls()
        show_avatars = raw.get("showAvatars")
        return cls(
            show_avatars=show_avatars if isinstance(show_avatars, bool) else True,
            fetch_limit=sanitize_fetch_limit(raw.get("fetchLimit")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"showAvatars": self.show_avatars, "fetchLimit": self.fetch_limit}
