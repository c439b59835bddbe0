from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .models import (
    ActivityRecord,
    CollectorDelta,
    CollectorPayload,
    ExtensionCache,
    PersonRecord,
    RosterEntryRecord,
)
from .normalizer import sort_by_start_date


FILL_FORWARD_FIELDS = ("href", "avatar", "name")


@dataclass
class MergeResult:
    updated_cache: ExtensionCache
    new_activity_count: int


def merge_activity(existing: ActivityRecord, incoming: ActivityRecord) -> ActivityRecord:
    if incoming.activity_type is None and existing.activity_type is not None:
        return replace(incoming, activity_type=existing.activity_type)
    return replace(incoming)


def fill_forward_person(existing: PersonRecord, incoming: PersonRecord) -> PersonRecord:
    """Copy a field from ``incoming`` only where ``existing`` has nothing yet."""
    updates = {}
    for name in FILL_FORWARD_FIELDS:
        if not getattr(existing, name) and getattr(incoming, name):
            updates[name] = getattr(incoming, name)
    return replace(existing, **updates)


def _person_sort_key(person: PersonRecord) -> str:
    return person.name or ""


def merge_activities(
    existing: list[ActivityRecord],
    incoming: list[ActivityRecord],
) -> tuple[list[ActivityRecord], int]:
    by_uid = {activity.uid: activity for activity in existing}
    new_count = 0
    for activity in incoming:
        current = by_uid.get(activity.uid)
        if current is None:
            new_count += 1
            by_uid[activity.uid] = replace(activity)
        else:
            by_uid[activity.uid] = merge_activity(current, activity)
    return sort_by_start_date(by_uid.values()), new_count


def merge_people(existing: list[PersonRecord], incoming: list[PersonRecord]) -> list[PersonRecord]:
    by_uid = {person.uid: person for person in existing}
    for person in incoming:
        current = by_uid.get(person.uid)
        by_uid[person.uid] = replace(person) if current is None else fill_forward_person(current, person)
    return sorted(by_uid.values(), key=_person_sort_key)


def merge_roster_entries(
    existing: list[RosterEntryRecord],
    incoming: list[RosterEntryRecord],
) -> list[RosterEntryRecord]:
    by_key = {entry.key: entry for entry in existing}
    for entry in incoming:
        by_key[entry.key] = replace(entry)
    return list(by_key.values())


def merge_cache(
    existing: ExtensionCache,
    incoming: CollectorDelta,
    *,
    now: datetime | None = None,
) -> MergeResult:
    """Fold a delta or a final payload into ``existing`` without mutating it.

    Activities overwrite by uid except that a missing incoming activity type
    keeps the known one. People only fill empty fields. Roster entries are
    keyed by activity and person, last writer wins.
    """
    activities, new_count = merge_activities(existing.activities, incoming.activities)
    stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).isoformat()

    current_user_uid = existing.current_user_uid
    if isinstance(incoming, CollectorPayload) and incoming.current_user_uid:
        current_user_uid = incoming.current_user_uid

    updated = ExtensionCache(
        activities=activities,
        people=merge_people(existing.people, incoming.people),
        roster_entries=merge_roster_entries(existing.roster_entries, incoming.roster_entries),
        last_updated=stamp,
        current_user_uid=current_user_uid,
    )
    return MergeResult(updated_cache=updated, new_activity_count=new_count)
