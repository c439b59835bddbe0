import unittest
from datetime import datetime, timezone

from mountaineers_assistant.merge import fill_forward_person, merge_cache
from mountaineers_assistant.models import (
    ActivityRecord,
    CollectorDelta,
    CollectorPayload,
    ExtensionCache,
    PersonRecord,
    RosterEntryRecord,
)


NOW = datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)


def _activity(uid, start_date=None, activity_type=None, title=None):
    return ActivityRecord(
        uid=uid,
        href=f"https://www.mountaineers.org/activities/{uid}",
        title=title or uid,
        start_date=start_date,
        result="Successful",
        activity_type=activity_type,
    )


class TestMergeCache(unittest.TestCase):
    def test_merge_is_idempotent(self) -> None:
        delta = CollectorDelta(
            activities=[_activity("a", "2024-01-01T00:00:00+00:00")],
            people=[PersonRecord(uid="p1", name="Pat")],
            roster_entries=[RosterEntryRecord("a", "p1", "Participant")],
        )

        once = merge_cache(ExtensionCache.empty(), delta, now=NOW)
        twice = merge_cache(once.updated_cache, delta, now=NOW)

        self.assertEqual(once.updated_cache, twice.updated_cache)
        self.assertEqual(once.new_activity_count, 1)
        self.assertEqual(twice.new_activity_count, 0)

    def test_activity_uids_stay_unique_and_sorted(self) -> None:
        existing = ExtensionCache(activities=[_activity("a", "2024-01-01T00:00:00+00:00")])
        delta = CollectorDelta(
            activities=[
                _activity("undated"),
                _activity("b", "2024-03-01T00:00:00+00:00"),
                _activity("a", "2024-01-01T00:00:00+00:00", title="renamed"),
            ]
        )

        result = merge_cache(existing, delta, now=NOW)

        uids = [activity.uid for activity in result.updated_cache.activities]
        self.assertEqual(uids, ["b", "a", "undated"])
        self.assertEqual(result.updated_cache.activities[1].title, "renamed")
        self.assertEqual(result.new_activity_count, 2)

    def test_missing_activity_type_keeps_known_value(self) -> None:
        existing = ExtensionCache(activities=[_activity("a", activity_type="Day Hiking")])

        kept = merge_cache(existing, CollectorDelta(activities=[_activity("a")]), now=NOW)
        replaced = merge_cache(existing, CollectorDelta(activities=[_activity("a", activity_type="Scramble")]), now=NOW)

        self.assertEqual(kept.updated_cache.activities[0].activity_type, "Day Hiking")
        self.assertEqual(replaced.updated_cache.activities[0].activity_type, "Scramble")

    def test_people_fill_forward_without_clobbering(self) -> None:
        existing = ExtensionCache(people=[PersonRecord(uid="p1", name="Pat", avatar="A")])
        delta = CollectorDelta(
            people=[PersonRecord(uid="p1", href="https://example.test/p1", name="Patricia", avatar="B")]
        )

        person = merge_cache(existing, delta, now=NOW).updated_cache.people[0]

        self.assertEqual(person.avatar, "A")
        self.assertEqual(person.name, "Pat")
        self.assertEqual(person.href, "https://example.test/p1")

    def test_people_sorted_by_name_with_blank_first(self) -> None:
        delta = CollectorDelta(
            people=[
                PersonRecord(uid="z", name="Zed"),
                PersonRecord(uid="blank"),
                PersonRecord(uid="a", name="Amy"),
            ]
        )

        people = merge_cache(ExtensionCache.empty(), delta, now=NOW).updated_cache.people

        self.assertEqual([person.uid for person in people], ["blank", "a", "z"])

    def test_roster_entries_last_writer_wins(self) -> None:
        existing = ExtensionCache(roster_entries=[RosterEntryRecord("a", "p1", "Participant")])
        delta = CollectorDelta(
            roster_entries=[
                RosterEntryRecord("a", "p1", "Instructor"),
                RosterEntryRecord("a", "p1", "Primary Leader"),
                RosterEntryRecord("a", "p2", "Participant"),
            ]
        )

        entries = merge_cache(existing, delta, now=NOW).updated_cache.roster_entries

        self.assertEqual(len(entries), 2)
        self.assertEqual(entries[0].role, "Primary Leader")

    def test_stamps_last_updated_and_resolves_current_user(self) -> None:
        existing = ExtensionCache(current_user_uid="jane-doe", last_updated="2020-01-01T00:00:00+00:00")

        from_delta = merge_cache(existing, CollectorDelta(), now=NOW).updated_cache
        from_payload = merge_cache(existing, CollectorPayload(current_user_uid="john-doe"), now=NOW).updated_cache
        fallback = merge_cache(existing, CollectorPayload(), now=NOW).updated_cache

        self.assertEqual(from_delta.last_updated, NOW.isoformat())
        self.assertEqual(from_delta.current_user_uid, "jane-doe")
        self.assertEqual(from_payload.current_user_uid, "john-doe")
        self.assertEqual(fallback.current_user_uid, "jane-doe")

    def test_existing_cache_is_not_mutated(self) -> None:
        existing = ExtensionCache(people=[PersonRecord(uid="p1")])

        merge_cache(existing, CollectorDelta(people=[PersonRecord(uid="p1", name="Pat")]), now=NOW)

        self.assertIsNone(existing.people[0].name)


class TestFillForwardPerson(unittest.TestCase):
    def test_only_empty_fields_are_filled(self) -> None:
        merged = fill_forward_person(
            PersonRecord(uid="p1", href="", name="Pat"),
            PersonRecord(uid="p1", href="https://example.test/p1", name="Other", avatar="B"),
        )

        self.assertEqual(merged, PersonRecord(uid="p1", href="https://example.test/p1", name="Pat", avatar="B"))


if __name__ == "__main__":
    unittest.main()
