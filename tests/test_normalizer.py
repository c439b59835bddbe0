import unittest

from mountaineers_assistant.models import ActivityRecord
from mountaineers_assistant.normalizer import (
    normalize_activity,
    parse_date,
    select_new_activities,
    sort_by_start_date,
    start_timestamp,
)


BASE_URL = "https://www.mountaineers.org/"


def _record(uid, start, result="Successful", href=None):
    return {
        "uid": uid,
        "href": href if href is not None else f"/activities/{uid}",
        "title": f"Trip {uid}",
        "category": "trip",
        "start": start,
        "result": result,
    }


class TestNormalizeActivity(unittest.TestCase):
    def test_maps_feed_fields(self) -> None:
        activity = normalize_activity(_record("a", "2024-01-01"), BASE_URL)

        self.assertEqual(activity.uid, "a")
        self.assertEqual(activity.href, "https://www.mountaineers.org/activities/a")
        self.assertEqual(activity.start_date, "2024-01-01T00:00:00+00:00")
        self.assertEqual(activity.result, "Successful")
        self.assertIsNone(activity.activity_type)

    def test_drops_records_without_uid_or_href(self) -> None:
        self.assertIsNone(normalize_activity(_record("", "2024-01-01"), BASE_URL))
        self.assertIsNone(normalize_activity(_record("a", "2024-01-01", href=""), BASE_URL))
        self.assertIsNone(normalize_activity("not a record", BASE_URL))

    def test_parse_date_variants(self) -> None:
        self.assertEqual(parse_date("2024-03-01T10:00:00Z"), "2024-03-01T10:00:00+00:00")
        self.assertEqual(parse_date(0), "1970-01-01T00:00:00+00:00")
        self.assertIsNone(parse_date("not a date"))
        self.assertIsNone(parse_date(None))
        self.assertIsNone(parse_date(True))

    def test_missing_dates_sort_last(self) -> None:
        activities = [
            ActivityRecord(uid="none", href="x"),
            ActivityRecord(uid="new", href="x", start_date="2024-02-01T00:00:00+00:00"),
        ]

        ordered = sort_by_start_date(activities)

        self.assertEqual([activity.uid for activity in ordered], ["new", "none"])
        self.assertEqual(start_timestamp(None), 0.0)


class TestSelectNewActivities(unittest.TestCase):
    def test_limit_applies_after_sorting(self) -> None:
        records = [
            _record("jan", "2024-01-01"),
            _record("mar", "2024-03-01"),
            _record("feb", "2024-02-01"),
        ]

        selected = select_new_activities(records, set(), base_url=BASE_URL, fetch_limit=2)

        self.assertEqual([activity.uid for activity in selected], ["mar", "feb"])

    def test_filters_known_and_unsuccessful(self) -> None:
        records = [
            _record("known", "2024-01-01"),
            _record("cancelled", "2024-01-02", result="Canceled"),
            _record("done", "2024-01-03", result="SUCCESSFUL"),
            {"uid": "broken"},
        ]

        selected = select_new_activities(records, {"known"}, base_url=BASE_URL)

        self.assertEqual([activity.uid for activity in selected], ["done"])

    def test_only_known_uid_yields_nothing(self) -> None:
        selected = select_new_activities([_record("a", "2024-01-01")], {"a"}, base_url=BASE_URL)

        self.assertEqual(selected, [])

    def test_non_positive_limit_is_ignored(self) -> None:
        records = [_record("a", "2024-01-01"), _record("b", "2024-01-02")]

        self.assertEqual(len(select_new_activities(records, set(), base_url=BASE_URL, fetch_limit=0)), 2)


if __name__ == "__main__":
    unittest.main()
