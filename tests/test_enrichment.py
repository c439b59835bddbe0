import concurrent.futures
import unittest

import requests
from bs4 import BeautifulSoup

from mountaineers_assistant.enrichment import (
    RosterResult,
    derive_roster_url,
    enrich_activity,
    extract_activity_type,
    load_activity_roster,
    normalize_avatar_url,
    normalize_role,
    parse_roster_contact,
    parse_roster_html,
    slugify,
)
from mountaineers_assistant.errors import EnrichmentError
from mountaineers_assistant.models import ActivityRecord
from site_fakes import (
    BASE_URL,
    DETAIL_HTML_TEMPLATE,
    ROSTER_HTML,
    FakeResponse,
    activity_url,
    build_client,
    build_site_routes,
    feed_record,
)


def _activity(uid: str = "hike", activity_type: str | None = None) -> ActivityRecord:
    return ActivityRecord(uid=uid, href=activity_url(uid), title=f"Trip {uid}", activity_type=activity_type)


class TestParsingRules(unittest.TestCase):
    def test_activity_type_label_match(self) -> None:
        html = DETAIL_HTML_TEMPLATE.format(activity_type="  Day   Hiking ")

        self.assertEqual(extract_activity_type(html), "Day Hiking")

    def test_activity_type_requires_program_core_details(self) -> None:
        html = "<ul class='details'><li><label>Activity Type:</label> Scramble</li></ul>"

        self.assertIsNone(extract_activity_type(html))

    def test_activity_type_label_is_case_insensitive(self) -> None:
        html = (
            "<div class='program-core'><div class='details'><ul>"
            "<li><label>ACTIVITY TYPE</label>Climbing</li></ul></div></div>"
        )

        self.assertEqual(extract_activity_type(html), "Climbing")

    def test_roles_match_exactly(self) -> None:
        self.assertEqual(normalize_role("primary leader"), "Primary Leader")
        self.assertEqual(normalize_role(" Instructor "), "Instructor")
        self.assertEqual(normalize_role("Participant (waitlisted)"), "Participant")
        self.assertEqual(normalize_role("Trip Coordinator"), "Participant")
        self.assertEqual(normalize_role(None), "Participant")

    def test_slugify(self) -> None:
        self.assertEqual(slugify("José  Doe"), "jose-doe")
        self.assertEqual(slugify("--Alex Leader!"), "alex-leader")

    def test_placeholder_avatar_is_dropped(self) -> None:
        self.assertIsNone(normalize_avatar_url("/placeholder-contact-profile/image", BASE_URL))
        self.assertEqual(
            normalize_avatar_url("/members/a/@@images/portrait", BASE_URL),
            "https://www.mountaineers.org/members/a/@@images/portrait",
        )
        self.assertIsNone(normalize_avatar_url(None, BASE_URL))

    def test_roster_url_strips_query_fragment_and_slash(self) -> None:
        self.assertEqual(
            derive_roster_url("https://www.mountaineers.org/activities/hike/?tab=1#top"),
            "https://www.mountaineers.org/activities/hike/roster-tab",
        )

    def test_parse_roster_html(self) -> None:
        roster = parse_roster_html(ROSTER_HTML, "hike", BASE_URL)

        self.assertEqual([person.uid for person in roster.people], ["alex-leader", "sam-participant"])
        leader, participant = roster.people
        self.assertEqual(leader.href, "https://www.mountaineers.org/members/alex-leader")
        self.assertEqual(leader.avatar, "https://www.mountaineers.org/members/alex-leader/@@images/portrait")
        self.assertEqual(participant.href, "https://www.mountaineers.org/members/sam-participant")
        self.assertIsNone(participant.avatar)
        self.assertEqual([entry.role for entry in roster.entries], ["Primary Leader", "Participant"])
        self.assertTrue(all(entry.activity_uid == "hike" for entry in roster.entries))

    def test_slug_falls_back_to_image(self) -> None:
        html = (
            "<div class='roster-contact'><img src='/members/pat-image/@@images/x'>"
            "<div class='roster-name'>Pat</div></div>"
        )
        element = BeautifulSoup(html, "html.parser").select_one(".roster-contact")

        person, entry = parse_roster_contact(element, "hike", BASE_URL)

        self.assertEqual(person.uid, "pat-image")
        self.assertEqual(entry.person_uid, "pat-image")

    def test_contact_without_name_is_skipped(self) -> None:
        element = BeautifulSoup("<div class='roster-contact'>  </div>", "html.parser").select_one(
            ".roster-contact"
        )

        self.assertIsNone(parse_roster_contact(element, "hike", BASE_URL))


class TestRosterFetch(unittest.TestCase):
    def test_roster_request_headers(self) -> None:
        client, session = build_client(build_site_routes([feed_record("hike", "2024-01-01")]))

        roster = load_activity_roster(client, _activity())

        self.assertEqual(len(roster.people), 2)
        url, headers = session.calls[-1]
        self.assertEqual(url, f"{activity_url('hike')}/roster-tab")
        self.assertEqual(headers["Accept"], "text/html, */*; q=0.01")
        self.assertEqual(headers["X-Requested-With"], "XMLHttpRequest")
        self.assertEqual(headers["Referer"], activity_url("hike"))

    def test_json_error_type_fails(self) -> None:
        response = FakeResponse(200, json_data={"error_type": "NotAuthorized"}, headers={"Content-Type": "application/json"})
        client, _session = build_client(
            build_site_routes([feed_record("hike", "2024-01-01")], rosters={"hike": response})
        )

        with self.assertRaisesRegex(EnrichmentError, "NotAuthorized"):
            load_activity_roster(client, _activity())

    def test_other_json_yields_empty_roster(self) -> None:
        response = FakeResponse(200, json_data={"message": "hidden"}, headers={"Content-Type": "application/json; charset=utf-8"})
        client, _session = build_client(
            build_site_routes([feed_record("hike", "2024-01-01")], rosters={"hike": response})
        )

        roster = load_activity_roster(client, _activity())

        self.assertEqual(roster.people, [])
        self.assertEqual(roster.entries, [])


class TestEnrichActivity(unittest.TestCase):
    def setUp(self) -> None:
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=2)

    def tearDown(self) -> None:
        self.executor.shutdown(wait=True)

    def test_enriches_type_and_roster_with_stages(self) -> None:
        client, _session = build_client(build_site_routes([feed_record("hike", "2024-01-01")]))
        stages = []

        outcome = enrich_activity(client, _activity(), self.executor, on_stage=stages.append)

        self.assertEqual(stages, ["loading-details", "loading-roster"])
        self.assertEqual(outcome.activity.activity_type, "Day Hiking")
        self.assertEqual(len(outcome.roster.entries), 2)
        self.assertEqual(outcome.warnings, [])

    def test_roster_failure_keeps_activity_type(self) -> None:
        client, _session = build_client(
            build_site_routes(
                [feed_record("hike", "2024-01-01")],
                rosters={"hike": requests.ConnectionError("reset")},
            )
        )

        outcome = enrich_activity(client, _activity(), self.executor)

        self.assertEqual(outcome.activity.activity_type, "Day Hiking")
        self.assertIsInstance(outcome.roster, RosterResult)
        self.assertEqual(outcome.roster.people, [])
        self.assertEqual(len(outcome.warnings), 1)

    def test_detail_failure_keeps_previous_type(self) -> None:
        routes = build_site_routes([feed_record("hike", "2024-01-01")])
        routes[activity_url("hike")] = FakeResponse(500, "error")
        client, _session = build_client(routes)

        outcome = enrich_activity(client, _activity(activity_type="Scramble"), self.executor)

        self.assertEqual(outcome.activity.activity_type, "Scramble")
        self.assertEqual(len(outcome.roster.people), 2)
        self.assertEqual(len(outcome.warnings), 1)


if __name__ == "__main__":
    unittest.main()
