import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from rentsync.errors import FetchFailed, PersistenceFailure
from rentsync.web_admin import create_app

FEED = """BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:1
SUMMARY:Reserved
DTSTART;VALUE=DATE:20990201
DTEND;VALUE=DATE:20990205
END:VEVENT
BEGIN:VEVENT
UID:2
SUMMARY:CLOSED - Not available
DTSTART;VALUE=DATE:20990210
DTEND;VALUE=DATE:20990301
END:VEVENT
END:VCALENDAR
"""


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        env = {
            "RENTSYNC_CONFIG_PATH": str(Path(self.temp_dir.name) / "config.yaml"),
            "RENTSYNC_STATE_PATH": str(Path(self.temp_dir.name) / "state.db"),
        }
        env_patcher = mock.patch.dict(os.environ, env)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)
        self.app = create_app()
        self.client = TestClient(self.app)

        feed_patcher = mock.patch("rentsync.sync_engine.FeedClient")
        self.feed_client = feed_patcher.start().return_value
        self.addCleanup(feed_patcher.stop)
        self.feed_client.fetch.return_value = FEED

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _connect(self, platform: str = "Airbnb", **extra: object) -> dict:
        payload = {"platform": platform, "feed_url": "https://www.airbnb.com/calendar/ical/7.ics", **extra}
        resp = self.client.post("/api/properties/prop-1/connections", json=payload)
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["connection"]

    def _sync_lines(self, platform: str = "Airbnb") -> list[dict]:
        resp = self.client.post(f"/api/properties/prop-1/sync/{platform}")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("application/x-ndjson"))
        return [json.loads(line) for line in resp.text.splitlines() if line.strip()]

    def _add_booking(self, start: str, end: str, **extra: object) -> dict:
        resp = self.client.post(
            "/api/properties/prop-1/bookings",
            json={"start_date": start, "end_date": end, **extra},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_round_trip(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["sync"]["upcoming_limit"], 5)

        resp = self.client.put("/api/config", json={"payload": {"sync": {"upcoming_limit": 2}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["sync"]["upcoming_limit"], 2)
        self.assertEqual(resp.json()["config"]["fetch"]["timeout_seconds"], 20)

        resp = self.client.put("/api/config", json={"payload": {"caldav": {"base_url": "x"}}})
        self.assertEqual(resp.status_code, 400)

    def test_connect_validates_input(self) -> None:
        cases = [
            {"platform": "Expedia", "feed_url": "https://example.com/cal.ics"},
            {"platform": "Airbnb", "feed_url": "not a url"},
            {"platform": "Airbnb", "feed_url": "https://example.com/cal.ics", "cadence_minutes": 7},
        ]
        for payload in cases:
            with self.subTest(payload=payload):
                resp = self.client.post("/api/properties/prop-1/connections", json=payload)
                self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/api/properties/prop-1/connections",
            json={"platform": "Airbnb", "feed_url": "ftp://example.com/cal.ics"},
        )
        self.assertEqual(resp.json()["detail"]["error"], "InvalidFeedURL")

        connection = self._connect(cadence_minutes=60)
        self.assertEqual(connection["cadence_minutes"], 60)
        self.assertIsNone(connection["last_synced_at"])
        listed = self.client.get("/api/properties/prop-1/connections").json()["connections"]
        self.assertEqual(len(listed), 1)

    def test_sync_streams_progress_and_imports(self) -> None:
        self.client.put("/api/properties/prop-1/rate", json={"nightly_rate": 100})
        self._connect()

        lines = self._sync_lines("airbnb")
        self.assertEqual([line["stage"] for line in lines], ["connect", "fetch", "classify", "import", "finalize"])
        self.assertEqual(lines[2]["message"], "Found 1 bookings, 1 blocked")
        result = lines[-1]["result"]
        self.assertEqual(result["imported_reservations"], 1)
        self.assertEqual(result["imported_blocks"], 1)
        self.assertEqual(result["upcoming"][0]["amount"], 400.0)

        bookings = self.client.get("/api/properties/prop-1/bookings").json()["bookings"]
        self.assertEqual(len(bookings), 1)
        blocked = self.client.get("/api/properties/prop-1/blocked-dates").json()["blocked_dates"]
        self.assertEqual(blocked[0]["nights"], 19)
        self.assertEqual(blocked[0]["reason"], "Platform block")

        again = self._sync_lines()
        self.assertEqual(again[-1]["result"]["imported_reservations"], 0)

        runs = self.client.get("/api/sync/status", params={"property_id": "prop-1"}).json()["runs"]
        self.assertEqual([run["status"] for run in runs], ["success", "success"])
        events = self.client.get("/api/audit/events", params={"action": "import_booking"}).json()["events"]
        self.assertEqual(len(events), 1)

    def test_sync_without_connection_is_404(self) -> None:
        resp = self.client.post("/api/properties/prop-1/sync/VRBO")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"]["error"], "ConnectionNotFound")
        resp = self.client.post("/api/properties/prop-1/sync/Expedia")
        self.assertEqual(resp.status_code, 400)

    def test_sync_failure_ends_stream_with_failed_line(self) -> None:
        self._connect()
        self.feed_client.fetch.side_effect = FetchFailed("HTTP 500", status_code=500)
        lines = self._sync_lines()
        self.assertEqual([line["stage"] for line in lines], ["connect", "failed"])
        self.assertEqual(lines[-1]["error"], "FetchFailed")
        self.assertEqual(self.client.get("/api/properties/prop-1/bookings").json()["bookings"], [])

    def test_unexpected_error_ends_stream_with_failed_line(self) -> None:
        self._connect()
        self.feed_client.fetch.side_effect = RuntimeError("decoder blew up")
        lines = self._sync_lines()
        self.assertEqual(lines[-1]["stage"], "failed")
        self.assertEqual(lines[-1]["error"], "RuntimeError")
        self.assertEqual(lines[-1]["message"], "decoder blew up")
        runs = self.client.get("/api/sync/status").json()["runs"]
        self.assertEqual(runs[0]["status"], "failed")

    def test_sync_due_runs_connections_never_synced(self) -> None:
        self._connect()
        resp = self.client.post("/api/sync/due")
        self.assertEqual(resp.status_code, 200)
        synced = resp.json()["synced"]
        self.assertEqual(len(synced), 1)
        self.assertEqual(synced[0]["platform"], "Airbnb")
        self.assertEqual(synced[0]["result"]["status"], "success")

        resp = self.client.post("/api/sync/due")
        self.assertEqual(resp.json()["synced"], [])

    def test_manual_booking_amount_and_validation(self) -> None:
        self.client.put("/api/properties/prop-1/rate", json={"nightly_rate": 80.5})
        created = self._add_booking("2099-03-01", "2099-03-03")
        self.assertEqual(created["booking"]["amount"], 161.0)
        self.assertEqual(created["booking"]["platform"], "Direct")
        self.assertEqual(created["booking"]["guest_label"], "Direct Guest")
        self.assertIsNone(created["booking"]["external_id"])
        self.assertEqual(created["conflicts_found"], 0)

        explicit = self._add_booking("2099-04-01", "2099-04-02", amount=50, guest_label="Sam")
        self.assertEqual(explicit["booking"]["amount"], 50.0)

        resp = self.client.post(
            "/api/properties/prop-1/bookings",
            json={"start_date": "2099-03-05", "end_date": "2099-03-05"},
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/api/properties/prop-1/bookings",
            json={"start_date": "2099-13-05", "end_date": "2099-03-06"},
        )
        self.assertEqual(resp.status_code, 422)

    def test_manual_block_reason_is_checked(self) -> None:
        resp = self.client.post(
            "/api/properties/prop-1/blocked-dates",
            json={"start_date": "2099-05-01", "end_date": "2099-05-04", "reason": "Maintenance", "note": "boiler"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["blocked_date"]["note"], "boiler")
        resp = self.client.post(
            "/api/properties/prop-1/blocked-dates",
            json={"start_date": "2099-05-01", "end_date": "2099-05-04", "reason": "Party"},
        )
        self.assertEqual(resp.status_code, 400)

    def test_conflict_resolution_flow(self) -> None:
        self._connect()
        self._sync_lines()
        airbnb_id = self.client.get("/api/properties/prop-1/bookings").json()["bookings"][0]["id"]
        created = self._add_booking("2099-02-03", "2099-02-07", platform="VRBO", guest_label="Kim")
        self.assertEqual(created["conflicts_found"], 1)
        direct_id = created["booking"]["id"]

        conflicts = self.client.get("/api/properties/prop-1/conflicts").json()["conflicts"]
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0]["overlap_nights"], 2)
        self.assertEqual(conflicts[0]["booking_a"]["id"], airbnb_id)

        resp = self.client.post(
            "/api/properties/prop-1/conflicts/resolve",
            json={"booking_a_id": direct_id, "booking_b_id": airbnb_id, "keep_booking_id": "nope"},
        )
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post(
            "/api/properties/prop-1/conflicts/resolve",
            json={"booking_a_id": direct_id, "booking_b_id": airbnb_id, "keep_booking_id": airbnb_id},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual(body["state"], "resolved")
        self.assertEqual(body["outcome"]["cancelled_booking_id"], direct_id)
        self.assertEqual(body["outcome"]["instructions"][0], "Open VRBO")
        self.assertEqual(body["remaining_conflicts"], 0)

        resp = self.client.post(
            "/api/properties/prop-1/conflicts/resolve",
            json={"booking_a_id": direct_id, "booking_b_id": airbnb_id, "keep_booking_id": airbnb_id},
        )
        self.assertEqual(resp.status_code, 404)

        resp = self.client.post(f"/api/bookings/{direct_id}/confirm-cancelled")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["booking"]["status"], "cancelled")
        self.assertEqual(self.client.post(f"/api/bookings/{direct_id}/confirm-cancelled").status_code, 409)
        self.assertEqual(self.client.post("/api/bookings/missing/confirm-cancelled").status_code, 404)

    def test_persistence_failure_is_503(self) -> None:
        store = self.app.state.context.state_store
        with mock.patch.object(store, "list_by_property", side_effect=PersistenceFailure("database is locked")):
            resp = self.client.get("/api/properties/prop-1/bookings")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json(), {"error": "PersistenceFailure", "message": "database is locked"})


if __name__ == "__main__":
    unittest.main()
