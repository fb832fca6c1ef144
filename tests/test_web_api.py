import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from familysync.web_api import create_app

ICS_TEXT = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Example//EN",
        "BEGIN:VEVENT",
        "UID:school-trip@example.com",
        "SUMMARY:School trip",
        "DTSTART;VALUE=DATE:20240315",
        "DTEND;VALUE=DATE:20240316",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)


class WebApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        os.environ["FAMILYSYNC_CONFIG_PATH"] = str(Path(self.temp_dir.name) / "config.yaml")
        os.environ["FAMILYSYNC_STATE_PATH"] = str(Path(self.temp_dir.name) / "state.db")
        self.client = TestClient(create_app())

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _put_todos(self, *contents: str) -> dict:
        current = self.client.get("/api/collections/todos").json()["items"]
        items = current + [{"content": c, "user_id": "u1"} for c in contents]
        resp = self.client.put("/api/collections/todos", json={"items": items})
        self.assertEqual(resp.status_code, 200)
        return resp.json()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_put_collection_reconciles_and_persists_ids(self) -> None:
        data = self._put_todos("Walk dog")
        self.assertEqual(data["result"]["created"], 1)
        self.assertEqual(data["result"]["status"], "success")
        self.assertEqual(data["items"][0]["id_state"], "persisted")
        self.assertEqual(len(data["items"][0]["id"]), 15)
        self.assertEqual(self.client.get("/api/notifications").json()["notifications"], [])

    def test_unknown_collection_returns_404(self) -> None:
        self.assertEqual(self.client.get("/api/collections/pets").status_code, 404)

    def test_invalid_item_returns_400(self) -> None:
        resp = self.client.put("/api/collections/events", json={"items": [{"title": "No start"}]})
        self.assertEqual(resp.status_code, 400)

    def test_undo_and_redo(self) -> None:
        self._put_todos("Dishes")
        state = self.client.get("/api/history").json()
        self.assertTrue(state["can_undo"])

        undo = self.client.post("/api/history/undo").json()
        self.assertTrue(undo["applied"])
        self.assertTrue(undo["can_redo"])
        self.assertEqual(self.client.get("/api/collections/todos").json()["items"], [])

        redo = self.client.post("/api/history/redo").json()
        self.assertTrue(redo["applied"])
        items = self.client.get("/api/collections/todos").json()["items"]
        self.assertEqual([x["content"] for x in items], ["Dishes"])

        self.assertFalse(self.client.post("/api/history/redo").json()["applied"])

    def test_expand_recurring_event(self) -> None:
        event = {
            "title": "Swimming",
            "start": "2024-01-01T17:00:00+00:00",
            "end": "2024-01-01T18:00:00+00:00",
            "recurrence": {"frequency": "WEEKLY"},
            "exception_dates": ["2024-01-08"],
        }
        self.client.put("/api/collections/events", json={"items": [event]})
        resp = self.client.get(
            "/api/events/expand",
            params={"start": "2024-01-01T00:00:00+00:00", "end": "2024-01-31T23:59:59+00:00"},
        )
        self.assertEqual(resp.status_code, 200)
        starts = [x["start"][:10] for x in resp.json()["instances"]]
        self.assertEqual(starts, ["2024-01-01", "2024-01-15", "2024-01-22", "2024-01-29"])

    def test_expand_rejects_bad_range(self) -> None:
        bad = self.client.get("/api/events/expand", params={"start": "nope", "end": "2024-01-01T00:00:00Z"})
        self.assertEqual(bad.status_code, 400)
        reversed_range = self.client.get(
            "/api/events/expand",
            params={"start": "2024-02-01T00:00:00+00:00", "end": "2024-01-01T00:00:00+00:00"},
        )
        self.assertEqual(reversed_range.status_code, 400)

    def test_export_filters_by_participant(self) -> None:
        events = [
            {"title": "Football", "start": "2024-03-02T10:00:00+00:00", "participant_ids": ["kid"]},
            {"title": "Book club", "start": "2024-03-03T19:00:00+00:00", "participant_ids": ["parent"]},
        ]
        self.client.put("/api/collections/events", json={"items": events})
        resp = self.client.get("/api/events/export.ics", params={"user_id": "kid"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("text/calendar"))
        self.assertIn("SUMMARY:Football", resp.text)
        self.assertNotIn("Book club", resp.text)

    def test_export_audits_dropped_rule(self) -> None:
        event = {
            "title": "Odd",
            "start": "2024-03-02T10:00:00+00:00",
            "recurrence": {"raw": "FREQ=FORTNIGHTLY"},
        }
        self.client.put("/api/collections/events", json={"items": [event]})
        resp = self.client.get("/api/events/export.ics")
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("RRULE", resp.text)
        dropped = self.client.get("/api/audit/events", params={"action": "export_rule_dropped"}).json()["events"]
        self.assertEqual(len(dropped), 1)

    def test_import_adds_events_once(self) -> None:
        first = self.client.post("/api/events/import", json={"text": ICS_TEXT, "participant_ids": ["u1"]})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["imported"], 1)
        second = self.client.post("/api/events/import", json={"text": ICS_TEXT})
        self.assertEqual(second.json()["imported"], 0)
        self.assertEqual(second.json()["duplicates"], 1)
        events = self.client.get("/api/collections/events").json()["items"]
        self.assertEqual(len(events), 1)
        self.assertTrue(events[0]["all_day"])
        self.assertEqual(events[0]["participant_ids"], ["u1"])

    def test_import_rejects_non_calendar(self) -> None:
        resp = self.client.post("/api/events/import", json={"text": "hello"})
        self.assertEqual(resp.status_code, 400)

    def test_sync_runs_and_retry(self) -> None:
        self._put_todos("Bins")
        runs = self.client.get("/api/sync/runs").json()["runs"]
        self.assertEqual(runs[0]["collection"], "todos")
        summary = self.client.post("/api/sync/retry").json()["summary"]
        self.assertEqual(summary["retried"], 0)
        self.assertEqual(self.client.get("/api/sync/pending").json()["pending"], [])

    def test_audit_events_filter(self) -> None:
        self._put_todos("Audit me")
        events = self.client.get("/api/audit/events", params={"action": "remap"}).json()["events"]
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["collection"], "todos")

    def test_shopping_suggestions(self) -> None:
        items = [{"content": "Oat milk", "added_by": "u1"}, {"content": "Olives", "added_by": "u1"}]
        self.client.put("/api/collections/shopping", json={"items": items})
        resp = self.client.get("/api/shopping/suggestions", params={"prefix": "oa"})
        self.assertEqual(resp.json()["suggestions"], ["Oat milk"])

    def test_notifications_drain(self) -> None:
        context = self.client.app.state.context
        context.realtime.handle("shopping", "create", {"id": "abcdefghijklmno", "content": "Eggs", "addedBy": "partner"})
        first = self.client.get("/api/notifications").json()["notifications"]
        self.assertEqual(first, ["New shopping item: Eggs"])
        self.assertEqual(self.client.get("/api/notifications").json()["notifications"], [])

    def test_config_password_masked_and_preserved(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"remote": {"username": "u", "password": "secret"}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["remote"]["password"], "***")
        self.client.put("/api/config", json={"payload": {"remote": {"password": "***"}}})
        context = self.client.app.state.context
        self.assertEqual(context.config_manager.load().remote.password, "secret")
        self.assertEqual(self.client.get("/api/config").json()["remote"]["password"], "***")


if __name__ == "__main__":
    unittest.main()
