import unittest
from datetime import date, datetime, timedelta, timezone

from dateutil import tz as dateutil_tz

from familysync.ical_codec import (
    PRODID,
    InterchangeError,
    export_events,
    export_for_user,
    import_events,
    merge_imported,
)
from familysync.models import Event, Frequency, IdState, RecurrenceRule


UTC = timezone.utc
STAMP = datetime(2024, 2, 1, 12, 0, tzinfo=UTC)


def _all_day(event_id: str = "e1", **kwargs) -> Event:
    day = datetime(2024, 3, 1, tzinfo=UTC)
    return Event(id=event_id, title=kwargs.pop("title", "Holiday"), start=day, end=day, all_day=True, **kwargs)


def _unfold(text: str) -> str:
    return text.replace("\r\n ", "").replace("\r\n", "\n")


class ExportTests(unittest.TestCase):
    def test_all_day_end_is_exclusive(self) -> None:
        text = _unfold(export_events([_all_day()], now=STAMP))
        self.assertIn("DTSTART;VALUE=DATE:20240301", text)
        self.assertIn("DTEND;VALUE=DATE:20240302", text)
        self.assertIn("UID:e1", text)
        self.assertIn("DTSTAMP:20240201T120000Z", text)

    def test_calendar_header(self) -> None:
        text = _unfold(export_events([], now=STAMP))
        self.assertIn("BEGIN:VCALENDAR", text)
        self.assertIn("VERSION:2.0", text)
        self.assertIn(f"PRODID:{PRODID}", text)
        self.assertIn("METHOD:PUBLISH", text)

    def test_timed_event_exported_as_local_wall_clock(self) -> None:
        berlin = dateutil_tz.gettz("Europe/Berlin")
        event = Event(
            id="e2",
            title="Parents evening",
            description="Room 4\nBring notes",
            start=datetime(2024, 3, 5, 17, 0, tzinfo=UTC),
            end=datetime(2024, 3, 5, 18, 0, tzinfo=UTC),
            ical_uid="external-uid@example.com",
        )
        text = _unfold(export_events([event], tz=berlin, now=STAMP))
        self.assertIn("DTSTART:20240305T180000", text)
        self.assertIn("DTEND:20240305T190000", text)
        self.assertIn("UID:external-uid@example.com", text)
        self.assertIn("DESCRIPTION:Room 4\\nBring notes", text)

    def test_recurring_event_exports_rule(self) -> None:
        event = _all_day(
            recurrence=RecurrenceRule(frequency=Frequency.WEEKLY, until=date(2024, 4, 1)),
            exception_dates=[date(2024, 3, 8)],
        )
        text = _unfold(export_events([event], now=STAMP))
        self.assertIn("RRULE:FREQ=WEEKLY;UNTIL=20240401", text)
        self.assertNotIn("EXDATE", text)

    def test_unexportable_rule_is_reported(self) -> None:
        event = _all_day("odd", recurrence=RecurrenceRule(raw="FREQ=FORTNIGHTLY"))
        warnings: list[str] = []
        text = _unfold(export_events([event], now=STAMP, warnings=warnings))
        self.assertIn("UID:odd", text)
        self.assertNotIn("RRULE", text)
        self.assertEqual(len(warnings), 1)
        self.assertTrue(warnings[0].startswith("odd: recurrence rule not exported"))

    def test_export_for_user_filters_participants(self) -> None:
        events = [
            _all_day("mine", participant_ids=["u1"]),
            _all_day("theirs", participant_ids=["u2"]),
        ]
        text = _unfold(export_for_user(events, "u1", now=STAMP))
        self.assertIn("UID:mine", text)
        self.assertNotIn("UID:theirs", text)


class ImportTests(unittest.TestCase):
    def test_all_day_round_trip(self) -> None:
        text = export_events([_all_day(ical_uid="holiday-1")], now=STAMP)
        result = import_events(text, participant_ids=["u1"])
        self.assertEqual(result.skipped, [])
        self.assertEqual(len(result.events), 1)
        event = result.events[0]
        self.assertTrue(event.all_day)
        self.assertEqual(event.start.date(), date(2024, 3, 1))
        self.assertEqual(event.end.date(), date(2024, 3, 1))
        self.assertEqual(event.ical_uid, "holiday-1")
        self.assertEqual(event.participant_ids, ["u1"])
        self.assertEqual(event.id_state, IdState.LOCAL)
        self.assertNotEqual(event.id, "e1")

    def test_timed_event_converted_to_local_zone(self) -> None:
        berlin = dateutil_tz.gettz("Europe/Berlin")
        text = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:abc\r\nDTSTAMP:20240101T000000Z\r\n"
            "DTSTART:20240301T090000Z\r\nDURATION:PT30M\r\nSUMMARY:Call\r\n"
            "END:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        event = import_events(text, tz=berlin).events[0]
        self.assertEqual(event.start.hour, 10)
        self.assertEqual(event.end - event.start, timedelta(minutes=30))
        self.assertFalse(event.all_day)

    def test_defaults_for_missing_fields(self) -> None:
        text = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nDTSTART:20240301T090000Z\r\nEND:VEVENT\r\n"
            "END:VCALENDAR\r\n"
        )
        event = import_events(text, tz=UTC).events[0]
        self.assertEqual(event.title, "Untitled Event")
        self.assertTrue(event.ical_uid)
        self.assertEqual(event.end - event.start, timedelta(hours=1))

    def test_unsupported_rule_kept_verbatim(self) -> None:
        text = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:r1\r\nDTSTART:20240301T090000Z\r\n"
            "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=FR\r\nSUMMARY:Football\r\n"
            "END:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        event = import_events(text, tz=UTC).events[0]
        self.assertFalse(event.recurrence.editable)
        self.assertIn("INTERVAL=2", event.recurrence.raw)
        self.assertIn("BYDAY=FR", event.recurrence.raw)

    def test_structured_rule_imported(self) -> None:
        text = export_events(
            [_all_day(recurrence=RecurrenceRule(frequency=Frequency.MONTHLY, until=date(2024, 6, 1)))],
            now=STAMP,
        )
        event = import_events(text, tz=UTC).events[0]
        self.assertEqual(event.recurrence, RecurrenceRule(frequency=Frequency.MONTHLY, until=date(2024, 6, 1)))

    def test_bad_event_is_skipped(self) -> None:
        text = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:broken\r\nSUMMARY:No start\r\nEND:VEVENT\r\n"
            "BEGIN:VEVENT\r\nUID:ok\r\nDTSTART;VALUE=DATE:20240301\r\nSUMMARY:Fine\r\nEND:VEVENT\r\n"
            "END:VCALENDAR\r\n"
        )
        result = import_events(text, tz=UTC)
        self.assertEqual([x.ical_uid for x in result.events], ["ok"])
        self.assertEqual(len(result.skipped), 1)
        self.assertTrue(result.skipped[0].startswith("broken"))

    def test_not_a_calendar_raises(self) -> None:
        with self.assertRaises(InterchangeError):
            import_events("just some text")
        with self.assertRaises(InterchangeError):
            import_events("")


class MergeImportedTests(unittest.TestCase):
    def test_known_uids_are_dropped(self) -> None:
        existing = [_all_day("e1", ical_uid="known"), _all_day("e2")]
        imported = [
            _all_day("n1", ical_uid="known"),
            _all_day("n2", ical_uid="e2"),
            _all_day("n3", ical_uid="new"),
            _all_day("n4", ical_uid="new"),
        ]
        fresh = merge_imported(existing, imported)
        self.assertEqual([x.id for x in fresh], ["n3"])


if __name__ == "__main__":
    unittest.main()
