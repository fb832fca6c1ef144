from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.prop import vRecur

from familysync.models import Event, new_local_id
from familysync.recurrence import DEFAULT_DURATION, format_rule, parse_rule


PRODID = "-//FamilySync//App//EN"
UNTITLED = "Untitled Event"


class InterchangeError(ValueError):
    """The document could not be read as a calendar at all."""


@dataclass
class ImportResult:
    events: list[Event] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _local(value: datetime, zone: tzinfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def _floating(value: datetime, zone: tzinfo) -> datetime:
    # Wall-clock time without a zone, so 09:00 stays 09:00 wherever it is opened.
    return _local(value, zone).replace(tzinfo=None, microsecond=0)


def _build_vevent(event: Event, zone: tzinfo, stamp: datetime, warnings: list[str] | None = None) -> ICEvent:
    vevent = ICEvent()
    vevent.add("UID", event.ical_uid or event.id)
    vevent.add("DTSTAMP", stamp.astimezone(timezone.utc).replace(microsecond=0))
    if event.all_day:
        start_date = _local(event.start, zone).date()
        vevent.add("DTSTART", start_date)
        if event.end is not None:
            # Stored all-day ends are inclusive; the interchange end is exclusive.
            end_date = max(_local(event.end, zone).date(), start_date)
            vevent.add("DTEND", end_date + timedelta(days=1))
    else:
        vevent.add("DTSTART", _floating(event.start, zone))
        if event.end is not None:
            vevent.add("DTEND", _floating(event.end, zone))
    vevent.add("SUMMARY", event.title or "")
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    if event.recurrence is not None:
        try:
            vevent.add("RRULE", vRecur.from_ical(format_rule(event.recurrence, all_day=event.all_day)))
        except ValueError as exc:
            if warnings is not None:
                warnings.append(f"{event.ical_uid or event.id}: recurrence rule not exported: {exc}")
    return vevent


def export_events(
    events: Iterable[Event],
    *,
    tz: tzinfo = timezone.utc,
    now: datetime | None = None,
    warnings: list[str] | None = None,
) -> str:
    """Serialize events as one VCALENDAR document.

    A recurrence rule the interchange format rejects is left out of its
    VEVENT and reported in ``warnings`` when a list is passed.
    """
    calendar_obj = ICalendar()
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("CALSCALE", "GREGORIAN")
    calendar_obj.add("METHOD", "PUBLISH")
    stamp = now or datetime.now(timezone.utc)
    for event in events:
        calendar_obj.add_component(_build_vevent(event, tz, stamp, warnings))
    return calendar_obj.to_ical().decode("utf-8")


def export_for_user(events: Iterable[Event], user_id: str, **kwargs: Any) -> str:
    return export_events([e for e in events if user_id in e.participant_ids], **kwargs)


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _rule_text(vevent: ICEvent) -> str:
    prop = vevent.get("RRULE")
    if prop is None:
        return ""
    if isinstance(prop, list):
        prop = prop[0]
    return prop.to_ical().decode("utf-8")


def _parse_vevent(
    vevent: ICEvent,
    zone: tzinfo,
    participant_ids: list[str],
    default_duration: timedelta,
) -> Event:
    dtstart_raw = _decoded(vevent, "DTSTART")
    if dtstart_raw is None:
        raise ValueError("DTSTART missing")
    dtend_raw = _decoded(vevent, "DTEND")
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)

    if all_day:
        start = datetime.combine(dtstart_raw, time.min, tzinfo=zone)
        end_date = dtstart_raw
        if dtend_raw is not None:
            exclusive_end = dtend_raw.date() if isinstance(dtend_raw, datetime) else dtend_raw
            if exclusive_end > dtstart_raw:
                end_date = exclusive_end - timedelta(days=1)
        end = datetime.combine(end_date, time.min, tzinfo=zone)
    else:
        if not isinstance(dtstart_raw, datetime):
            raise ValueError("DTSTART is not a date or date-time")
        start = _local(dtstart_raw, zone)
        if isinstance(dtend_raw, datetime):
            end = _local(dtend_raw, zone)
        else:
            duration = _decoded(vevent, "DURATION")
            end = start + (duration if isinstance(duration, timedelta) else default_duration)

    rule_text = _rule_text(vevent)
    return Event(
        id=new_local_id(),
        title=str(vevent.get("SUMMARY", "") or "").strip() or UNTITLED,
        description=str(vevent.get("DESCRIPTION", "") or ""),
        start=start,
        end=end,
        all_day=all_day,
        participant_ids=list(participant_ids),
        recurrence=parse_rule(rule_text, tz=zone) if rule_text else None,
        ical_uid=str(vevent.get("UID", "") or "").strip() or uuid.uuid4().hex,
    )


def import_events(
    text: str,
    *,
    tz: tzinfo = timezone.utc,
    participant_ids: Iterable[str] = (),
    default_duration: timedelta = DEFAULT_DURATION,
) -> ImportResult:
    """Parse every VEVENT of an iCalendar document into local events.

    The whole import fails with ``InterchangeError`` only when the document is
    not a calendar; a single unusable VEVENT is reported in ``skipped``.
    Imported events get fresh local ids and keep the file's UID as
    ``ical_uid``. Exception dates are not imported.
    """
    if not text or "BEGIN:VCALENDAR" not in text.upper():
        raise InterchangeError("Failed to parse calendar file.")
    try:
        calendars = ICalendar.from_ical(text, multiple=True)
    except (ValueError, IndexError, KeyError) as exc:
        raise InterchangeError("Failed to parse calendar file.") from exc

    participants = [str(x) for x in participant_ids]
    result = ImportResult()
    for calendar_obj in calendars:
        for vevent in calendar_obj.walk("VEVENT"):
            try:
                result.events.append(_parse_vevent(vevent, tz, participants, default_duration))
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                uid = str(vevent.get("UID", "") or "?")
                result.skipped.append(f"{uid}: {exc}")
    return result


def merge_imported(existing: Iterable[Event], imported: Iterable[Event]) -> list[Event]:
    """Drop imported events already known locally by interchange UID.

    Exported events without an external UID carry their internal id as UID,
    so those ids count as known too.
    """
    known: set[str] = set()
    for event in existing:
        known.add(event.id)
        if event.ical_uid:
            known.add(event.ical_uid)
    fresh: list[Event] = []
    for event in imported:
        if event.ical_uid and event.ical_uid in known:
            continue
        if event.ical_uid:
            known.add(event.ical_uid)
        fresh.append(event)
    return fresh
