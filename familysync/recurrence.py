"""Recurring event expansion and canonical rule text handling.

The structured ``RecurrenceRule(frequency, until)`` is the only shape the rest
of the package edits. Rule text is produced and parsed here, at the boundary.
Rules the structured model cannot represent keep their verbatim text in
``RecurrenceRule.raw`` and are expanded through ``dateutil.rrule``.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Iterable

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrulestr
from icalendar.prop import vRecur

from familysync.models import Event, Frequency, RecurrenceRule, parse_iso_datetime


DEFAULT_DURATION = timedelta(hours=1)
STRUCTURED_KEYS = {"FREQ", "UNTIL", "INTERVAL", "WKST"}
RULE_LINE_PATTERN = re.compile(r"^(?:RRULE:)?(FREQ=.*)$", re.IGNORECASE)

_STEPS = {
    Frequency.DAILY: lambda k: relativedelta(days=k),
    Frequency.WEEKLY: lambda k: relativedelta(weeks=k),
    Frequency.MONTHLY: lambda k: relativedelta(months=k),
    Frequency.YEARLY: lambda k: relativedelta(years=k),
}


def normalize_rule_text(text: str) -> str:
    """Extract the bare ``FREQ=...`` part from rule text.

    Accepts ``RRULE:FREQ=...`` as well as the multi-line
    ``DTSTART:...\\nRRULE:FREQ=...`` form some generators emit.
    """
    for line in re.split(r"\r?\n", str(text or "")):
        match = RULE_LINE_PATTERN.match(line.strip())
        if match:
            return match.group(1).strip()
    return ""


def _until_date(value: Any, zone: tzinfo | None) -> date | None:
    if isinstance(value, datetime):
        if value.tzinfo is not None and zone is not None:
            return value.astimezone(zone).date()
        return value.date()
    if isinstance(value, date):
        return value
    return None


def parse_rule(text: str, tz: tzinfo | None = None) -> RecurrenceRule | None:
    raw_text = str(text or "").strip()
    if not raw_text:
        return None
    rule_text = normalize_rule_text(raw_text)
    if not rule_text:
        return RecurrenceRule(raw=raw_text)
    try:
        parsed = vRecur.from_ical(rule_text)
    except ValueError:
        return RecurrenceRule(raw=rule_text)

    keys = {str(key).upper() for key in parsed.keys()}
    freq_values = parsed.get("FREQ") or []
    freq_text = str(freq_values[0]).upper() if freq_values else ""
    interval_values = parsed.get("INTERVAL") or [1]
    structured = (
        keys <= STRUCTURED_KEYS
        and freq_text in Frequency.__members__
        and int(interval_values[0]) == 1
    )
    if not structured:
        return RecurrenceRule(raw=rule_text)
    until_values = parsed.get("UNTIL") or []
    until = _until_date(until_values[0], tz) if until_values else None
    return RecurrenceRule(frequency=Frequency(freq_text), until=until)


def format_rule(rule: RecurrenceRule, all_day: bool = True) -> str:
    if rule.raw:
        return rule.raw
    if rule.frequency is None:
        raise ValueError("recurrence rule has neither a frequency nor raw text")
    parts = [f"FREQ={rule.frequency.value}"]
    if rule.until is not None:
        stamp = rule.until.strftime("%Y%m%d")
        parts.append(f"UNTIL={stamp}" if all_day else f"UNTIL={stamp}T235959")
    return ";".join(parts)


def create_rule(frequency: Frequency | str, until: date | None = None) -> RecurrenceRule:
    return RecurrenceRule(frequency=Frequency(str(getattr(frequency, "value", frequency)).upper()), until=until)


def _zone_for(event: Event, tz: tzinfo | None) -> tzinfo:
    return tz or event.start.tzinfo or timezone.utc


def _instance(event: Event, current: datetime, duration: timedelta) -> Event:
    millis = int(current.timestamp() * 1000)
    return event.with_updates(
        id=f"{event.id}_{millis}",
        start=current,
        end=current + duration,
        recurrence=None,
        exception_dates=[],
    )


def _first_index(start: datetime, frequency: Frequency, range_start: datetime) -> int:
    if range_start <= start:
        return 0
    lower = range_start.astimezone(start.tzinfo)
    if frequency == Frequency.DAILY:
        count = (lower.date() - start.date()).days
    elif frequency == Frequency.WEEKLY:
        count = (lower.date() - start.date()).days // 7
    elif frequency == Frequency.MONTHLY:
        count = (lower.year - start.year) * 12 + lower.month - start.month
    else:
        count = lower.year - start.year
    return max(0, count - 1)


def _expand_raw(
    event: Event,
    start: datetime,
    duration: timedelta,
    range_start: datetime,
    range_end: datetime,
    excluded: set[date],
) -> list[Event]:
    zone = start.tzinfo
    try:
        rule = rrulestr(event.recurrence.raw, dtstart=start.replace(tzinfo=None), ignoretz=True)
        occurrences = rule.between(
            range_start.astimezone(zone).replace(tzinfo=None),
            range_end.astimezone(zone).replace(tzinfo=None),
            inc=True,
        )
    except (ValueError, TypeError):
        return [event]
    instances: list[Event] = []
    for occurrence in occurrences:
        current = occurrence.replace(tzinfo=zone)
        if current.date() in excluded:
            continue
        instances.append(_instance(event, current, duration))
    return instances


def expand(
    event: Event,
    range_start: datetime,
    range_end: datetime,
    *,
    tz: tzinfo | None = None,
    strict: bool = True,
    default_duration: timedelta = DEFAULT_DURATION,
) -> list[Event]:
    """Materialize the occurrences of ``event`` visible in ``[range_start, range_end]``.

    Occurrence ``k`` is ``start + k * step`` computed from the anchor, so
    monthly and yearly series clamp to the last day of short months without
    drifting (Jan 31 -> Feb 29 -> Mar 31). Exception dates are compared with
    the occurrence's calendar date in ``tz``.

    A non-recurring event is returned as-is when its start is inside the range;
    with ``strict=False`` the upper bound is not enforced.
    """
    range_start = parse_iso_datetime(range_start)
    range_end = parse_iso_datetime(range_end)
    zone = _zone_for(event, tz)
    start = parse_iso_datetime(event.start).astimezone(zone)

    if event.recurrence is None:
        if start < range_start:
            return []
        if strict and start > range_end:
            return []
        return [event]

    duration = (event.end - event.start) if event.end is not None else default_duration
    excluded = set(event.exception_dates)
    if not event.recurrence.editable:
        return _expand_raw(event, start, duration, range_start, range_end, excluded)

    frequency = event.recurrence.frequency
    upper = range_end
    if event.recurrence.until is not None:
        until_end = datetime.combine(event.recurrence.until, time.max, tzinfo=zone)
        upper = min(upper, until_end)

    instances: list[Event] = []
    index = _first_index(start, frequency, range_start)
    while True:
        current = start + _STEPS[frequency](index)
        if current > upper:
            break
        if current >= range_start and current.date() not in excluded:
            instances.append(_instance(event, current, duration))
        index += 1
    return instances


def expand_all(
    events: Iterable[Event],
    range_start: datetime,
    range_end: datetime,
    **kwargs: Any,
) -> list[Event]:
    expanded: list[Event] = []
    for event in events:
        expanded.extend(expand(event, range_start, range_end, **kwargs))
    return sort_for_display(expanded)


def sort_for_display(instances: Iterable[Event]) -> list[Event]:
    return sorted(instances, key=lambda e: (e.start, not e.all_day, e.title.casefold()))


def base_event_id(instance_id: str) -> str:
    head, sep, tail = instance_id.rpartition("_")
    if sep and tail.isdigit():
        return head
    return instance_id


def exclude_occurrence(event: Event, day: date) -> Event:
    if event.recurrence is None:
        raise ValueError("exception dates only apply to recurring events")
    return event.with_updates(exception_dates=sorted(set(event.exception_dates) | {day}))


def restore_occurrence(event: Event, day: date) -> Event:
    return event.with_updates(exception_dates=[d for d in event.exception_dates if d != day])
