"""Normalizer turning raw CCB tree nodes into canonical records.

The CCB schema has drifted over the years, so each logical field is looked
up through an ordered list of candidate paths ("@id" for an attribute, "id"
for a child element, "group.@id" for a nested attribute, and so on). The
first candidate with a non-empty value wins.
"""
import logging
from datetime import date, datetime, time
from typing import Any, List, Optional, Sequence

from harvester.transport import as_list, get_path, node_text
from processor.models import AttendanceSummary, Attendee, Event, Group, Occurrence

logger = logging.getLogger(__name__)

GROUP_ID_FIELDS = ('@id', 'id', 'group_id', '@group_id')
GROUP_NAME_FIELDS = ('name', 'group_name', '@name')

EVENT_ID_FIELDS = ('@id', 'id', 'event_id', '@event_id')
EVENT_NAME_FIELDS = ('name', 'title', 'event_name')
EVENT_GROUP_ID_FIELDS = ('group.@id', 'group.id', 'group.@ccb_id', 'group.ccb_id', 'group_id')
EVENT_GROUP_NAME_FIELDS = ('group.name', 'group', 'group_name')
TIMEZONE_FIELDS = ('timezone', 'time_zone', '@timezone')
CREATED_FIELDS = ('created', 'date_created', 'created_date')
MODIFIED_FIELDS = ('modified', 'date_modified', 'modified_date')

START_DATETIME_FIELDS = ('start_datetime', 'start_dt', 'start', '@start')
START_DATE_FIELDS = ('start_date', 'date', 'event_date', 'occurrence_date', '@date', '#text')
START_TIME_FIELDS = ('start_time', 'time', 'event_time', '@start_time')
END_DATETIME_FIELDS = ('end_datetime', 'end_dt', 'end', '@end')
END_DATE_FIELDS = ('end_date', '@end_date')
END_TIME_FIELDS = ('end_time', '@end_time')

OCCURRENCE_ROOT_FIELDS = ('occurrences', 'occurrence', 'dates')

DEFAULT_START_TIME = '00:00:00'

DATETIME_FORMATS = [
    '%Y%m%d',             # compact, as in deep links
    '%Y%m%dT%H%M%S',
    '%m/%d/%Y',           # US format
    '%m/%d/%Y %I:%M %p',
    '%Y-%m-%d %I:%M %p',
]


def resolve(node: Any, candidates: Sequence[str]) -> str:
    """
    Resolve a field through ordered candidate paths.

    Args:
        node: Raw tree node
        candidates: Dotted paths in priority order

    Returns:
        Stripped text of the first non-empty candidate, or ''
    """
    if not isinstance(node, dict):
        return ''
    for path in candidates:
        value = node_text(get_path(node, path))
        if value:
            return value
    return ''


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 (or close variant) timestamp.

    Returns:
        datetime, or None if the value cannot be parsed
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass

    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    logger.debug(f"Unparsable date/time value: {value!r}")
    return None


def parse_date(value: Optional[str]) -> Optional[date]:
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def _combine(day: str, clock: str) -> Optional[datetime]:
    """Join separate date and time fields, tolerating a date that already has a time."""
    parsed_day = parse_datetime(day)
    if parsed_day is None:
        return None
    if parsed_day.time() != time(0) or 'T' in day or ' ' in day.strip():
        return parsed_day

    day_text = parsed_day.date().isoformat()
    parsed_clock = parse_datetime(f"{day_text}T{clock}") or parse_datetime(f"{day_text} {clock}")
    return parsed_clock or parsed_day


def _resolve_start(node: Any) -> Optional[datetime]:
    full = resolve(node, START_DATETIME_FIELDS)
    if full:
        return parse_datetime(full)

    day = resolve(node, START_DATE_FIELDS)
    if day:
        return _combine(day, resolve(node, START_TIME_FIELDS) or DEFAULT_START_TIME)
    return None


def _resolve_end(node: Any, start: Optional[datetime]) -> Optional[datetime]:
    full = resolve(node, END_DATETIME_FIELDS)
    if full:
        return parse_datetime(full)

    day = resolve(node, END_DATE_FIELDS)
    clock = resolve(node, END_TIME_FIELDS)
    if day:
        return _combine(day, clock or DEFAULT_START_TIME)
    if clock and start is not None:
        return _combine(start.date().isoformat(), clock)
    return None


def _occurrence_nodes(node: dict) -> list:
    """Collect raw occurrence entries under any known wrapper element."""
    for key in OCCURRENCE_ROOT_FIELDS:
        root = node.get(key)
        if root in (None, ''):
            continue
        if isinstance(root, dict) and 'occurrence' in root:
            return as_list(root['occurrence'])
        return as_list(root)
    return []


def _to_occurrence(raw: Any) -> Optional[Occurrence]:
    if isinstance(raw, str):
        start = parse_datetime(raw)
        return Occurrence(start=start) if start else None

    start = _resolve_start(raw)
    if start is None:
        return None
    return Occurrence(start=start, end=_resolve_end(raw, start))


def normalize_group(node: Any) -> Optional[Group]:
    """
    Normalize a group_profiles record.

    Returns:
        Group, or None when the record has no usable id or name
    """
    group_id = resolve(node, GROUP_ID_FIELDS)
    name = resolve(node, GROUP_NAME_FIELDS)
    if not group_id or not name:
        logger.debug(f"Dropping group without id/name (id={group_id!r}, name={name!r})")
        return None
    return Group(id=group_id, name=name)


def normalize_event(node: Any) -> Event:
    """
    Normalize an event_profiles record.

    Occurrences come from an explicit occurrence list when one is present;
    otherwise the event's own start/end becomes its single occurrence.
    Unparsable dates are treated as absent.
    """
    start = _resolve_start(node)
    end = _resolve_end(node, start)

    occurrences: List[Occurrence] = []
    if isinstance(node, dict):
        for raw in _occurrence_nodes(node):
            occurrence = _to_occurrence(raw)
            if occurrence:
                occurrences.append(occurrence)
    if not occurrences and start is not None:
        occurrences.append(Occurrence(start=start, end=end))

    return Event(
        id=resolve(node, EVENT_ID_FIELDS),
        name=resolve(node, EVENT_NAME_FIELDS),
        start=start,
        end=end,
        timezone=resolve(node, TIMEZONE_FIELDS) or None,
        group_id=resolve(node, EVENT_GROUP_ID_FIELDS) or None,
        group_name=resolve(node, EVENT_GROUP_NAME_FIELDS) or None,
        created=parse_datetime(resolve(node, CREATED_FIELDS)),
        modified=parse_datetime(resolve(node, MODIFIED_FIELDS)),
        occurrences=occurrences
    )


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.lower()
    if lowered in ('true', '1'):
        return True
    if lowered in ('false', '0'):
        return False
    return None


def _parse_head_count(value: str) -> Optional[int]:
    if not value:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if not number.is_integer() or number < 0:
        return None
    return int(number)


def _normalize_attendee(node: Any) -> Attendee:
    if isinstance(node, str):
        return Attendee(name=node or None)

    full_name = ' '.join(
        part for part in (resolve(node, ('first_name',)), resolve(node, ('last_name',))) if part
    )
    return Attendee(
        id=resolve(node, ('@id', 'id')) or None,
        name=full_name or resolve(node, ('name', 'full_name')) or None,
        status=resolve(node, ('status', '@status')) or None
    )


def normalize_attendance(node: Any, include_attendees: bool) -> Optional[AttendanceSummary]:
    """
    Normalize an attendance_profile(s) record.

    Args:
        node: The <attendance> (or attendance_profiles <event>) node
        include_attendees: Parse the roster; when False the field is omitted

    Returns:
        AttendanceSummary, or None when the event id or occurrence is missing
    """
    event_id = resolve(node, ('@id', 'id', 'event_id'))
    occurrence = parse_date(resolve(node, ('@occurrence', 'occurrence')))
    if not event_id or occurrence is None:
        return None

    attendees = None
    if include_attendees:
        roster = node.get('attendees', node.get('attendee'))
        if isinstance(roster, dict) and 'attendee' in roster:
            roster = roster['attendee']
        attendees = [_normalize_attendee(p) for p in as_list(roster)]

    return AttendanceSummary(
        event_id=event_id,
        occurrence=occurrence,
        title=resolve(node, ('name', 'event_name')) or None,
        did_not_meet=_parse_bool(resolve(node, ('did_not_meet', '@did_not_meet'))),
        head_count=_parse_head_count(resolve(node, ('head_count', '@head_count'))),
        topic=resolve(node, ('topic',)) or None,
        notes=resolve(node, ('notes',)) or None,
        prayer_requests=resolve(node, ('prayer_requests',)) or None,
        info=resolve(node, ('info',)) or None,
        attendees=attendees
    )
