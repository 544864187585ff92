"""Date-range and group filtering of event occurrences into LinkRows."""
import logging
from datetime import date, datetime, time
from typing import Callable, Collection, Iterable, List, Optional

from processor.models import Event, LinkRow

logger = logging.getLogger(__name__)

UNTITLED = '(untitled)'

LinkBuilder = Callable[[str, date], str]


def _wall_clock(value: datetime) -> datetime:
    """Drop tzinfo so aware and naive timestamps compare on local wall time."""
    return value.replace(tzinfo=None)


def _matches_group(event: Event, group_ids: Optional[Collection[str]]) -> bool:
    if group_ids is None:
        return True
    # Events without a group id come from group-scoped queries and pass.
    if not event.group_id:
        return True
    return event.group_id in group_ids


def filter_occurrences(
    events: Iterable[Event],
    group_ids: Optional[Collection[str]],
    range_start: date,
    range_end: date,
    link_for: LinkBuilder
) -> List[LinkRow]:
    """
    Expand events into LinkRows for occurrences inside the query range.

    An occurrence [start, end or start] is kept when it overlaps
    [range_start 00:00, range_end 23:59:59.999999], both ends inclusive,
    and its event belongs to the target group set (None disables group
    filtering). Duplicate (event_id, occur_date) keys are dropped, first
    seen wins.

    Args:
        events: Normalized events in harvest order
        group_ids: Target group ids, or None for all groups
        range_start: First day of the query range
        range_end: Last day of the query range
        link_for: Builds the deep link for (event_id, occur_date)

    Returns:
        Deduplicated LinkRows in iteration order
    """
    window_start = datetime.combine(range_start, time.min)
    window_end = datetime.combine(range_end, time.max)

    rows: List[LinkRow] = []
    skipped_group = 0
    skipped_range = 0

    for event in events:
        if not _matches_group(event, group_ids):
            skipped_group += 1
            continue

        for occurrence in event.occurrences:
            if occurrence.start is None:
                continue
            start = _wall_clock(occurrence.start)
            end = _wall_clock(occurrence.end) if occurrence.end else start
            if end < start:
                logger.debug(f"Skipping inverted occurrence of event {event.id}: {start} > {end}")
                continue
            if start > window_end or end < window_start:
                skipped_range += 1
                continue

            occur_date = start.date()
            rows.append(LinkRow(
                event_id=event.id,
                title=event.name or UNTITLED,
                occur_date=occur_date,
                link=link_for(event.id, occur_date)
            ))

    deduped = dedupe_rows(rows)
    logger.info(
        f"Range filter kept {len(deduped)} occurrences "
        f"({skipped_group} events outside groups, {skipped_range} occurrences outside range, "
        f"{len(rows) - len(deduped)} duplicates)"
    )
    return deduped


def dedupe_rows(rows: Iterable[LinkRow]) -> List[LinkRow]:
    """Keep the first row for each (event_id, occur_date)."""
    seen = set()
    unique = []
    for row in rows:
        if row.key in seen:
            continue
        seen.add(row.key)
        unique.append(row)
    return unique


def sort_rows(rows: Iterable[LinkRow]) -> List[LinkRow]:
    """Deterministic display order: occurrence date, then event id."""
    return sorted(rows, key=lambda row: (row.occur_date, row.event_id))
