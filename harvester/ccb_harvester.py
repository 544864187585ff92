"""Harvester for CCB groups, events and attendance."""
import logging
from datetime import date, datetime
from typing import Dict, List, Optional
from urllib.parse import quote

from harvester.config import HarvestConfig
from harvester.enricher import AttendanceEnricher
from harvester.errors import HarvestError, PaginationError
from harvester.paginator import extract_records, paginate
from harvester.transport import CCBTransport
from processor.models import Event, Group, HarvestRequest, HarvestResult, LinkRow
from processor.normalizer import (
    EVENT_GROUP_NAME_FIELDS,
    normalize_attendance,
    normalize_event,
    normalize_group,
    resolve,
)
from processor.range_filter import dedupe_rows, filter_occurrences, sort_rows

logger = logging.getLogger(__name__)

GROUPS_PATH = 'ccb_api.response.groups.group'
EVENTS_PATHS = (
    'ccb_api.response.events.event',
    'ccb_api.response.event',
)
ATTENDANCE_EVENTS_PATH = 'ccb_api.response.events.event'


def parse_query_date(value: str, label: str) -> date:
    """
    Parse a YYYY-MM-DD query date.

    Raises:
        ValueError: If the value is not a valid calendar date in that format
    """
    try:
        return datetime.strptime((value or '').strip(), '%Y-%m-%d').date()
    except ValueError:
        raise ValueError(f"Invalid {label} date {value!r}. Use YYYY-MM-DD format") from None


class CCBHarvester:
    """Harvests CCB groups and events into deep-linked occurrence rows."""

    def __init__(self, config: HarvestConfig, transport: Optional[CCBTransport] = None):
        """
        Initialize the harvester.

        Args:
            config: Harvest configuration (validated here, before any call)
            transport: Optional pre-built transport
        """
        self.config = config.validate()
        self.transport = transport or CCBTransport(self.config)

    def build_link(self, event_id: str, occur_date: date) -> str:
        """Deep link into the CCB web UI for one occurrence."""
        path = self.config.link_template.format(
            event_id=quote(event_id, safe=''),
            occur=occur_date.strftime('%Y%m%d')
        )
        return f"{self.config.site_url}{path}"

    def fetch_groups(self, name_prefix: Optional[str] = None) -> List[Group]:
        """
        Fetch all groups, optionally keeping only names with a prefix.

        Args:
            name_prefix: Case-insensitive group name prefix

        Returns:
            Unique groups in harvest order

        Raises:
            PaginationError: If any page of group_profiles fails
        """
        raw_groups = paginate(
            self.transport,
            'group_profiles',
            {'include_participants': 'false'},
            GROUPS_PATH,
            page_size=self.config.page_size,
            concurrency=self.config.concurrency,
            max_pages=self.config.max_pages
        )

        prefix = (name_prefix or '').strip().lower()
        groups: Dict[str, Group] = {}
        for node in raw_groups:
            group = normalize_group(node)
            if group is None or group.id in groups:
                continue
            if prefix and not group.name.strip().lower().startswith(prefix):
                continue
            groups[group.id] = group

        logger.info(
            f"Found {len(groups)} groups"
            + (f" matching prefix '{name_prefix}'" if prefix else '')
            + f" out of {len(raw_groups)} raw records"
        )
        return list(groups.values())

    def fetch_events(
        self,
        group_id: Optional[str] = None,
        modified_since: Optional[str] = None
    ) -> List[Event]:
        """
        Fetch and normalize event_profiles.

        Args:
            group_id: Restrict the upstream query to one group
            modified_since: Only events modified since this YYYY-MM-DD date

        Raises:
            PaginationError: If any page of event_profiles fails
        """
        params = {'include_guest_list': 'false', 'include_image_link': 'false'}
        if group_id:
            params['group_id'] = group_id
        if modified_since:
            params['modified_since'] = modified_since

        raw_events = paginate(
            self.transport,
            'event_profiles',
            params,
            EVENTS_PATHS,
            page_size=self.config.page_size,
            concurrency=self.config.concurrency,
            max_pages=self.config.max_pages
        )
        return self._normalize_events(raw_events, group_id)

    def fetch_public_calendar(self, range_start: date, range_end: date) -> List[Event]:
        """
        Fetch the public calendar for a date range.

        Only events published to the campus-wide calendar appear here; their
        group id is carried as group.@ccb_id.

        Raises:
            PaginationError: If the listing call fails
        """
        service = 'public_calendar_listing'
        try:
            tree = self.transport.request(service, {
                'date_start': range_start.isoformat(),
                'date_end': range_end.isoformat()
            })
        except HarvestError as e:
            raise PaginationError(service, e) from e
        return self._normalize_events(extract_records(tree, EVENTS_PATHS))

    def fetch_event(self, event_id: str) -> Optional[Event]:
        """
        Fetch a single event by id with event_profile.

        Returns:
            The event, or None when the response carries no event record

        Raises:
            PaginationError: If the call fails
        """
        service = 'event_profile'
        try:
            tree = self.transport.request(service, {'event_id': event_id})
        except HarvestError as e:
            raise PaginationError(service, e) from e

        records = extract_records(tree, EVENTS_PATHS)
        if not records:
            logger.info(f"No event returned for id {event_id}")
            return None
        event = normalize_event(records[0])
        if not event.id:
            event.id = event_id
        return event

    def _normalize_events(self, raw_events: List[dict], group_id: Optional[str] = None) -> List[Event]:
        events = []
        for node in raw_events:
            event = normalize_event(node)
            if not event.id:
                logger.debug("Dropping event without id")
                continue
            if group_id and not event.group_id:
                event.group_id = group_id
            events.append(event)
        logger.info(f"Normalized {len(events)} events from {len(raw_events)} raw records")
        return events

    def harvest(self, request: HarvestRequest) -> HarvestResult:
        """
        Run one harvest: groups, events, range filter, optional attendance.

        With an event id only that event is fetched, and the group selector
        becomes optional. When event_profiles returns no events at all, the
        public calendar listing for the range is used instead.

        Args:
            request: Group selector or event id, date range and enrichment flags

        Returns:
            HarvestResult with rows sorted by occurrence date, then event id

        Raises:
            ValueError: If dates or the selector are invalid
            PaginationError: If group or event harvesting fails
        """
        range_start = parse_query_date(request.start_date, 'start')
        range_end = parse_query_date(request.end_date, 'end')
        if range_end < range_start:
            raise ValueError("End date must not be before start date")

        group_ids = [str(g).strip() for g in (request.group_ids or []) if str(g).strip()]
        prefix = (request.group_prefix or '').strip()
        event_id = str(request.event_id or '').strip()
        if not group_ids and not prefix and not event_id:
            raise ValueError("A group name prefix, group ids or an event id is required")

        logger.info(
            f"Harvest started: groups={group_ids or repr(prefix)}, "
            f"event={event_id or '-'}, range={range_start}..{range_end}"
        )

        if group_ids:
            groups = [Group(id=g, name='') for g in group_ids]
        elif prefix:
            groups = self.fetch_groups(prefix)
            if not groups:
                logger.info(f"No groups match prefix '{prefix}'")
                return HarvestResult(
                    groups=[], events_seen=0, rows=[],
                    range_start=range_start, range_end=range_end
                )
        else:
            groups = []

        group_names = {g.id: g.name for g in groups}
        if event_id:
            event = self.fetch_event(event_id)
            events = [event] if event else []
        else:
            scope = group_ids[0] if len(group_ids) == 1 else None
            events = self.fetch_events(group_id=scope)
            if not events:
                logger.info("event_profiles returned no events, falling back to public_calendar_listing")
                events = [
                    e for e in self.fetch_public_calendar(range_start, range_end)
                    if e.group_id in group_names
                ]

        for event in events:
            if not event.group_name and event.group_id in group_names:
                event.group_name = group_names[event.group_id] or None

        rows = filter_occurrences(
            events,
            set(group_names) if groups else None,
            range_start,
            range_end,
            self.build_link
        )
        rows = sort_rows(rows)

        if request.include_attendance and rows:
            enricher = AttendanceEnricher(
                self.transport,
                concurrency=self.config.enrich_concurrency
            )
            rows = enricher.enrich(rows, include_attendees=request.include_attendees)

        logger.info(f"Harvest complete: {len(rows)} occurrences from {len(events)} events")
        return HarvestResult(
            groups=groups,
            events_seen=len(events),
            rows=rows,
            range_start=range_start,
            range_end=range_end
        )

    def search_attendance(
        self,
        name_term: str,
        start_date: str,
        end_date: str,
        include_attendees: bool = False
    ) -> List[LinkRow]:
        """
        Find recorded attendance by event or group name in a date range.

        Uses attendance_profiles, which returns attendance together with the
        occurrence, so no per-row enrichment calls are needed.

        Raises:
            ValueError: If dates or the search term are invalid
            PaginationError: If any page of attendance_profiles fails
        """
        range_start = parse_query_date(start_date, 'start')
        range_end = parse_query_date(end_date, 'end')
        term = (name_term or '').strip().lower()
        if not term:
            raise ValueError("Group name search term is required")

        raw_events = paginate(
            self.transport,
            'attendance_profiles',
            {'start_date': range_start.isoformat(), 'end_date': range_end.isoformat()},
            ATTENDANCE_EVENTS_PATH,
            page_size=self.config.page_size,
            concurrency=self.config.concurrency,
            max_pages=self.config.max_pages
        )

        rows = []
        for node in raw_events:
            summary = normalize_attendance(node, include_attendees)
            if summary is None:
                continue
            event_name = summary.title or ''
            group_name = resolve(node, EVENT_GROUP_NAME_FIELDS)
            if term not in event_name.lower() and term not in group_name.lower():
                continue
            rows.append(LinkRow(
                event_id=summary.event_id,
                title=event_name,
                occur_date=summary.occurrence,
                link=self.build_link(summary.event_id, summary.occurrence),
                attendance=summary
            ))

        rows = sort_rows(dedupe_rows(rows))
        logger.info(f"Matched {len(rows)} attendance records for '{name_term}'")
        return rows

    def test_connection(self) -> bool:
        """Check credentials with a single one-record group_profiles call."""
        try:
            self.transport.request('group_profiles', {'page': 1, 'per_page': 1})
            return True
        except HarvestError as e:
            logger.error(f"CCB connection test failed: {e}")
            return False
