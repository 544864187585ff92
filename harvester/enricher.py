"""Best-effort attendance enrichment for harvested occurrences."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import List, Optional

from harvester.errors import HarvestError
from harvester.transport import CCBTransport, get_path
from processor.models import AttendanceSummary, LinkRow
from processor.normalizer import normalize_attendance

logger = logging.getLogger(__name__)


class AttendanceEnricher:
    """Attaches attendance_profile detail to LinkRows.

    Runs its own small worker pool, separate from the page harvester, since
    the attendance service is rate limited. A row whose fetch keeps failing
    is returned without attendance; it never aborts the batch.
    """

    SERVICE = 'attendance_profile'

    def __init__(
        self,
        transport: CCBTransport,
        concurrency: int = 3,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        dispatch_delay: float = 0.2
    ):
        """
        Initialize the enricher.

        Args:
            transport: Authenticated transport
            concurrency: Maximum attendance requests in flight
            max_attempts: Attempts per row before giving up
            base_delay: Backoff base in seconds, doubled after each failure
            dispatch_delay: Pause after each completed row
        """
        self.transport = transport
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.dispatch_delay = dispatch_delay

    def enrich(self, rows: List[LinkRow], include_attendees: bool = False) -> List[LinkRow]:
        """
        Fetch attendance for every row.

        Args:
            rows: Deduplicated LinkRows
            include_attendees: Also parse the attendee roster

        Returns:
            New list in the same order; rows with attendance carry it
        """
        if not rows:
            return []

        logger.info(f"Enriching {len(rows)} occurrences with attendance (workers={self.concurrency})")
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='attendance') as executor:
            summaries = list(executor.map(
                lambda row: self._enrich_one(row, include_attendees),
                rows
            ))

        enriched = [
            replace(row, attendance=summary) if summary else row
            for row, summary in zip(rows, summaries)
        ]
        attached = sum(1 for summary in summaries if summary)
        logger.info(f"Attached attendance to {attached} of {len(rows)} occurrences")
        return enriched

    def _enrich_one(self, row: LinkRow, include_attendees: bool) -> Optional[AttendanceSummary]:
        try:
            return self.fetch_with_retry(row, include_attendees)
        except HarvestError as e:
            logger.warning(
                f"Skipping attendance for event {row.event_id} on {row.occur_date} "
                f"after {self.max_attempts} attempts: {e}"
            )
            return None
        finally:
            time.sleep(self.dispatch_delay)

    def fetch_with_retry(self, row: LinkRow, include_attendees: bool) -> Optional[AttendanceSummary]:
        """
        Fetch one row's attendance with exponential backoff.

        Raises:
            HarvestError: The last failure once all attempts are used
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.fetch_attendance(row, include_attendees)
            except HarvestError as e:
                if attempt >= self.max_attempts:
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Attendance fetch failed for event {row.event_id} "
                    f"(attempt {attempt}/{self.max_attempts}): {e}. "
                    f"Retrying in {delay} seconds..."
                )
                time.sleep(delay)
        return None

    def fetch_attendance(self, row: LinkRow, include_attendees: bool) -> Optional[AttendanceSummary]:
        """Single attendance_profile call for a row's occurrence."""
        tree = self.transport.request(self.SERVICE, {
            'id': row.event_id,
            'occurrence': row.occur_date.isoformat()
        })
        node = get_path(tree, 'ccb_api.response.attendance')
        if not isinstance(node, dict):
            logger.debug(f"No attendance recorded for event {row.event_id} on {row.occur_date}")
            return None
        return normalize_attendance(node, include_attendees)
