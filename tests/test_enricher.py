"""Unit tests for AttendanceEnricher."""
import threading
from datetime import date
from unittest.mock import patch

import pytest

from harvester.enricher import AttendanceEnricher
from harvester.errors import ParseError, RequestTimeout, UpstreamHTTPError
from harvester.transport import parse_xml
from processor.models import LinkRow


def attendance_xml(event_id, occurrence, head_count=8):
    return parse_xml(f"""
        <ccb_api><response>
          <attendance id="{event_id}" occurrence="{occurrence}">
            <name>Circle {event_id}</name>
            <did_not_meet>false</did_not_meet>
            <head_count>{head_count}</head_count>
            <notes>Notes for {event_id}</notes>
            <attendees><attendee id="1"><name>Ann</name><status>Regular</status></attendee></attendees>
          </attendance>
        </response></ccb_api>
    """)


class ScriptedTransport:
    """Fails a scripted number of times per event id, then succeeds."""

    def __init__(self, failures=None, error=None):
        self.failures = dict(failures or {})
        self.error = error or UpstreamHTTPError(429, "Rate limited")
        self.calls = []
        self.lock = threading.Lock()

    def request(self, service, params=None, method='GET'):
        with self.lock:
            self.calls.append((service, dict(params)))
            remaining = self.failures.get(params['id'], 0)
            if remaining:
                self.failures[params['id']] = remaining - 1
                raise self.error
        return attendance_xml(params['id'], params['occurrence'])


@pytest.fixture
def rows():
    return [
        LinkRow("101", "A", date(2025, 8, 4), "link-101"),
        LinkRow("102", "B", date(2025, 8, 11), "link-102"),
        LinkRow("103", "C", date(2025, 8, 18), "link-103"),
    ]


@patch('harvester.enricher.time.sleep')
class TestAttendanceEnricher:
    """Test cases for AttendanceEnricher.enrich."""

    def test_attaches_attendance_to_every_row(self, mock_sleep, rows):
        transport = ScriptedTransport()
        enricher = AttendanceEnricher(transport)

        enriched = enricher.enrich(rows, include_attendees=False)

        assert [r.event_id for r in enriched] == ["101", "102", "103"]
        assert all(r.attendance is not None for r in enriched)
        assert enriched[1].attendance.occurrence == date(2025, 8, 11)
        assert enriched[1].attendance.head_count == 8
        assert enriched[1].attendance.attendees is None
        assert rows[0].attendance is None

    def test_request_parameters(self, mock_sleep, rows):
        transport = ScriptedTransport()

        AttendanceEnricher(transport).enrich(rows[:1])

        assert transport.calls == [
            ('attendance_profile', {'id': '101', 'occurrence': '2025-08-04'})
        ]

    def test_include_attendee_roster(self, mock_sleep, rows):
        enriched = AttendanceEnricher(ScriptedTransport()).enrich(rows[:1], include_attendees=True)

        assert [a.name for a in enriched[0].attendance.attendees] == ["Ann"]

    def test_retry_then_success(self, mock_sleep, rows):
        """Two failures then a success leaves the successful payload on the row."""
        transport = ScriptedTransport(failures={"102": 2})
        enricher = AttendanceEnricher(transport)

        enriched = enricher.enrich(rows)

        assert enriched[1].attendance is not None
        assert enriched[1].attendance.notes == "Notes for 102"
        assert len([c for c in transport.calls if c[1]['id'] == "102"]) == 3
        backoff = [c.args[0] for c in mock_sleep.call_args_list if c.args[0] != 0.2]
        assert backoff == [0.5, 1.0]

    def test_exhausted_retries_skip_row_only(self, mock_sleep, rows):
        """A row failing every attempt has no attendance; the others still get theirs."""
        transport = ScriptedTransport(failures={"101": 5})
        enricher = AttendanceEnricher(transport)

        enriched = enricher.enrich(rows)

        assert enriched[0].attendance is None
        assert enriched[1].attendance is not None
        assert enriched[2].attendance is not None
        assert len([c for c in transport.calls if c[1]['id'] == "101"]) == 3

    @pytest.mark.parametrize("error", [
        RequestTimeout("attendance_profile", 20),
        ParseError("bad xml"),
        UpstreamHTTPError(500, "boom"),
    ])
    def test_error_kinds_are_isolated(self, mock_sleep, rows, error):
        transport = ScriptedTransport(failures={"103": 3}, error=error)

        enriched = AttendanceEnricher(transport).enrich(rows)

        assert enriched[2].attendance is None
        assert enriched[0].attendance is not None

    def test_missing_attendance_node(self, mock_sleep, rows):
        """A response without an attendance record is not an error and is not retried."""
        class EmptyTransport:
            calls = 0

            def request(self, service, params=None, method='GET'):
                EmptyTransport.calls += 1
                return parse_xml("<ccb_api><response><service>attendance_profile</service></response></ccb_api>")

        enriched = AttendanceEnricher(EmptyTransport(), concurrency=1).enrich(rows[:1])

        assert enriched[0].attendance is None
        assert EmptyTransport.calls == 1

    def test_dispatch_delay_after_each_row(self, mock_sleep, rows):
        AttendanceEnricher(ScriptedTransport()).enrich(rows)

        assert [c.args[0] for c in mock_sleep.call_args_list].count(0.2) == len(rows)

    def test_empty_input(self, mock_sleep):
        assert AttendanceEnricher(ScriptedTransport()).enrich([]) == []

    def test_concurrency_is_bounded(self, mock_sleep):
        """No more than the configured number of fetches run at once."""
        active = 0
        peak = 0
        lock = threading.Lock()
        release = threading.Event()

        class SlowTransport:
            def request(self, service, params=None, method='GET'):
                nonlocal active, peak
                with lock:
                    active += 1
                    peak = max(peak, active)
                release.wait(0.05)
                with lock:
                    active -= 1
                return attendance_xml(params['id'], params['occurrence'])

        many = [LinkRow(str(i), "X", date(2025, 8, 1), "l") for i in range(10)]

        enriched = AttendanceEnricher(SlowTransport(), concurrency=3).enrich(many)

        assert len(enriched) == 10
        assert peak <= 3
