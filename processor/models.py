"""Data models for CCB harvesting."""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional


@dataclass(frozen=True)
class Group:
    """CCB group (circle) from group_profiles."""
    id: str
    name: str


@dataclass
class Occurrence:
    """One scheduled instance of an event."""
    start: datetime
    end: Optional[datetime] = None


@dataclass
class Event:
    """Normalized event from event_profiles."""
    id: str
    name: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timezone: Optional[str] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    created: Optional[datetime] = None
    modified: Optional[datetime] = None
    occurrences: List[Occurrence] = field(default_factory=list)


@dataclass
class Attendee:
    """Person on an attendance roster."""
    id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in vars(self).items() if v is not None}


@dataclass
class AttendanceSummary:
    """Attendance detail for one event occurrence."""
    event_id: str
    occurrence: date
    title: Optional[str] = None
    did_not_meet: Optional[bool] = None
    head_count: Optional[int] = None
    topic: Optional[str] = None
    notes: Optional[str] = None
    prayer_requests: Optional[str] = None
    info: Optional[str] = None
    attendees: Optional[List[Attendee]] = None

    def to_dict(self) -> dict:
        """Flat dict with absent fields omitted."""
        data = {
            'event_id': self.event_id,
            'occurrence': self.occurrence.isoformat(),
            'title': self.title,
            'did_not_meet': self.did_not_meet,
            'head_count': self.head_count,
            'topic': self.topic,
            'notes': self.notes,
            'prayer_requests': self.prayer_requests,
            'info': self.info,
        }
        if self.attendees is not None:
            data['attendees'] = [a.to_dict() for a in self.attendees]
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class LinkRow:
    """Final output unit: one event occurrence with its deep link."""
    event_id: str
    title: str
    occur_date: date
    link: str
    attendance: Optional[AttendanceSummary] = None

    @property
    def key(self) -> tuple:
        return (self.event_id, self.occur_date)

    def to_dict(self) -> dict:
        data = {
            'event_id': self.event_id,
            'title': self.title,
            'occur_date': self.occur_date.isoformat(),
            'link': self.link,
        }
        if self.attendance is not None:
            data['attendance'] = self.attendance.to_dict()
        return data


@dataclass
class HarvestRequest:
    """Inbound parameters for one harvest run."""
    start_date: str
    end_date: str
    group_prefix: Optional[str] = None
    group_ids: Optional[List[str]] = None
    event_id: Optional[str] = None
    include_attendance: bool = False
    include_attendees: bool = False


@dataclass
class HarvestResult:
    """Outcome of a harvest run."""
    groups: List[Group]
    events_seen: int
    rows: List[LinkRow]
    range_start: Optional[date] = None
    range_end: Optional[date] = None


@dataclass
class SyncResult:
    """Result of sync operation."""
    added: int
    updated: int
    deleted: int
    errors: list[str]
