from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import List, Optional

@dataclass(frozen=True)
class Event:
    id: str
    title: str
    start: datetime             # timezone-aware
    end: datetime               # timezone-aware
    all_day: bool = False
    calendar_id: str = ""
    location: Optional[str] = None
    source: str = "memory"      # "google" / "icloud" / "memory"

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Event {self.id!r} ends before it starts")


@dataclass(frozen=True)
class TravelEstimate:
    """What happened when resolving travel time for the target event."""

    has_provider: bool
    has_origin: bool
    has_event_location: bool
    event_location: Optional[str] = None
    duration: Optional[timedelta] = None
    error: Optional[str] = None

    @property
    def attempted(self) -> bool:
        return self.has_provider and self.has_origin and self.has_event_location

    @property
    def succeeded(self) -> bool:
        return self.duration is not None


@dataclass(frozen=True)
class ScheduledAlarm:
    trigger_time: datetime
    target_event: Event
    label: str                  # "Wake up for: <title>"
    day_id: int                 # stable per target day, see engine.day_identifier
    travel_time: Optional[timedelta] = None
    snooze_count: int = 0


class SyncStatus(str, Enum):
    ALARM_SET = "ALARM_SET"
    NO_EVENTS = "NO_EVENTS"
    ALARM_TOO_LATE = "ALARM_TOO_LATE"
    ALARM_IN_PAST = "ALARM_IN_PAST"
    DISABLED = "DISABLED"


@dataclass(frozen=True)
class SyncResult:
    status: SyncStatus
    target_day: date
    events: List[Event] = field(default_factory=list)
    alarm: Optional[ScheduledAlarm] = None
    travel: Optional[TravelEstimate] = None
