from __future__ import annotations
from datetime import date, datetime
import logging
from typing import List, Optional
from zoneinfo import ZoneInfo

import caldav
from caldav.elements import dav
from caldav.lib.error import AuthorizationError

from .models import Event

ICLOUD_CALDAV_URL = "https://caldav.icloud.com/"
_ICAL_COMPAT_MSG = "Ical data was modified to avoid compatibility issues"

logger = logging.getLogger(__name__)


class _IcalCompatibilityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return _ICAL_COMPAT_MSG not in record.getMessage()


def _install_ical_compatibility_filter() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(f, _IcalCompatibilityFilter) for f in root_logger.filters):
        return
    root_logger.addFilter(_IcalCompatibilityFilter())


def _as_local(value, tz: ZoneInfo) -> datetime:
    if isinstance(value, datetime):
        return value.astimezone(tz) if value.tzinfo else value.replace(tzinfo=tz)
    return datetime.combine(value, datetime.min.time(), tzinfo=tz)


def _text(vevent, name: str) -> Optional[str]:
    prop = getattr(vevent, name, None)
    if prop is None:
        return None
    return str(prop.value)


def vevent_to_event(vevent, calendar_name: str, tz: ZoneInfo) -> Event:
    dtstart = vevent.dtstart.value
    dtend = vevent.dtend.value if hasattr(vevent, "dtend") else dtstart

    # dtstart may be date (all-day) or datetime
    all_day = isinstance(dtstart, date) and not isinstance(dtstart, datetime)
    start = _as_local(dtstart, tz)
    end = _as_local(dtend, tz)

    return Event(
        id=_text(vevent, "uid") or f"{calendar_name}:{start.isoformat()}",
        title=_text(vevent, "summary") or "(No title)",
        start=start,
        end=max(start, end),
        all_day=all_day,
        calendar_id=calendar_name,
        location=_text(vevent, "location"),
        source="icloud",
    )


class ICloudCalendarSource:
    def __init__(
        self,
        username: str,
        app_password: str,
        tz: ZoneInfo,
        calendar_name_allowlist: Optional[List[str]] = None,
        url: str = ICLOUD_CALDAV_URL,
    ) -> None:
        self.username = username
        self.app_password = app_password
        self.tz = tz
        self.calendar_name_allowlist = calendar_name_allowlist or []
        self.url = url

    def read_events(self, start: datetime, end: datetime) -> List[Event]:
        _install_ical_compatibility_filter()

        client = caldav.DAVClient(url=self.url, username=self.username, password=self.app_password)
        try:
            calendars = client.principal().calendars()
        except AuthorizationError as exc:
            logger.warning("iCloud rejected credentials; treating as no events: %s", exc)
            return []

        events: List[Event] = []
        for cal in calendars:
            name = getattr(cal, "name", None) or cal.get_properties([dav.DisplayName()]).get(dav.DisplayName(), "")
            if self.calendar_name_allowlist and name not in self.calendar_name_allowlist:
                continue

            for r in cal.date_search(start, end, expand=True):
                vevent = getattr(r.vobject_instance, "vevent", None)
                if vevent is None:
                    continue
                event = vevent_to_event(vevent, name, self.tz)
                if start <= event.start < end:
                    events.append(event)

        events.sort(key=lambda e: e.start)
        return events
