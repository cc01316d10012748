from __future__ import annotations
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple
import json
import logging
import os
import tempfile
import threading

from .config import EngineConfig
from .errors import SinkError
from .models import Event, ScheduledAlarm

logger = logging.getLogger(__name__)

SNOOZE_SUFFIX = " (snoozed)"

# one lock per state file, shared by every sink instance in the process
_PATH_LOCKS: Dict[str, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        return _PATH_LOCKS.setdefault(key, threading.RLock())


class AlarmSink(Protocol):
    def schedule(self, alarm: ScheduledAlarm) -> None:
        """Schedule ``alarm``, replacing any alarm with the same day id."""
        ...

    def cancel(self, day_id: int) -> None:
        """Remove the alarm for ``day_id``; no-op if there is none."""
        ...

    def can_schedule_exact(self) -> bool:
        ...


class MemoryAlarmSink:
    """Keeps alarms in a dict and records every call, for dry runs and tests."""

    def __init__(self) -> None:
        self.alarms: Dict[int, ScheduledAlarm] = {}
        self.calls: List[Tuple[str, int]] = []

    def schedule(self, alarm: ScheduledAlarm) -> None:
        self.calls.append(("schedule", alarm.day_id))
        self.alarms[alarm.day_id] = alarm

    def cancel(self, day_id: int) -> None:
        self.calls.append(("cancel", day_id))
        self.alarms.pop(day_id, None)

    def can_schedule_exact(self) -> bool:
        return True


def _event_to_dict(e: Event) -> Dict[str, Any]:
    return {
        "id": e.id,
        "title": e.title,
        "start": e.start.isoformat(),
        "end": e.end.isoformat(),
        "all_day": e.all_day,
        "calendar_id": e.calendar_id,
        "location": e.location,
        "source": e.source,
    }


def _event_from_dict(data: Dict[str, Any]) -> Event:
    return Event(
        id=str(data.get("id", "")),
        title=str(data.get("title", "")),
        start=datetime.fromisoformat(data["start"]),
        end=datetime.fromisoformat(data["end"]),
        all_day=bool(data.get("all_day", False)),
        calendar_id=str(data.get("calendar_id", "")),
        location=data.get("location"),
        source=str(data.get("source", "memory")),
    )


def alarm_to_dict(alarm: ScheduledAlarm) -> Dict[str, Any]:
    return {
        "trigger_time": alarm.trigger_time.isoformat(),
        "label": alarm.label,
        "day_id": alarm.day_id,
        "travel_seconds": None if alarm.travel_time is None else int(alarm.travel_time.total_seconds()),
        "snooze_count": alarm.snooze_count,
        "target_event": _event_to_dict(alarm.target_event),
    }


def alarm_from_dict(data: Dict[str, Any]) -> ScheduledAlarm:
    travel = data.get("travel_seconds")
    return ScheduledAlarm(
        trigger_time=datetime.fromisoformat(data["trigger_time"]),
        target_event=_event_from_dict(data["target_event"]),
        label=str(data.get("label", "")),
        day_id=int(data["day_id"]),
        travel_time=None if travel is None else timedelta(seconds=int(travel)),
        snooze_count=int(data.get("snooze_count", 0)),
    )


class JsonFileAlarmSink:
    """Alarms persisted in a JSON file keyed by day id.

    Whatever actually rings (a systemd timer, a cron job polling
    ``alarmcal due``) reads this file; scheduling the same day twice
    overwrites the entry.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = _lock_for(self.path)

    def schedule(self, alarm: ScheduledAlarm) -> None:
        with self._lock:
            alarms = self._read()
            alarms[str(alarm.day_id)] = alarm_to_dict(alarm)
            self._write(alarms)

    def cancel(self, day_id: int) -> None:
        with self._lock:
            alarms = self._read()
            if alarms.pop(str(day_id), None) is not None:
                self._write(alarms)

    def can_schedule_exact(self) -> bool:
        return True

    def load_alarms(self) -> List[ScheduledAlarm]:
        alarms = [alarm_from_dict(v) for v in self._read().values()]
        return sorted(alarms, key=lambda a: a.trigger_time)

    def get(self, day_id: int) -> Optional[ScheduledAlarm]:
        raw = self._read().get(str(day_id))
        return None if raw is None else alarm_from_dict(raw)

    def due_alarms(self, now: datetime) -> List[ScheduledAlarm]:
        return [a for a in self.load_alarms() if a.trigger_time <= now]

    def dismiss(self, day_id: int) -> bool:
        with self._lock:
            existed = self.get(day_id) is not None
            self.cancel(day_id)
        return existed

    def snooze(self, day_id: int, now: datetime, config: EngineConfig) -> Optional[ScheduledAlarm]:
        """Push the alarm ``config.snooze_duration`` past ``now``.

        Returns None when there is no such alarm or it has already been
        snoozed ``config.max_snooze_count`` times.
        """
        with self._lock:
            current = self.get(day_id)
            if current is None:
                return None
            if current.snooze_count >= config.max_snooze_count:
                logger.info("Alarm %d already snoozed %d time(s)", day_id, current.snooze_count)
                return None

            label = current.label if current.label.endswith(SNOOZE_SUFFIX) else current.label + SNOOZE_SUFFIX
            snoozed = replace(
                current,
                trigger_time=now + config.snooze_duration,
                label=label,
                snooze_count=current.snooze_count + 1,
            )
            self.schedule(snoozed)
        return snoozed

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SinkError(f"Cannot read alarm state {self.path}: {exc}") from exc
        return dict(data.get("alarms", {}))

    def _write(self, alarms: Dict[str, Any]) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.path.parent, prefix=self.path.name + ".", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                json.dump({"alarms": alarms}, tmp, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise SinkError(f"Cannot write alarm state {self.path}: {exc}") from exc
