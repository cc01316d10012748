from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence

from .config import DEFAULT_ENGINE_CONFIG, EngineConfig
from .models import Event


class EventSource(Protocol):
    def read_events(self, start: datetime, end: datetime) -> List[Event]:
        """Events starting in [start, end), ascending by start time."""
        ...


def filter_events(events: Iterable[Event], config: EngineConfig) -> List[Event]:
    allowed = set(config.calendar_ids)
    kept: List[Event] = []
    for e in events:
        if config.skip_all_day_events and e.all_day:
            continue
        if allowed and e.calendar_id not in allowed:
            continue
        kept.append(e)
    return kept


def _in_window(e: Event, start: datetime, end: datetime) -> bool:
    return start <= e.start < end


def _sort_key(e: Event):
    return (e.start, e.end, e.id)


class MemoryEventSource:
    """Serves a fixed list of events, e.g. for dry runs and tests."""

    def __init__(self, events: Sequence[Event], config: Optional[EngineConfig] = None) -> None:
        self._events = list(events)
        self._config = config or DEFAULT_ENGINE_CONFIG

    def read_events(self, start: datetime, end: datetime) -> List[Event]:
        windowed = [e for e in self._events if _in_window(e, start, end)]
        return sorted(filter_events(windowed, self._config), key=_sort_key)


class CompositeEventSource:
    """Merges several calendar backends into one ordered stream.

    The same occurrence (id + start) reported by two backends is kept once.
    """

    def __init__(self, sources: Sequence[EventSource], config: Optional[EngineConfig] = None) -> None:
        self._sources = list(sources)
        self._config = config or DEFAULT_ENGINE_CONFIG

    def read_events(self, start: datetime, end: datetime) -> List[Event]:
        merged: List[Event] = []
        seen = set()
        for source in self._sources:
            for e in source.read_events(start, end):
                key = (e.id, e.start)
                if key in seen or not _in_window(e, start, end):
                    continue
                seen.add(key)
                merged.append(e)
        return sorted(filter_events(merged, self._config), key=_sort_key)
