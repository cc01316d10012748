"""Wake-up alarm decision for the day after ``now``.

One call to :func:`synchronize` reads the upcoming events, picks the first
block of events on the target day, subtracts preparation and travel time,
applies the earliest/latest window, and tells the alarm sink to schedule
or cancel the alarm for that day. Nothing is kept between calls.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import List, Optional, Sequence, Tuple

from .config import EngineConfig
from .models import Event, ScheduledAlarm, SyncResult, SyncStatus, TravelEstimate
from .sinks import AlarmSink
from .sources import EventSource
from .travel import TravelEstimator

logger = logging.getLogger(__name__)

_EPOCH = date(1970, 1, 1)


def day_identifier(day: date) -> int:
    """Days since 1970-01-01, folded into a signed 32-bit int."""
    days = day.toordinal() - _EPOCH.toordinal()
    return ((days + 2**31) % 2**32) - 2**31


def target_day_bounds(now: datetime, tz: tzinfo) -> Tuple[date, datetime, datetime]:
    target = now.astimezone(tz).date() + timedelta(days=1)
    start = datetime.combine(target, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(target + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return target, start, end


def merge_event_blocks(events: Sequence[Event], threshold: timedelta) -> List[List[Event]]:
    """Group ascending events into blocks.

    An event joins the current block when it starts less than ``threshold``
    after the latest end seen in that block.
    """
    blocks: List[List[Event]] = []
    block_end: Optional[datetime] = None
    for e in events:
        if blocks and block_end is not None and e.start - block_end < threshold:
            blocks[-1].append(e)
            block_end = max(block_end, e.end)
        else:
            blocks.append([e])
            block_end = e.end
    return blocks


def find_first_block_start(events: Sequence[Event], threshold: timedelta) -> datetime:
    blocks = merge_event_blocks(events, threshold)
    first = blocks[0]
    logger.debug("First block: %d event(s) starting %s", len(first), first[0].start.isoformat())
    return first[0].start


def alarm_label(event: Event) -> str:
    return f"Wake up for: {event.title}"


def resolve_travel(
    event: Event,
    estimator: Optional[TravelEstimator],
    origin: Optional[Tuple[float, float]],
) -> TravelEstimate:
    location = event.location
    has_location = bool(location and location.strip())
    if estimator is None or origin is None or not has_location:
        return TravelEstimate(
            has_provider=estimator is not None,
            has_origin=origin is not None,
            has_event_location=has_location,
            event_location=location,
        )

    lat, lng = origin
    try:
        duration, error = estimator(lat, lng, location)
    except Exception as exc:
        logger.warning("Travel estimator raised for %r: %s", location, exc)
        duration, error = None, f"{type(exc).__name__}: {exc}"
    if duration is None and error is None:
        error = "Provider returned no duration"

    return TravelEstimate(
        has_provider=True,
        has_origin=True,
        has_event_location=True,
        event_location=location,
        duration=duration,
        error=error,
    )


def synchronize(
    now: datetime,
    source: EventSource,
    sink: AlarmSink,
    config: EngineConfig,
    tz: tzinfo,
    estimator: Optional[TravelEstimator] = None,
    origin: Optional[Tuple[float, float]] = None,
) -> SyncResult:
    """Run one synchronization pass and push the outcome to ``sink``.

    Errors from ``source`` and ``sink`` propagate; the caller owns retries.
    """
    target, target_start, target_end = target_day_bounds(now, tz)
    day_id = day_identifier(target)

    if not config.enabled:
        sink.cancel(day_id)
        logger.info("Engine disabled; cancelled alarm for %s", target.isoformat())
        return SyncResult(status=SyncStatus.DISABLED, target_day=target)

    window_end = now.astimezone(timezone.utc) + config.look_ahead
    all_events = [e for e in source.read_events(now, window_end) if e.start < window_end]
    target_events = [e for e in all_events if target_start <= e.start < target_end]
    logger.debug(
        "Read %d event(s), %d on %s", len(all_events), len(target_events), target.isoformat()
    )

    if not target_events:
        sink.cancel(day_id)
        logger.info("No events on %s; cancelled alarm", target.isoformat())
        return SyncResult(status=SyncStatus.NO_EVENTS, target_day=target, events=all_events)

    anchor = find_first_block_start(target_events, config.event_merge_threshold)
    target_event = target_events[0]

    travel = resolve_travel(target_event, estimator, origin)
    lead = config.prep_time + (travel.duration or timedelta(0))
    # lead comes off the instant, not the wall-clock time
    candidate = anchor.astimezone(timezone.utc) - lead
    alarm_time = candidate.astimezone(tz).time().replace(tzinfo=None)

    if alarm_time > config.latest_alarm:
        sink.cancel(day_id)
        logger.info("Alarm %s is after %s; not scheduling", alarm_time, config.latest_alarm)
        return SyncResult(
            status=SyncStatus.ALARM_TOO_LATE, target_day=target, events=all_events, travel=travel
        )

    if alarm_time < config.earliest_alarm:
        trigger = datetime.combine(target, config.earliest_alarm, tzinfo=tz)
    else:
        trigger = candidate.astimezone(tz)

    if trigger < now:
        sink.cancel(day_id)
        logger.info("Alarm %s is already in the past; not scheduling", trigger.isoformat())
        return SyncResult(
            status=SyncStatus.ALARM_IN_PAST, target_day=target, events=all_events, travel=travel
        )

    alarm = ScheduledAlarm(
        trigger_time=trigger,
        target_event=target_event,
        label=alarm_label(target_event),
        day_id=day_id,
        travel_time=travel.duration,
    )
    sink.schedule(alarm)
    logger.info("Alarm set for %s (%s)", trigger.astimezone(tz).isoformat(), alarm.label)
    return SyncResult(
        status=SyncStatus.ALARM_SET, target_day=target, events=all_events, alarm=alarm, travel=travel
    )
