from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from alarmcal.engine import day_identifier, find_first_block_start, merge_event_blocks, target_day_bounds
from alarmcal.models import Event

TZ = ZoneInfo("America/New_York")


def _event(name: str, start_hhmm: str, end_hhmm: str) -> Event:
    def at(hhmm: str) -> datetime:
        hh, mm = hhmm.split(":")
        return datetime(2024, 3, 11, int(hh), int(mm), tzinfo=TZ)

    return Event(id=name, title=name, start=at(start_hhmm), end=at(end_hhmm))


def test_back_to_back_events_form_one_block():
    events = [
        _event("a", "08:00", "08:15"),
        _event("b", "08:20", "09:00"),
        _event("c", "09:10", "09:30"),
        _event("d", "11:00", "12:00"),
    ]

    blocks = merge_event_blocks(events, timedelta(minutes=30))

    assert [[e.id for e in b] for b in blocks] == [["a", "b", "c"], ["d"]]
    assert find_first_block_start(events, timedelta(minutes=30)) == events[0].start


def test_gap_equal_to_threshold_starts_new_block():
    events = [_event("a", "08:00", "08:30"), _event("b", "09:00", "09:30")]

    blocks = merge_event_blocks(events, timedelta(minutes=30))

    assert len(blocks) == 2


def test_block_end_tracks_longest_event():
    # "b" ends before "a", the gap to "c" is measured from a's end
    events = [
        _event("a", "08:00", "10:00"),
        _event("b", "08:30", "08:45"),
        _event("c", "10:15", "10:30"),
    ]

    blocks = merge_event_blocks(events, timedelta(minutes=30))

    assert [[e.id for e in b] for b in blocks] == [["a", "b", "c"]]


def test_zero_threshold_never_merges():
    events = [_event("a", "08:00", "09:00"), _event("b", "09:00", "10:00")]

    assert len(merge_event_blocks(events, timedelta(0))) == 2


def test_day_identifier_is_days_since_epoch():
    assert day_identifier(date(1970, 1, 1)) == 0
    assert day_identifier(date(1970, 1, 2)) == 1
    assert day_identifier(date(1969, 12, 31)) == -1
    assert day_identifier(date(2024, 3, 11)) == 19793
    assert day_identifier(date(2024, 3, 11)) == day_identifier(date(2024, 3, 11))


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2024, 3, 9, 23, 59, tzinfo=TZ), date(2024, 3, 10)),
        (datetime(2024, 3, 10, 0, 0, tzinfo=TZ), date(2024, 3, 11)),
        # 03:30 UTC is still the previous evening in New York
        (datetime.fromisoformat("2024-03-11T03:30:00+00:00"), date(2024, 3, 11)),
    ],
)
def test_target_day_follows_local_date(now, expected):
    target, start, end = target_day_bounds(now, TZ)

    assert target == expected
    assert start == datetime(expected.year, expected.month, expected.day, tzinfo=TZ)
    assert end.date() == expected + timedelta(days=1)


def test_target_day_bounds_span_short_dst_day():
    _, start, end = target_day_bounds(datetime(2024, 3, 9, 12, 0, tzinfo=TZ), TZ)

    assert (end - start) == timedelta(days=1)  # wall-clock difference
    assert end.timestamp() - start.timestamp() == 23 * 3600
