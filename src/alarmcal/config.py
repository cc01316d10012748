from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import time, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import yaml

from .errors import ConfigError

@dataclass(frozen=True)
class EngineConfig:
    """Knobs for a single synchronization pass.

    Built fresh by the caller for every pass; the engine never reads
    settings from anywhere else.
    """

    prep_time: timedelta = timedelta(minutes=75)
    earliest_alarm: time = time(5, 0)
    latest_alarm: time = time(10, 0)
    snooze_duration: timedelta = timedelta(minutes=10)
    max_snooze_count: int = 3
    skip_all_day_events: bool = True
    event_merge_threshold: timedelta = timedelta(minutes=30)
    look_ahead_hours: int = 36
    calendar_ids: Tuple[str, ...] = ()    # empty = all calendars
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.earliest_alarm > self.latest_alarm:
            raise ConfigError(
                f"earliest_alarm {self.earliest_alarm:%H:%M} is after latest_alarm {self.latest_alarm:%H:%M}"
            )
        for name in ("prep_time", "snooze_duration", "event_merge_threshold"):
            if getattr(self, name) < timedelta(0):
                raise ConfigError(f"{name} must not be negative")
        if self.look_ahead_hours < 0:
            raise ConfigError("look_ahead_hours must not be negative")
        if self.max_snooze_count < 0:
            raise ConfigError("max_snooze_count must not be negative")

    @property
    def look_ahead(self) -> timedelta:
        return timedelta(hours=self.look_ahead_hours)

    def with_enabled(self, enabled: bool) -> "EngineConfig":
        return replace(self, enabled=enabled)


DEFAULT_ENGINE_CONFIG = EngineConfig()

@dataclass
class GoogleConfig:
    enabled: bool
    calendar_ids: List[str]

@dataclass
class ICloudConfig:
    enabled: bool
    calendar_name_allowlist: List[str]

@dataclass
class TravelConfig:
    provider: str                 # "google" / "osrm" / "none"
    origin_latitude: Optional[float]
    origin_longitude: Optional[float]
    timeout_seconds: float

    @property
    def origin(self) -> Optional[Tuple[float, float]]:
        if self.origin_latitude is None or self.origin_longitude is None:
            return None
        return (self.origin_latitude, self.origin_longitude)

@dataclass
class RetryConfig:
    attempts: int
    max_wait_seconds: float

@dataclass
class AppConfig:
    timezone: str
    poll_interval_minutes: int
    debounce_seconds: float
    engine: EngineConfig
    google: GoogleConfig
    icloud: ICloudConfig
    travel: TravelConfig
    retry: RetryConfig = field(default_factory=lambda: RetryConfig(attempts=3, max_wait_seconds=10.0))


def parse_hhmm(s: str) -> time:
    try:
        hh, mm = str(s).split(":")
        return time(hour=int(hh), minute=int(mm))
    except ValueError as exc:
        raise ConfigError(f"Expected HH:MM time, got {s!r}") from exc


def _minutes(value: Any, name: str) -> timedelta:
    try:
        return timedelta(minutes=int(value))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a whole number of minutes, got {value!r}") from exc


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def engine_config_from_dict(data: Dict[str, Any]) -> EngineConfig:
    d = DEFAULT_ENGINE_CONFIG
    return EngineConfig(
        prep_time=_minutes(data.get("prep_minutes", d.prep_time // timedelta(minutes=1)), "prep_minutes"),
        earliest_alarm=parse_hhmm(data.get("earliest", f"{d.earliest_alarm:%H:%M}")),
        latest_alarm=parse_hhmm(data.get("latest", f"{d.latest_alarm:%H:%M}")),
        snooze_duration=_minutes(
            data.get("snooze_minutes", d.snooze_duration // timedelta(minutes=1)), "snooze_minutes"
        ),
        max_snooze_count=int(data.get("max_snooze_count", d.max_snooze_count)),
        skip_all_day_events=bool(data.get("skip_all_day_events", d.skip_all_day_events)),
        event_merge_threshold=_minutes(
            data.get("merge_threshold_minutes", d.event_merge_threshold // timedelta(minutes=1)),
            "merge_threshold_minutes",
        ),
        look_ahead_hours=int(data.get("look_ahead_hours", d.look_ahead_hours)),
        calendar_ids=tuple(str(c) for c in data.get("calendar_ids", [])),
        enabled=bool(data.get("enabled", d.enabled)),
    )


def load_config(path: str) -> AppConfig:
    p = Path(path)
    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    alarm = data.get("alarm", {})
    calendars = data.get("calendars", {})
    travel = data.get("travel", {})
    origin = travel.get("origin", {})
    retry = data.get("retry", {})

    google = calendars.get("google", {})
    icloud = calendars.get("icloud", {})

    return AppConfig(
        timezone=data.get("timezone", "America/Phoenix"),
        poll_interval_minutes=int(data.get("poll_interval_minutes", 180)),
        debounce_seconds=float(data.get("debounce_seconds", 5)),
        engine=engine_config_from_dict(alarm),
        google=GoogleConfig(
            enabled=bool(google.get("enabled", False)),
            calendar_ids=list(google.get("calendar_ids", ["primary"])),
        ),
        icloud=ICloudConfig(
            enabled=bool(icloud.get("enabled", False)),
            calendar_name_allowlist=list(icloud.get("calendar_name_allowlist", [])),
        ),
        travel=TravelConfig(
            provider=str(travel.get("provider", "none")).lower(),
            origin_latitude=_optional_float(origin.get("latitude")),
            origin_longitude=_optional_float(origin.get("longitude")),
            timeout_seconds=float(travel.get("timeout_seconds", 10)),
        ),
        retry=RetryConfig(
            attempts=max(1, int(retry.get("attempts", 3))),
            max_wait_seconds=float(retry.get("max_wait_seconds", 10)),
        ),
    )
