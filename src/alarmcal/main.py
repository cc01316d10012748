from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timedelta, tzinfo
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from tenacity import Retrying, before_sleep_log, stop_after_attempt, wait_exponential

from .config import AppConfig, load_config
from .debounce import Debouncer
from .engine import synchronize
from .models import Event, ScheduledAlarm, SyncResult
from .sinks import AlarmSink, JsonFileAlarmSink, MemoryAlarmSink
from .sources import CompositeEventSource, EventSource
from .travel import TravelEstimator, build_estimator

STATE_PATH_DEFAULT = "/var/lib/alarmcal/alarms.json"
CONFIG_PATH_DEFAULT = "/etc/alarmcal/config.yaml"

logger = logging.getLogger(__name__)


def build_event_source(cfg: AppConfig, tz: ZoneInfo) -> CompositeEventSource:
    sources: List[EventSource] = []
    if cfg.google.enabled:
        creds_path = os.environ.get("GOOGLE_CREDENTIALS_JSON", "")
        token_path = os.environ.get("GOOGLE_TOKEN_JSON", "")
        if token_path:
            from .calendar_google import GoogleCalendarSource

            sources.append(GoogleCalendarSource(cfg.google.calendar_ids, creds_path, token_path, tz))
        else:
            logger.warning("Google enabled but GOOGLE_TOKEN_JSON not set; skipping Google.")

    if cfg.icloud.enabled:
        user = os.environ.get("ICLOUD_USERNAME", "")
        pw = os.environ.get("ICLOUD_APP_PASSWORD", "")
        if user and pw:
            from .calendar_icloud import ICloudCalendarSource

            sources.append(ICloudCalendarSource(user, pw, tz, cfg.icloud.calendar_name_allowlist))
        else:
            logger.warning("iCloud enabled but ICLOUD_USERNAME/ICLOUD_APP_PASSWORD not set; skipping iCloud.")

    return CompositeEventSource(sources, cfg.engine)


def build_engine_inputs(
    cfg: AppConfig, tz: ZoneInfo
) -> Tuple[EventSource, Optional[TravelEstimator], Optional[Tuple[float, float]]]:
    estimator = build_estimator(cfg.travel, os.environ.get("GOOGLE_ROUTES_API_KEY", ""))
    return build_event_source(cfg, tz), estimator, cfg.travel.origin


def sync_with_retry(
    cfg: AppConfig,
    tz: tzinfo,
    source: EventSource,
    sink: AlarmSink,
    estimator: Optional[TravelEstimator] = None,
    origin: Optional[Tuple[float, float]] = None,
    now: Optional[datetime] = None,
) -> SyncResult:
    """Run a whole pass, retrying it on any error up to ``cfg.retry.attempts`` times."""

    def _pass() -> SyncResult:
        when = now or datetime.now(tz=tz)
        return synchronize(when, source, sink, cfg.engine, tz, estimator=estimator, origin=origin)

    retrying = Retrying(
        stop=stop_after_attempt(cfg.retry.attempts),
        wait=wait_exponential(max=cfg.retry.max_wait_seconds),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retrying(_pass)


def run_once(
    config_path: str = CONFIG_PATH_DEFAULT,
    state_path: str = STATE_PATH_DEFAULT,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> SyncResult:
    load_dotenv()
    cfg = load_config(config_path)
    tz = ZoneInfo(cfg.timezone)

    source, estimator, origin = build_engine_inputs(cfg, tz)
    sink: AlarmSink = MemoryAlarmSink() if dry_run else JsonFileAlarmSink(state_path)
    if not sink.can_schedule_exact():
        logger.warning("Alarm sink cannot schedule exact alarms; trigger times may drift")
    return sync_with_retry(cfg, tz, source, sink, estimator, origin, now=now)


def watch(config_path: str, state_path: str, stop: Optional[threading.Event] = None) -> None:
    """Sync every ``poll_interval_minutes``; SIGHUP asks for a debounced re-sync."""
    load_dotenv()
    cfg = load_config(config_path)
    stop = stop or threading.Event()

    def _safe_pass() -> None:
        try:
            result = run_once(config_path, state_path)
            print(json.dumps(format_result(result, ZoneInfo(cfg.timezone))), flush=True)
        except Exception:
            logger.exception("Synchronization failed after retries; waiting for next trigger")

    debouncer = Debouncer(cfg.debounce_seconds, _safe_pass)
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGHUP, lambda *_: debouncer.trigger())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())

    interval = timedelta(minutes=cfg.poll_interval_minutes).total_seconds()
    try:
        # first pass runs even if stop is already set
        while True:
            _safe_pass()
            if stop.wait(interval):
                break
    finally:
        debouncer.cancel()


def _event_payload(e: Event, tz: tzinfo) -> Dict[str, Any]:
    return {
        "id": e.id,
        "title": e.title,
        "start": e.start.astimezone(tz).isoformat(),
        "end": e.end.astimezone(tz).isoformat(),
        "all_day": e.all_day,
        "calendar_id": e.calendar_id,
        "location": e.location or "",
    }


def _alarm_payload(a: ScheduledAlarm, tz: tzinfo) -> Dict[str, Any]:
    return {
        "day_id": a.day_id,
        "trigger_time": a.trigger_time.astimezone(tz).isoformat(),
        "label": a.label,
        "event_id": a.target_event.id,
        "snooze_count": a.snooze_count,
    }


def format_result(result: SyncResult, tz: tzinfo) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "status": result.status.value,
        "target_day": result.target_day.isoformat(),
        "alarm": None if result.alarm is None else _alarm_payload(result.alarm, tz),
        "events": [_event_payload(e, tz) for e in result.events],
    }
    if result.travel is not None:
        t = result.travel
        payload["travel"] = {
            "attempted": t.attempted,
            "succeeded": t.succeeded,
            "has_provider": t.has_provider,
            "has_origin": t.has_origin,
            "has_event_location": t.has_event_location,
            "minutes": None if t.duration is None else round(t.duration.total_seconds() / 60),
            "error": t.error,
        }
    return payload


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Calendar-driven wake-up alarms")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--state", default=STATE_PATH_DEFAULT)
    ap.add_argument("--log-level", default="INFO")
    sub = ap.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="run one synchronization pass")
    sync.add_argument("--dry-run", action="store_true", help="compute without touching the alarm state")
    sync.add_argument("--now", help="ISO timestamp to use as the current time")

    sub.add_parser("watch", help="sync periodically; SIGHUP triggers a debounced re-sync")
    sub.add_parser("status", help="list stored alarms")
    sub.add_parser("due", help="list alarms whose trigger time has passed")

    snooze = sub.add_parser("snooze")
    snooze.add_argument("day_id", type=int)

    dismiss = sub.add_parser("dismiss")
    dismiss.add_argument("day_id", type=int)

    sub.add_parser("google-login", help="authorize Google Calendar read access")

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "google-login":
        from .calendar_google import login

        load_dotenv()
        creds_path = os.environ.get("GOOGLE_CREDENTIALS_JSON")
        token_path = os.environ.get("GOOGLE_TOKEN_JSON")
        if not creds_path or not token_path:
            print("google-login needs GOOGLE_CREDENTIALS_JSON and GOOGLE_TOKEN_JSON", file=sys.stderr)
            return 1
        login(creds_path, token_path)
        print(json.dumps({"ok": True}, indent=2))
        return 0

    if args.command == "watch":
        watch(args.config, args.state)
        return 0

    cfg = load_config(args.config)
    tz = ZoneInfo(cfg.timezone)

    if args.command == "sync":
        now = None
        if args.now:
            now = datetime.fromisoformat(args.now)
            now = now.replace(tzinfo=tz) if now.tzinfo is None else now.astimezone(tz)
        try:
            result = run_once(args.config, args.state, now=now, dry_run=args.dry_run)
        except Exception as e:
            print(f"Synchronization failed: {e}", file=sys.stderr)
            return 1
        print(json.dumps(format_result(result, tz), indent=2))
        return 0

    sink = JsonFileAlarmSink(args.state)
    now = datetime.now(tz=tz)

    if args.command == "status":
        print(json.dumps([_alarm_payload(a, tz) for a in sink.load_alarms()], indent=2))
        return 0

    if args.command == "due":
        due = sink.due_alarms(now)
        print(json.dumps([_alarm_payload(a, tz) for a in due], indent=2))
        return 0 if due else 3

    if args.command == "snooze":
        snoozed = sink.snooze(args.day_id, now, cfg.engine)
        if snoozed is None:
            print(json.dumps({"ok": False, "error": "no alarm or snooze limit reached"}, indent=2))
            return 1
        print(json.dumps(_alarm_payload(snoozed, tz), indent=2))
        return 0

    if args.command == "dismiss":
        print(json.dumps({"ok": sink.dismiss(args.day_id)}, indent=2))
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
