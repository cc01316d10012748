import json
import threading
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from alarmcal.config import load_config
from alarmcal.debounce import Debouncer
from alarmcal.main import format_result, main, run_once, sync_with_retry, watch
from alarmcal.models import Event, SyncResult, SyncStatus
from alarmcal.sinks import JsonFileAlarmSink, MemoryAlarmSink
from alarmcal.sources import MemoryEventSource

TZ = ZoneInfo("America/Phoenix")
NOW = datetime(2024, 3, 10, 20, 0, tzinfo=timezone.utc)


def _write_config(tmp_path, extra: str = "") -> str:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        "timezone: 'America/Phoenix'\nretry:\n  attempts: 3\n  max_wait_seconds: 0\n" + extra,
        encoding="utf-8",
    )
    return str(cfg_path)


def _standup() -> Event:
    start = datetime(2024, 3, 11, 8, 0, tzinfo=TZ)
    return Event(id="s", title="Standup", start=start, end=start + timedelta(minutes=15), location="HQ")


class FlakySink(MemoryAlarmSink):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def schedule(self, alarm):
        if self.failures:
            self.failures -= 1
            raise OSError("alarm service busy")
        super().schedule(alarm)


def test_sync_retries_whole_pass_on_sink_failure(tmp_path):
    cfg = load_config(_write_config(tmp_path))
    sink = FlakySink(failures=2)

    result = sync_with_retry(cfg, TZ, MemoryEventSource([_standup()]), sink, now=NOW)

    assert result.status is SyncStatus.ALARM_SET
    assert list(sink.alarms) == [result.alarm.day_id]


def test_sync_gives_up_after_configured_attempts(tmp_path):
    cfg = load_config(_write_config(tmp_path))

    with pytest.raises(OSError):
        sync_with_retry(cfg, TZ, MemoryEventSource([_standup()]), FlakySink(failures=3), now=NOW)


def test_run_once_dry_run_without_calendars(tmp_path):
    state = tmp_path / "alarms.json"

    result = run_once(_write_config(tmp_path), str(state), now=NOW, dry_run=True)

    assert result.status is SyncStatus.NO_EVENTS
    assert not state.exists()


def test_run_once_disabled_cancels_stored_alarm(tmp_path):
    state = tmp_path / "alarms.json"
    sink = JsonFileAlarmSink(str(state))
    cfg = load_config(_write_config(tmp_path))
    sync_with_retry(cfg, TZ, MemoryEventSource([_standup()]), sink, now=NOW)
    assert len(sink.load_alarms()) == 1

    result = run_once(_write_config(tmp_path, "alarm:\n  enabled: false\n"), str(state), now=NOW)

    assert result.status is SyncStatus.DISABLED
    assert sink.load_alarms() == []


def test_format_result_echoes_events_and_travel(tmp_path):
    cfg = load_config(_write_config(tmp_path))
    result = sync_with_retry(
        cfg,
        TZ,
        MemoryEventSource([_standup()]),
        MemoryAlarmSink(),
        estimator=lambda lat, lng, dest: (timedelta(minutes=20), None),
        origin=(33.4, -112.3),
        now=NOW,
    )

    payload = format_result(result, TZ)

    assert payload["status"] == "ALARM_SET"
    assert payload["target_day"] == "2024-03-11"
    assert payload["alarm"]["trigger_time"] == "2024-03-11T06:25:00-07:00"
    assert payload["alarm"]["label"] == "Wake up for: Standup"
    assert payload["events"][0]["title"] == "Standup"
    assert payload["travel"]["minutes"] == 20
    assert payload["travel"]["attempted"] is True
    json.dumps(payload)


def test_cli_status_snooze_and_dismiss(tmp_path, capsys):
    config_path = _write_config(tmp_path)
    state = tmp_path / "alarms.json"
    cfg = load_config(config_path)
    result = sync_with_retry(cfg, TZ, MemoryEventSource([_standup()]), JsonFileAlarmSink(str(state)), now=NOW)
    day_id = str(result.alarm.day_id)
    base = ["--config", config_path, "--state", str(state)]

    assert main(base + ["status"]) == 0
    listed = json.loads(capsys.readouterr().out)
    assert [a["label"] for a in listed] == ["Wake up for: Standup"]

    assert main(base + ["snooze", day_id]) == 0
    snoozed = json.loads(capsys.readouterr().out)
    assert snoozed["snooze_count"] == 1

    assert main(base + ["dismiss", day_id]) == 0
    assert json.loads(capsys.readouterr().out) == {"ok": True}
    assert main(base + ["snooze", day_id]) == 1


def test_cli_sync_dry_run_prints_result(tmp_path, capsys):
    config_path = _write_config(tmp_path)

    code = main(["--config", config_path, "--state", str(tmp_path / "a.json"), "sync", "--dry-run", "--now", "2024-03-10T13:00"])

    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["status"] == "NO_EVENTS"
    assert out["target_day"] == "2024-03-11"


def test_debouncer_collapses_bursts():
    calls = []
    done = threading.Event()

    def fn():
        calls.append(1)
        done.set()

    debouncer = Debouncer(0.05, fn)
    for _ in range(5):
        debouncer.trigger()

    assert done.wait(2)
    assert calls == [1]


def test_debouncer_cancel_drops_pending_call():
    calls = []
    debouncer = Debouncer(0.2, lambda: calls.append(1))

    debouncer.trigger()
    assert debouncer.pending
    debouncer.cancel()

    threading.Event().wait(0.3)
    assert calls == []


def test_google_login_without_env_vars_fails_cleanly(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("alarmcal.main.load_dotenv", lambda *a, **k: None)
    monkeypatch.delenv("GOOGLE_CREDENTIALS_JSON", raising=False)
    monkeypatch.delenv("GOOGLE_TOKEN_JSON", raising=False)

    code = main(["--config", _write_config(tmp_path), "--state", str(tmp_path / "a.json"), "google-login"])

    assert code == 1
    assert "GOOGLE_CREDENTIALS_JSON" in capsys.readouterr().err


class RecordingDebouncer:
    instances = []

    def __init__(self, delay_seconds, fn):
        self.cancelled = False
        RecordingDebouncer.instances.append(self)

    def trigger(self):
        pass

    def cancel(self):
        self.cancelled = True


def test_watch_runs_one_pass_and_cancels_debouncer(tmp_path, monkeypatch, capsys):
    calls = []

    def fake_run_once(config_path, state_path, now=None, dry_run=False):
        calls.append(state_path)
        return SyncResult(status=SyncStatus.NO_EVENTS, target_day=NOW.date())

    monkeypatch.setattr("alarmcal.main.load_dotenv", lambda *a, **k: None)
    monkeypatch.setattr("alarmcal.main.run_once", fake_run_once)
    monkeypatch.setattr("alarmcal.main.Debouncer", RecordingDebouncer)
    RecordingDebouncer.instances = []
    stop = threading.Event()
    stop.set()
    state = str(tmp_path / "alarms.json")

    # off the main thread so no signal handlers are installed
    t = threading.Thread(target=watch, args=(_write_config(tmp_path), state, stop))
    t.start()
    t.join(5)

    assert not t.is_alive()
    assert calls == [state]
    assert json.loads(capsys.readouterr().out)["status"] == "NO_EVENTS"
    assert [d.cancelled for d in RecordingDebouncer.instances] == [True]
