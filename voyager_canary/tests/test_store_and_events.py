from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
import requests

from canary_core.alerts import Alert, AlertKind, CompositeAlertSink, EventLogAlertSink, MemoryAlertSink, TelegramAlertSink
from canary_core.config import NotificationsConfig
from canary_core.errors import RolloutNotFound
from canary_core.events import EventLog
from canary_core.rollout.models import Phase, RolloutState, utc_now
from canary_core.rollout.store import RolloutStore

from canary_testkit import make_spec


def _state(rollout_id: str, workload: str = "voyager-gateway", age_seconds: int = 0) -> RolloutState:
    return RolloutState(id=rollout_id, spec=make_spec(workload=workload), created_at=utc_now() - timedelta(seconds=age_seconds))


def test_store_save_load_and_missing(tmp_path: Path) -> None:
    store = RolloutStore(data_dir=tmp_path)
    state = _state("ro_a")
    state.phase = Phase.PAUSED
    state.applied_weight = 5

    payload = store.save(state)

    assert payload["phase"] == "paused"
    assert store.exists("ro_a")
    loaded = store.load("ro_a")
    assert loaded.phase == Phase.PAUSED
    assert loaded.applied_weight == 5
    assert list(store.root.glob("*.tmp")) == []

    with pytest.raises(RolloutNotFound, match="ro_missing"):
        store.load("ro_missing")


def test_store_lists_and_finds_active_rollout(tmp_path: Path) -> None:
    store = RolloutStore(data_dir=tmp_path)
    done = _state("ro_old", age_seconds=30)
    done.phase = Phase.ROLLED_BACK
    store.save(done)
    live = _state("ro_new", age_seconds=20)
    live.phase = Phase.PAUSED
    store.save(live)
    store.save(_state("ro_other", workload="voyager-ledger", age_seconds=10))
    (store.root / "broken.json").write_text("{not json", encoding="utf-8")

    assert [row.id for row in store.list()] == ["ro_old", "ro_new", "ro_other"]
    assert store.active_for_workload("voyager-gateway").id == "ro_new"
    assert store.active_for_workload("voyager-ledger").id == "ro_other"
    assert store.active_for_workload("voyager-search") is None


def test_event_log_filters(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "events.sqlite3")
    events.add_log("transition", "info", "rollout", "initializing -> progressing", ["ro_a"], {"to": "progressing"})
    events.add_log("rollback_failed", "critical", "rollout", "control plane down", ["ro_a"])
    events.add_log("transition", "info", "rollout", "initializing -> progressing", ["ro_b"])

    assert [row["type"] for row in events.events_for("ro_a")] == ["transition", "rollback_failed"]
    assert events.events_for("ro_a")[0]["payload"] == {"to": "progressing"}
    page = events.list_logs(severity="critical")
    assert page["total"] == 1
    assert page["items"][0]["related_ids"] == ["ro_a"]
    assert events.list_logs(event_type="transition", page_size=1)["total"] == 2
    assert len(events.list_logs(event_type="transition", page_size=1)["items"]) == 1

    with pytest.raises(ValueError):
        events.add_log("transition", "loud", "rollout", "bad severity")


def _alert(kind: AlertKind = AlertKind.ABORTING) -> Alert:
    return Alert(kind=kind, rollout_id="ro_a", workload="voyager-gateway", step_index=1, weight=10, failing_checks=["success_rate"], message="analysis failed")


def test_alert_fan_out(tmp_path: Path) -> None:
    events = EventLog(tmp_path / "events.sqlite3")
    memory = MemoryAlertSink()
    sink = CompositeAlertSink([memory, EventLogAlertSink(events)])

    sink.emit(_alert())
    sink.emit(_alert(AlertKind.ROLLBACK_FAILED))

    assert memory.kinds("ro_a") == [AlertKind.ABORTING, AlertKind.ROLLBACK_FAILED]
    rows = events.events_for("ro_a")
    assert [row["type"] for row in rows] == ["alert_aborting", "alert_rollback_failed"]
    assert rows[1]["severity"] == "critical"
    assert "checks=success_rate" in rows[0]["message"]


def test_telegram_sink_is_quiet_when_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(*args, **kwargs):
        raise AssertionError("should not post")

    monkeypatch.setattr(requests, "post", _fail)
    TelegramAlertSink(NotificationsConfig()).emit(_alert())


def test_telegram_errors_are_logged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sent = []

    def _post(url, json=None, timeout=None):
        sent.append((url, json))
        raise requests.ConnectionError("telegram unreachable")

    monkeypatch.setattr(requests, "post", _post)
    events = EventLog(tmp_path / "events.sqlite3")
    cfg = NotificationsConfig(telegram_enabled=True, bot_token="123:abc", chat_id="42")

    TelegramAlertSink(cfg, events).emit(_alert())

    assert sent[0][0] == "https://api.telegram.org/bot123:abc/sendMessage"
    assert sent[0][1]["chat_id"] == "42"
    rows = events.events_for("ro_a")
    assert rows[0]["type"] == "telegram_error"
    assert "telegram unreachable" in rows[0]["payload"]["error"]
