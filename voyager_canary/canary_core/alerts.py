from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import requests

from canary_core.config import NotificationsConfig
from canary_core.events import EventLog


class AlertKind(str, Enum):
    ABORTING = "aborting"
    DEGRADED = "degraded"
    SUCCEEDED = "succeeded"
    ROLLBACK_THRESHOLD_BREACH = "rollback_threshold_breach"
    ROLLBACK_FAILED = "rollback_failed"


ALERT_SEVERITY = {
    AlertKind.ABORTING: "warn",
    AlertKind.DEGRADED: "warn",
    AlertKind.SUCCEEDED: "info",
    AlertKind.ROLLBACK_THRESHOLD_BREACH: "error",
    AlertKind.ROLLBACK_FAILED: "critical",
}


@dataclass(slots=True)
class Alert:
    kind: AlertKind
    rollout_id: str
    workload: str
    step_index: int
    weight: int
    failing_checks: list[str] = field(default_factory=list)
    message: str = ""
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def severity(self) -> str:
        return ALERT_SEVERITY[self.kind]

    def to_dict(self) -> dict[str, Any]:
        row = asdict(self)
        row["kind"] = self.kind.value
        row["severity"] = self.severity
        row["raised_at"] = self.raised_at.isoformat()
        return row

    def render(self) -> str:
        checks = ", ".join(self.failing_checks) if self.failing_checks else "-"
        return (
            f"[{self.severity.upper()}] {self.kind.value} rollout={self.rollout_id} workload={self.workload} "
            f"step={self.step_index} weight={self.weight}% checks={checks} {self.message}"
        ).strip()


class AlertSink:
    def emit(self, alert: Alert) -> None:
        raise NotImplementedError


class MemoryAlertSink(AlertSink):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.alerts: list[Alert] = []

    def emit(self, alert: Alert) -> None:
        with self._lock:
            self.alerts.append(alert)

    def for_rollout(self, rollout_id: str) -> list[Alert]:
        with self._lock:
            return [row for row in self.alerts if row.rollout_id == rollout_id]

    def kinds(self, rollout_id: str | None = None) -> list[AlertKind]:
        with self._lock:
            return [row.kind for row in self.alerts if rollout_id is None or row.rollout_id == rollout_id]


class EventLogAlertSink(AlertSink):
    def __init__(self, events: EventLog) -> None:
        self.events = events

    def emit(self, alert: Alert) -> None:
        self.events.add_log(
            event_type=f"alert_{alert.kind.value}",
            severity=alert.severity,
            module="alerts",
            message=alert.render(),
            related_ids=[alert.rollout_id],
            payload=alert.to_dict(),
        )


class TelegramAlertSink(AlertSink):
    def __init__(self, cfg: NotificationsConfig, events: EventLog | None = None, timeout: float = 8.0) -> None:
        self.cfg = cfg
        self.events = events
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return self.cfg.telegram_enabled and bool(self.cfg.bot_token) and bool(self.cfg.chat_id)

    def emit(self, alert: Alert) -> None:
        if not self.enabled:
            return
        url = f"https://api.telegram.org/bot{self.cfg.bot_token}/sendMessage"
        try:
            res = requests.post(url, json={"chat_id": self.cfg.chat_id, "text": alert.render()}, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as exc:
            if self.events is not None:
                self.events.add_log(
                    event_type="telegram_error",
                    severity="warn",
                    module="alerts",
                    message="failed_to_send",
                    related_ids=[alert.rollout_id],
                    payload={"error": str(exc), "kind": alert.kind.value},
                )


class CompositeAlertSink(AlertSink):
    def __init__(self, sinks: list[AlertSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, alert: Alert) -> None:
        for sink in self.sinks:
            sink.emit(alert)
