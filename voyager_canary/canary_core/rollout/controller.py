from __future__ import annotations

import secrets
import threading
import time
from typing import Any, Callable

from canary_core.alerts import AlertSink, CompositeAlertSink, EventLogAlertSink, MemoryAlertSink, TelegramAlertSink
from canary_core.analysis.engine import AnalysisEngine
from canary_core.config import ControllerConfig, MetricsConfig, TrafficConfig
from canary_core.errors import OperatorOverrideConflict, RolloutNotFound, WorkloadBusy
from canary_core.events import EventLog
from canary_core.metrics.prometheus import PrometheusMetricSource
from canary_core.metrics.source import CohortMetricStore, MetricSource
from canary_core.retry import RetryPolicy
from canary_core.rollout.machine import RolloutStateMachine
from canary_core.rollout.models import TERMINAL_PHASES, Phase, RolloutSpec, RolloutState, parse_rollout_spec
from canary_core.rollout.store import RolloutStore
from canary_core.traffic.splitter import HttpTrafficBackend, InMemoryTrafficBackend, TrafficBackend, TrafficSplitter


def build_metric_source(cfg: MetricsConfig) -> MetricSource:
    if cfg.backend == "prometheus":
        return PrometheusMetricSource(cfg)
    return CohortMetricStore()


def build_traffic_backend(cfg: TrafficConfig) -> TrafficBackend:
    if cfg.backend == "http":
        return HttpTrafficBackend(str(cfg.base_url), timeout=cfg.request_timeout_seconds)
    return InMemoryTrafficBackend()


def rollout_summary(row: dict[str, Any]) -> dict[str, Any]:
    spec = row.get("spec") or {}
    return {
        "id": row["id"],
        "workload": row.get("workload"),
        "phase": row.get("phase"),
        "stable_version": spec.get("stable_version"),
        "canary_version": spec.get("canary_version"),
        "current_step_index": row.get("current_step_index"),
        "applied_weight": row.get("applied_weight"),
        "pending_weight": row.get("pending_weight"),
        "retry_of": row.get("retry_of"),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


class RolloutController:
    """Composition root: one state machine thread per active rollout, one active rollout per workload."""

    def __init__(
        self,
        config: ControllerConfig | None = None,
        *,
        metric_source: MetricSource | None = None,
        traffic_backend: TrafficBackend | None = None,
        alert_sink: AlertSink | None = None,
        events: EventLog | None = None,
        store: RolloutStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or ControllerConfig()
        data_dir = self.config.data_dir
        self.events = events or EventLog(data_dir / "events.sqlite3")
        self.store = store or RolloutStore(data_dir=data_dir)
        self.metric_source = metric_source or build_metric_source(self.config.metrics)
        self.traffic_backend = traffic_backend or build_traffic_backend(self.config.traffic)
        self.alert_history = MemoryAlertSink()
        extra_sink = alert_sink or TelegramAlertSink(self.config.notifications, self.events)
        self.alerts = CompositeAlertSink([self.alert_history, EventLogAlertSink(self.events), extra_sink])
        self.engine = AnalysisEngine.from_config(self.metric_source, self.config.analysis)
        self.retry_policy = RetryPolicy.from_config(self.config.traffic)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._machines: dict[str, RolloutStateMachine] = {}
        self._splitters: dict[str, TrafficSplitter] = {}
        self._active_workloads: dict[str, str] = {}

    def _log(self, event_type: str, severity: str, message: str, related_ids: list[str], payload: dict[str, Any] | None = None) -> None:
        self.events.add_log(
            event_type=event_type,
            severity=severity,
            module="controller",
            message=message,
            related_ids=related_ids,
            payload=payload or {},
        )

    @staticmethod
    def _new_id() -> str:
        return f"ro_{secrets.token_hex(6)}"

    def _claim_workload(self, workload: str, rollout_id: str) -> None:
        with self._lock:
            holder = self._active_workloads.get(workload)
            if holder is not None and holder != rollout_id:
                machine = self._machines.get(holder)
                if machine is None or not machine.state.is_terminal:
                    raise WorkloadBusy(f"Workload {workload} already has an active rollout: {holder}")
            persisted = self.store.active_for_workload(workload)
            if persisted is not None and persisted.id != rollout_id:
                raise WorkloadBusy(f"Workload {workload} already has an active rollout: {persisted.id}")
            self._active_workloads[workload] = rollout_id

    def _release_workload(self, workload: str, rollout_id: str) -> None:
        with self._lock:
            if self._active_workloads.get(workload) == rollout_id:
                del self._active_workloads[workload]

    def _splitter_for(self, state: RolloutState) -> TrafficSplitter:
        with self._lock:
            splitter = self._splitters.get(state.id)
            if splitter is None:
                splitter = TrafficSplitter(
                    self.traffic_backend,
                    rollout_id=state.id,
                    workload=state.workload,
                    policy=self.retry_policy,
                    on_busy=self.config.traffic.on_busy,
                    on_retry=self._retry_logger(state.id),
                    sleep=self._sleep,
                )
                self._splitters[state.id] = splitter
            return splitter

    def _retry_logger(self, rollout_id: str) -> Callable[[int, BaseException, float], None]:
        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self.events.add_log(
                event_type="traffic_write_retry",
                severity="warn",
                module="traffic",
                message=str(exc),
                related_ids=[rollout_id],
                payload={"attempt": attempt, "next_delay_seconds": round(delay, 3)},
            )

        return _on_retry

    def _build_machine(self, state: RolloutState) -> RolloutStateMachine:
        machine = RolloutStateMachine(
            state,
            splitter=self._splitter_for(state),
            engine=self.engine,
            store=self.store,
            events=self.events,
            alerts=self.alerts,
            decision_tick_seconds=self.config.analysis.decision_tick_seconds,
            default_final_validation_seconds=self.config.promotion.final_validation_seconds,
            on_exit=self._on_machine_exit,
        )
        with self._lock:
            self._machines[state.id] = machine
        return machine

    def _on_machine_exit(self, machine: RolloutStateMachine) -> None:
        snapshot = machine.snapshot()
        if machine.state.is_terminal:
            self._release_workload(machine.state.workload, machine.rollout_id)
        self._log(
            "machine_exited",
            "info",
            f"state machine exited in {snapshot['phase']}",
            [machine.rollout_id],
            {"phase": snapshot["phase"], "applied_weight": snapshot["applied_weight"]},
        )

    def _running(self, rollout_id: str) -> RolloutStateMachine | None:
        with self._lock:
            machine = self._machines.get(rollout_id)
        return machine if machine is not None and machine.is_alive() else None

    def _latest_state(self, rollout_id: str) -> RolloutState:
        with self._lock:
            machine = self._machines.get(rollout_id)
        if machine is not None:
            return machine.state
        return self.store.load(rollout_id)

    def start(self, spec: RolloutSpec | dict[str, Any], *, retry_of: str | None = None) -> str:
        parsed = parse_rollout_spec(spec)
        rollout_id = self._new_id()
        self._claim_workload(parsed.workload, rollout_id)
        state = RolloutState(id=rollout_id, spec=parsed, retry_of=retry_of)
        self.store.save(state)
        self._log(
            "rollout_started",
            "info",
            f"{parsed.workload}: {parsed.stable_version} -> {parsed.canary_version}",
            [rollout_id] + ([retry_of] if retry_of else []),
            {"workload": parsed.workload, "steps": [step.weight_percent for step in parsed.steps], "retry_of": retry_of},
        )
        self._build_machine(state).start()
        return rollout_id

    def status(self, rollout_id: str) -> dict[str, Any]:
        with self._lock:
            machine = self._machines.get(rollout_id)
        snapshot = machine.snapshot() if machine is not None else self.store.load(rollout_id).to_dict()
        snapshot["running"] = bool(machine and machine.is_alive())
        snapshot["alerts"] = [row.to_dict() for row in self.alert_history.for_rollout(rollout_id)]
        return snapshot

    def list_rollouts(self, workload: str | None = None, phase: str | None = None) -> list[dict[str, Any]]:
        rows = []
        for state in self.store.list():
            row = rollout_summary(self.status(state.id))
            if workload and row["workload"] != workload:
                continue
            if phase and row["phase"] != phase:
                continue
            rows.append(row)
        return rows

    def _ensure_running(self, state: RolloutState, command: Callable[[RolloutStateMachine], None]) -> None:
        machine = self._running(state.id)
        if machine is not None:
            command(machine)
            return
        self._claim_workload(state.workload, state.id)
        machine = self._build_machine(state)
        command(machine)
        machine.start()

    def abort(self, rollout_id: str, reason: str = "operator abort") -> dict[str, Any]:
        state = self._latest_state(rollout_id)
        if state.phase in TERMINAL_PHASES:
            raise OperatorOverrideConflict(f"Rollout {rollout_id} is already {state.phase.value}")
        self._log("abort_requested", "warn", reason, [rollout_id], {"phase": state.phase.value})
        self._ensure_running(state, lambda machine: machine.request_abort(reason))
        return self.status(rollout_id)

    def promote(self, rollout_id: str) -> dict[str, Any]:
        state = self._latest_state(rollout_id)
        if state.phase in TERMINAL_PHASES or state.phase == Phase.ABORTING:
            raise OperatorOverrideConflict(f"Cannot promote rollout {rollout_id} while {state.phase.value}")
        self._log("promote_requested", "warn", "operator promote", [rollout_id], {"phase": state.phase.value})
        self._ensure_running(state, lambda machine: machine.request_promote())
        return self.status(rollout_id)

    def retry(self, rollout_id: str, canary_version: str | None = None) -> str:
        state = self._latest_state(rollout_id)
        if state.phase != Phase.ROLLED_BACK:
            raise OperatorOverrideConflict(f"Retry is only allowed from rolled_back (rollout {rollout_id} is {state.phase.value})")
        spec = state.spec if canary_version is None else state.spec.with_canary_version(canary_version)
        new_id = self.start(spec, retry_of=rollout_id)
        self._log("rollout_retried", "info", f"retry of {rollout_id}", [rollout_id, new_id], {"canary_version": spec.canary_version})
        return new_id

    def resume(self) -> list[str]:
        resumed: list[str] = []
        for state in self.store.list():
            if state.is_terminal or self._running(state.id) is not None:
                continue
            try:
                self._claim_workload(state.workload, state.id)
            except WorkloadBusy as exc:
                self._log("resume_skipped", "error", str(exc), [state.id], {"phase": state.phase.value})
                continue
            self._log("rollout_resumed", "info", f"resuming in {state.phase.value}", [state.id], {"phase": state.phase.value})
            self._build_machine(state).start()
            resumed.append(state.id)
        return resumed

    def wait(self, rollout_id: str, timeout: float | None = None) -> dict[str, Any]:
        with self._lock:
            machine = self._machines.get(rollout_id)
        if machine is None and not self.store.exists(rollout_id):
            raise RolloutNotFound(f"Rollout not found: {rollout_id}")
        if machine is not None:
            machine.join(timeout)
        return self.status(rollout_id)

    def shutdown(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            machines = list(self._machines.values())
        for machine in machines:
            machine.request_stop()
        for machine in machines:
            machine.join(timeout)
        with self._lock:
            self._active_workloads.clear()
