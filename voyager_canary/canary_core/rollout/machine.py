from __future__ import annotations

import threading
import time
import traceback
from typing import Any, Callable

from canary_core.alerts import Alert, AlertKind, AlertSink
from canary_core.analysis.engine import AnalysisEngine, AnalysisHandle
from canary_core.errors import TrafficWriteError
from canary_core.events import EventLog
from canary_core.metrics.source import CohortLabels
from canary_core.rollout.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_PHASES,
    AnalysisCheck,
    Phase,
    RolloutState,
    StepOutcome,
    utc_now,
)
from canary_core.rollout.store import RolloutStore
from canary_core.traffic.splitter import TrafficSplitter
from canary_core.types import Cohort, OutcomeVerdict, StepVerdict, ThresholdBreach, Verdict


PERSIST_EVERY_SECONDS = 1.0


class RolloutStateMachine:
    """Drives one rollout on its own thread.

    The decision loop is the only writer of `state`; commands from other
    threads are queued as flags and picked up at the next tick.
    """

    def __init__(
        self,
        state: RolloutState,
        *,
        splitter: TrafficSplitter,
        engine: AnalysisEngine,
        store: RolloutStore,
        events: EventLog,
        alerts: AlertSink,
        decision_tick_seconds: float = 0.5,
        default_final_validation_seconds: float | None = None,
        on_exit: Callable[["RolloutStateMachine"], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.splitter = splitter
        self.engine = engine
        self.store = store
        self.events = events
        self.alerts = alerts
        self.decision_tick_seconds = decision_tick_seconds
        self.default_final_validation_seconds = default_final_validation_seconds
        self.on_exit = on_exit
        self.clock = clock
        self.labels = CohortLabels(
            rollout_id=state.id,
            workload=state.spec.workload,
            cohort=Cohort.CANARY,
            version=state.spec.canary_version,
        )
        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._abort_reason: str | None = None
        self._stopping = threading.Event()
        self._promote_requested = False
        self._abort_failing: tuple[str, ...] = ()
        self._handle: AnalysisHandle | None = None
        self._thread: threading.Thread | None = None

    @property
    def rollout_id(self) -> str:
        return self.state.id

    def start(self) -> "RolloutStateMachine":
        self._thread = threading.Thread(target=self.run, name=f"rollout-{self.state.id}", daemon=True)
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        return not self.is_alive()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return self.state.to_dict()

    def request_abort(self, reason: str) -> None:
        with self._lock:
            self._abort_reason = reason or "operator abort"
        self._wake.set()

    def request_promote(self) -> None:
        with self._lock:
            self._promote_requested = True
        self._wake.set()

    def request_stop(self) -> None:
        """Leave the rollout where it is; a later resume picks it up."""
        self._stopping.set()
        self._wake.set()

    def run(self) -> None:
        try:
            self._drive()
        except Exception as exc:
            with self._lock:
                self.state.last_error = f"state machine crashed: {exc!r}"
            self._log("machine_error", "critical", "state_machine_crashed", {"error": repr(exc), "traceback": traceback.format_exc()})
            self._persist()
        finally:
            self._stop_analysis()
            if self.on_exit is not None:
                self.on_exit(self)

    def _drive(self) -> None:
        if self.state.phase == Phase.INITIALIZING:
            self._transition(Phase.PROGRESSING, "rollout started")
        while self.state.phase not in TERMINAL_PHASES:
            if self._stopping.is_set():
                self._log("machine_stopped", "info", "state machine stopped", {"phase": self.state.phase.value})
                self._persist()
                return
            if self._take_abort():
                continue
            if self._take_promote():
                self._force_promote()
                continue
            phase = self.state.phase
            if phase == Phase.PROGRESSING:
                self._enter_step()
            elif phase == Phase.PROMOTING or (phase == Phase.DEGRADED and self.state.degraded_from == Phase.PROMOTING):
                self._finalize_promotion()
            elif phase in {Phase.PAUSED, Phase.DEGRADED}:
                self._watch_step()
            elif phase == Phase.ABORTING:
                if not self._rollback():
                    return

    def _take_abort(self) -> bool:
        with self._lock:
            reason, self._abort_reason = self._abort_reason, None
        if reason is None or self.state.phase in TERMINAL_PHASES or self.state.phase == Phase.ABORTING:
            return False
        self._log("operator_abort", "warn", reason, {"phase": self.state.phase.value})
        self._begin_abort(reason)
        return True

    def _take_promote(self) -> bool:
        with self._lock:
            requested, self._promote_requested = self._promote_requested, False
        return requested and self.state.phase not in TERMINAL_PHASES and self.state.phase != Phase.ABORTING

    def _log(self, event_type: str, severity: str, message: str, payload: dict[str, Any] | None = None) -> None:
        self.events.add_log(
            event_type=event_type,
            severity=severity,
            module="rollout",
            message=message,
            related_ids=[self.state.id],
            payload={"workload": self.state.workload, **(payload or {})},
        )

    def _persist(self) -> None:
        with self._lock:
            self.store.save(self.state)

    def _transition(self, new_phase: Phase, reason: str) -> None:
        with self._lock:
            old_phase = self.state.phase
            if new_phase != old_phase and new_phase not in ALLOWED_TRANSITIONS.get(old_phase, set()):
                raise ValueError(f"Invalid rollout transition {old_phase.value} -> {new_phase.value}")
            self.state.phase = new_phase
        self._log(
            "transition",
            "info",
            f"{old_phase.value} -> {new_phase.value}",
            {"from": old_phase.value, "to": new_phase.value, "reason": reason, "step_index": self.state.current_step_index},
        )
        self._persist()

    def _alert(self, kind: AlertKind, failing_checks: tuple[str, ...] | list[str] = (), message: str = "") -> None:
        self.alerts.emit(
            Alert(
                kind=kind,
                rollout_id=self.state.id,
                workload=self.state.workload,
                step_index=self.state.current_step_index,
                weight=self.state.applied_weight,
                failing_checks=list(failing_checks),
                message=message,
            )
        )

    def _set_weight(self, weight: int) -> None:
        with self._lock:
            self.state.pending_weight = weight
        self._persist()
        try:
            self.splitter.set_weight(weight)
        except TrafficWriteError as exc:
            with self._lock:
                self.state.pending_weight = None
                self.state.last_error = str(exc)
            self._log("traffic_write_failed", "error", str(exc), {"weight": weight, "attempts": exc.attempts})
            self._persist()
            raise
        with self._lock:
            self.state.applied_weight = self.splitter.current_weight()
            self.state.pending_weight = None
        self._log("weight_applied", "info", f"canary weight {weight}%", {"weight": weight})
        self._persist()

    def _start_analysis(self, checks: tuple[AnalysisCheck, ...]) -> None:
        self._stop_analysis()
        self._handle = self.engine.start_step(
            checks,
            self.labels,
            dict(self.state.consecutive_check_failures),
            self.state.spec.rollback_thresholds,
            degraded=self.state.phase == Phase.DEGRADED,
            last_error=self.state.last_error,
        )

    def _stop_analysis(self) -> None:
        if self._handle is not None:
            self._handle.stop()
            self._handle = None

    def _absorb_counters(self) -> None:
        if self._handle is None:
            return
        counters = self._handle.counters
        with self._lock:
            self.state.consecutive_check_failures = {**self.state.consecutive_check_failures, **counters}

    def _record_outcome(self, verdict: OutcomeVerdict, *, reason: str = "", failing_checks: tuple[str, ...] | list[str] = ()) -> None:
        index = self.state.current_step_index
        outcome = StepOutcome(
            step_index=index,
            weight=self.state.spec.steps[index].weight_percent,
            verdict=verdict,
            started_at=self.state.step_started_at,
            finished_at=utc_now(),
            failing_checks=tuple(failing_checks),
            reason=reason,
        )
        with self._lock:
            self.state.append_outcome(outcome)
        self._log("step_outcome", "info" if verdict == OutcomeVerdict.PASSED else "warn", f"step {index} {verdict.value}", outcome.to_dict())
        self._persist()

    def _enter_step(self) -> None:
        index = self.state.current_step_index
        step = self.state.spec.steps[index]
        try:
            self._set_weight(step.weight_percent)
        except TrafficWriteError as exc:
            self._begin_abort(f"traffic write failed: {exc}")
            return
        with self._lock:
            self.state.step_started_at = utc_now()
            self.state.step_elapsed_seconds = 0.0
            self.state.inconclusive_extensions = 0
        self._start_analysis(self.state.spec.checks)
        self._transition(Phase.PAUSED, f"step {index} at {step.weight_percent}%")

    def _resume_step_analysis(self, weight: int) -> bool:
        """Re-apply traffic and restart analysis after a restart; False when the write failed."""
        try:
            self._set_weight(weight)
        except TrafficWriteError as exc:
            self._begin_abort(f"traffic write failed: {exc}")
            return False
        with self._lock:
            if self.state.step_started_at is None:
                self.state.step_started_at = utc_now()
        self._log("step_resumed", "info", f"resumed step {self.state.current_step_index}", {"elapsed_seconds": self.state.step_elapsed_seconds})
        self._start_analysis(self.state.spec.checks)
        return True

    def _watch_step(self) -> None:
        index = self.state.current_step_index
        step = self.state.spec.steps[index]
        if self._handle is None and not self._resume_step_analysis(step.weight_percent):
            return
        kind, payload = self._observe(step.pause_seconds)
        if kind == "command":
            return
        self._absorb_counters()
        if kind == "breach":
            self._on_breach(payload)
            return
        verdict: StepVerdict = payload
        if kind == "passed":
            self._record_outcome(OutcomeVerdict.PASSED, reason="all checks passed")
            self._stop_analysis()
            with self._lock:
                self.state.step_elapsed_seconds = 0.0
                self.state.inconclusive_extensions = 0
            if index == self.state.spec.last_step_index:
                self._transition(Phase.PROMOTING, "all steps passed")
                return
            with self._lock:
                self.state.current_step_index = index + 1
                self.state.step_started_at = None
            self._transition(Phase.PROGRESSING, f"step {index} passed")
            return
        failing = verdict.failing_checks or verdict.inconclusive_checks
        reason = "analysis failed" if kind == "failed" else "analysis inconclusive after extended pause"
        self._record_outcome(OutcomeVerdict.FAILED, reason=reason, failing_checks=failing)
        self._begin_abort(reason, failing)

    def _observe(self, limit_seconds: float) -> tuple[str, Any]:
        """Tick until the pause decides; returns (kind, payload)."""
        handle = self._handle
        if handle is None:
            raise RuntimeError(f"no analysis running for rollout {self.state.id}")
        last = self.clock()
        last_persist = last
        while True:
            with self._lock:
                if self._abort_reason is not None or self._promote_requested or self._stopping.is_set():
                    return "command", None
            now = self.clock()
            with self._lock:
                if self.state.phase != Phase.DEGRADED:
                    self.state.step_elapsed_seconds += now - last
            last = now
            breaches = handle.breaches
            if breaches:
                return "breach", breaches
            self._sync_degraded(handle)
            verdict = handle.verdict()
            if verdict.verdict == Verdict.FAILED:
                return "failed", verdict
            if self.state.phase != Phase.DEGRADED:
                allowed = limit_seconds * (1 + self.state.inconclusive_extensions)
                if self.state.step_elapsed_seconds >= allowed:
                    if verdict.verdict == Verdict.PASSED:
                        return "passed", verdict
                    if self.state.inconclusive_extensions > 0:
                        return "inconclusive", verdict
                    with self._lock:
                        self.state.inconclusive_extensions = 1
                    self._log("pause_extended", "warn", "inconclusive checks, pause extended once", {"checks": verdict.inconclusive_checks})
                    self._absorb_counters()
                    self._persist()
                    last_persist = now
            if now - last_persist >= PERSIST_EVERY_SECONDS:
                self._absorb_counters()
                self._persist()
                last_persist = now
            self._wake.wait(self.decision_tick_seconds)
            self._wake.clear()

    def _sync_degraded(self, handle: AnalysisHandle) -> None:
        if handle.degraded and self.state.phase != Phase.DEGRADED:
            error = handle.last_error
            with self._lock:
                self.state.degraded_from = self.state.phase
                self.state.last_error = error
            self._absorb_counters()
            self._transition(Phase.DEGRADED, f"metric source unavailable: {error}")
            self._alert(AlertKind.DEGRADED, message=error or "")
        elif not handle.degraded and self.state.phase == Phase.DEGRADED:
            with self._lock:
                target = self.state.degraded_from or Phase.PAUSED
                self.state.degraded_from = None
            self._transition(target, "metric source recovered")

    def _on_breach(self, breaches: list[ThresholdBreach]) -> None:
        names = sorted({row.name for row in breaches})
        detail = "; ".join(row.describe() for row in breaches)
        self._log("rollback_threshold_breach", "error", detail, {"breaches": names})
        self._alert(AlertKind.ROLLBACK_THRESHOLD_BREACH, names, detail)
        self._begin_abort(f"rollback threshold breached: {detail}", names)

    def _begin_abort(self, reason: str, failing_checks: tuple[str, ...] | list[str] = ()) -> None:
        self._stop_analysis()
        with self._lock:
            self.state.abort_reason = reason
            self.state.degraded_from = None
            self._abort_failing = tuple(failing_checks)
        self._transition(Phase.ABORTING, reason)
        self._alert(AlertKind.ABORTING, failing_checks, reason)

    def _rollback(self) -> bool:
        try:
            self._set_weight(0)
        except TrafficWriteError as exc:
            self._log("rollback_failed", "critical", str(exc), {"attempts": exc.attempts})
            self._alert(AlertKind.ROLLBACK_FAILED, self._abort_failing, str(exc))
            return False
        self._record_outcome(
            OutcomeVerdict.ABORTED,
            reason=self.state.abort_reason or "aborted",
            failing_checks=self._abort_failing,
        )
        self._transition(Phase.ROLLED_BACK, "traffic returned to stable")
        return True

    def _final_validation_seconds(self) -> float:
        window = self.state.spec.final_validation_seconds
        if window is None:
            window = self.default_final_validation_seconds
        return float(window or 0.0)

    def _finalize_promotion(self) -> None:
        try:
            self._set_weight(100)
        except TrafficWriteError as exc:
            self._begin_abort(f"traffic write failed: {exc}")
            return
        window = self._final_validation_seconds()
        if self.state.phase == Phase.DEGRADED and window <= 0:
            with self._lock:
                self.state.degraded_from = None
            self._transition(Phase.PROMOTING, "promotion resumed")
        with self._lock:
            if not self.state.promotion:
                self.state.promotion = {"mode": "automatic", "validation_seconds": window, "started_at": utc_now().isoformat(), "verdict": None}
        if window > 0:
            self._start_analysis(self.state.spec.checks)
            kind, payload = self._observe(window)
            if kind == "command":
                return
            self._absorb_counters()
            if kind != "passed":
                with self._lock:
                    self.state.promotion = {**(self.state.promotion or {}), "verdict": "failed", "finished_at": utc_now().isoformat()}
                if kind == "breach":
                    self._on_breach(payload)
                else:
                    failing = payload.failing_checks or payload.inconclusive_checks
                    self._begin_abort(f"final validation {kind}", failing)
                return
            self._stop_analysis()
        with self._lock:
            self.state.promotion = {**(self.state.promotion or {}), "verdict": "passed", "finished_at": utc_now().isoformat()}
        self._log("rollout_promoted", "info", "canary promoted to stable", {"mode": "automatic", "canary_version": self.state.spec.canary_version})
        self._transition(Phase.SUCCEEDED, "final validation passed")
        self._alert(AlertKind.SUCCEEDED, message=f"{self.state.spec.canary_version} is the new stable")

    def _force_promote(self) -> None:
        self._stop_analysis()
        from_phase = self.state.phase
        self._log(
            "manual_promote",
            "warn",
            "operator promote: remaining analysis skipped",
            {"from": from_phase.value, "step_index": self.state.current_step_index},
        )
        with self._lock:
            self.state.degraded_from = None
        if from_phase != Phase.PROMOTING:
            self._transition(Phase.PROMOTING, "operator promote")
        try:
            self._set_weight(100)
        except TrafficWriteError as exc:
            self._begin_abort(f"traffic write failed: {exc}")
            return
        last = self.state.history[-1] if self.state.history else None
        if last is None or last.step_index != self.state.current_step_index or last.verdict != OutcomeVerdict.PASSED:
            self._record_outcome(OutcomeVerdict.PASSED, reason="operator promote")
        with self._lock:
            self.state.promotion = {"mode": "manual", "validation_seconds": 0.0, "verdict": "skipped", "finished_at": utc_now().isoformat()}
        self._transition(Phase.SUCCEEDED, "operator promote")
        self._alert(AlertKind.SUCCEEDED, message=f"{self.state.spec.canary_version} promoted by operator")
