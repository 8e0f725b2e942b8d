from __future__ import annotations

import threading
from pathlib import Path

import pytest

from canary_core.errors import MetricQueryError, OperatorOverrideConflict, RolloutNotFound, ValidationError, WorkloadBusy
from canary_core.rollout.models import Phase, RolloutState, utc_now
from canary_core.traffic.splitter import InMemoryTrafficBackend

from canary_testkit import BlockingTrafficBackend, FlakyTrafficBackend, ScriptedMetricSource, make_controller, make_spec, wait_for


HEALTHY = {"success_rate": 99.8}


def _event_types(ctl, rollout_id: str) -> list[str]:
  return [row["type"] for row in ctl.events.events_for(rollout_id)]


def test_one_active_rollout_per_workload(tmp_path: Path) -> None:
  ctl = make_controller(tmp_path, ScriptedMetricSource(HEALTHY))
  try:
    first = ctl.start(make_spec(pause=5.0))
    with pytest.raises(WorkloadBusy):
      ctl.start(make_spec(pause=5.0))
    other = ctl.start(make_spec(pause=5.0, workload="voyager-ledger"))

    assert {row["id"] for row in ctl.list_rollouts()} == {first, other}
    assert [row["id"] for row in ctl.list_rollouts(workload="voyager-ledger")] == [other]

    ctl.abort(first)
    ctl.abort(other, reason="maintenance window")
    assert ctl.wait(first, timeout=5.0)["phase"] == "rolled_back"
    done = ctl.wait(other, timeout=5.0)
    assert done["phase"] == "rolled_back"
    assert done["history"][-1]["verdict"] == "aborted"
    assert done["history"][-1]["reason"] == "maintenance window"
    assert ctl.traffic_backend.weight(other) == 0
  finally:
    ctl.shutdown()


def test_invalid_definition_changes_nothing(tmp_path: Path) -> None:
  backend = InMemoryTrafficBackend()
  ctl = make_controller(tmp_path, ScriptedMetricSource(HEALTHY), backend)
  payload = make_spec().model_dump(mode="json")
  payload["steps"] = [{"weight_percent": 50}, {"weight_percent": 10}, {"weight_percent": 100}]

  with pytest.raises(ValidationError):
    ctl.start(payload)

  assert backend.write_count() == 0
  assert ctl.store.list() == []
  with pytest.raises(RolloutNotFound):
    ctl.status("ro_missing")


def test_status_exposes_pending_weight(tmp_path: Path) -> None:
  backend = BlockingTrafficBackend()
  ctl = make_controller(tmp_path, ScriptedMetricSource(HEALTHY), backend)
  try:
    rollout_id = ctl.start(make_spec(pause=5.0))
    assert backend.entered.wait(2.0)
    snapshot = ctl.status(rollout_id)
    assert snapshot["pending_weight"] == 5
    assert snapshot["applied_weight"] == 0
    assert snapshot["running"] is True
    backend.release.set()
    assert wait_for(lambda: ctl.status(rollout_id)["applied_weight"] == 5)
    assert ctl.status(rollout_id)["pending_weight"] is None
  finally:
    backend.release.set()
    ctl.shutdown()


def test_manual_promote_skips_remaining_steps(tmp_path: Path) -> None:
  ctl = make_controller(tmp_path, ScriptedMetricSource(HEALTHY))
  try:
    rollout_id = ctl.start(make_spec(pause=5.0))
    assert wait_for(lambda: ctl.status(rollout_id)["phase"] == "paused")

    ctl.promote(rollout_id)
    snapshot = ctl.wait(rollout_id, timeout=5.0)

    assert snapshot["phase"] == "succeeded"
    assert snapshot["applied_weight"] == 100
    assert snapshot["promotion"]["mode"] == "manual"
    assert snapshot["history"][-1]["reason"] == "operator promote"
    assert "manual_promote" in _event_types(ctl, rollout_id)
    assert [row["kind"] for row in snapshot["alerts"]] == ["succeeded"]

    with pytest.raises(OperatorOverrideConflict):
      ctl.promote(rollout_id)
    with pytest.raises(OperatorOverrideConflict):
      ctl.abort(rollout_id)
    with pytest.raises(OperatorOverrideConflict):
      ctl.retry(rollout_id)
  finally:
    ctl.shutdown()


def test_retry_starts_fresh_rollout_linked_to_the_failed_one(tmp_path: Path) -> None:
  ctl = make_controller(tmp_path, ScriptedMetricSource({"success_rate": 95.0}))
  try:
    failed = ctl.start(make_spec(steps=(50, 100)))
    assert ctl.wait(failed, timeout=5.0)["phase"] == "rolled_back"

    retried = ctl.retry(failed, canary_version="1.1.1")
    snapshot = ctl.status(retried)

    assert retried != failed
    assert snapshot["retry_of"] == failed
    assert snapshot["spec"]["canary_version"] == "1.1.1"
    assert ctl.status(failed)["phase"] == "rolled_back"
    assert "rollout_retried" in _event_types(ctl, failed)
    ctl.wait(retried, timeout=5.0)
  finally:
    ctl.shutdown()


def test_abort_reattempts_a_failed_rollback(tmp_path: Path) -> None:
  backend = FlakyTrafficBackend(fail_weights=(0,))
  ctl = make_controller(tmp_path, ScriptedMetricSource({"success_rate": 90.0}), backend)
  try:
    rollout_id = ctl.start(make_spec(steps=(50, 100)))
    stuck = ctl.wait(rollout_id, timeout=5.0)
    assert stuck["phase"] == "aborting"
    assert stuck["running"] is False
    assert "Traffic write of 0%" in stuck["last_error"]
    assert "rollback_failed" in [row["kind"] for row in stuck["alerts"]]
    assert "traffic_write_retry" in _event_types(ctl, rollout_id)

    backend.heal()
    ctl.abort(rollout_id)
    done = ctl.wait(rollout_id, timeout=5.0)

    assert done["phase"] == "rolled_back"
    assert backend.weight(rollout_id) == 0
  finally:
    ctl.shutdown()


def test_resume_picks_up_persisted_rollouts(tmp_path: Path) -> None:
  first = make_controller(tmp_path, ScriptedMetricSource(HEALTHY))
  rollout_id = first.start(make_spec(pause=30.0))
  assert wait_for(lambda: first.status(rollout_id)["phase"] == "paused")
  first.shutdown()
  assert first.status(rollout_id)["running"] is False

  backend = InMemoryTrafficBackend()
  second = make_controller(tmp_path, ScriptedMetricSource(HEALTHY), backend)
  try:
    assert second.resume() == [rollout_id]
    assert wait_for(lambda: backend.weight(rollout_id) == 5)
    snapshot = second.status(rollout_id)
    assert snapshot["phase"] == "paused"
    assert snapshot["current_step_index"] == 0
    assert snapshot["history"] == []
    assert "rollout_resumed" in _event_types(second, rollout_id)
    assert wait_for(lambda: "step_resumed" in _event_types(second, rollout_id))
    with pytest.raises(WorkloadBusy):
      second.start(make_spec())

    second.promote(rollout_id)
    assert second.wait(rollout_id, timeout=5.0)["phase"] == "succeeded"
    assert second.resume() == []
  finally:
    second.shutdown()


def test_resume_in_degraded_holds_until_metrics_answer(tmp_path: Path) -> None:
  outage = threading.Event()
  outage.set()

  def _answer(metric, labels):
    if outage.is_set():
      raise MetricQueryError(metric, "prometheus unreachable")
    return 99.8

  source = ScriptedMetricSource(value_fn=_answer)
  backend = InMemoryTrafficBackend()
  ctl = make_controller(tmp_path, source, backend)
  ctl.store.save(
    RolloutState(
      id="ro_degraded",
      spec=make_spec(pause=30.0, interval=0.02),
      phase=Phase.DEGRADED,
      degraded_from=Phase.PAUSED,
      applied_weight=5,
      step_started_at=utc_now(),
      step_elapsed_seconds=0.5,
      consecutive_check_failures={"success_rate": 1},
      last_error="metric success_rate: prometheus unreachable",
    )
  )
  try:
    assert ctl.resume() == ["ro_degraded"]
    assert wait_for(lambda: source.query_count() >= 3)
    snapshot = ctl.status("ro_degraded")
    assert snapshot["phase"] == "degraded"
    assert snapshot["step_elapsed_seconds"] == pytest.approx(0.5)
    assert snapshot["consecutive_check_failures"] == {"success_rate": 1}
    assert backend.weight("ro_degraded") == 5
    assert "transition" not in _event_types(ctl, "ro_degraded")

    outage.clear()
    assert wait_for(lambda: ctl.status("ro_degraded")["phase"] == "paused")
    transitions = [
      (row["payload"]["from"], row["payload"]["to"], row["payload"]["reason"])
      for row in ctl.events.events_for("ro_degraded")
      if row["type"] == "transition"
    ]
    assert transitions == [("degraded", "paused", "metric source recovered")]
  finally:
    ctl.shutdown()
