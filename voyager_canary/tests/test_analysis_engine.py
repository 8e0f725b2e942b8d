from __future__ import annotations

import time

from canary_core.analysis.checks import CheckTracker, aggregate
from canary_core.analysis.engine import AnalysisEngine
from canary_core.metrics.source import CohortLabels, MetricSource
from canary_core.rollout.models import AnalysisCheck, RollbackThreshold
from canary_core.types import CheckResult, Cohort, MetricQueryResult, Verdict

from canary_testkit import ScriptedMetricSource, wait_for


LABELS = CohortLabels(rollout_id="ro_1", workload="voyager-gateway", cohort=Cohort.CANARY, version="1.1.0")


def _check(interval: float = 0.05, consecutive: int = 2) -> AnalysisCheck:
  return AnalysisCheck(
    name="success_rate",
    metric="success_rate",
    comparator=">=",
    threshold=99.0,
    consecutive_failures_to_fail=consecutive,
    evaluation_interval_seconds=interval,
  )


FLOOR = RollbackThreshold(name="success_floor", metric="success_rate", comparator="<", threshold=98.0)


def test_tracker_streak_and_latch() -> None:
  tracker = CheckTracker(_check(consecutive=2))
  assert tracker.verdict == Verdict.INCONCLUSIVE

  tracker.observe(MetricQueryResult(99.5, 10))
  assert tracker.verdict == Verdict.PASSED

  tracker.observe(MetricQueryResult(95.0, 10))
  assert tracker.failure_streak == 1
  assert tracker.verdict == Verdict.PASSED

  tracker.observe(MetricQueryResult(99.5, 10))
  assert tracker.failure_streak == 0

  tracker.observe(MetricQueryResult(95.0, 10))
  tracker.observe(MetricQueryResult(96.0, 10))
  assert tracker.verdict == Verdict.FAILED

  tracker.observe(MetricQueryResult(99.9, 10))
  assert tracker.verdict == Verdict.FAILED


def test_tracker_ignores_empty_windows() -> None:
  tracker = CheckTracker(_check(consecutive=1), failure_streak=0)
  for _ in range(5):
    tracker.observe(MetricQueryResult(0.0, 0))
  result = tracker.result()
  assert result.verdict == Verdict.INCONCLUSIVE
  assert result.samples == 0
  assert result.failure_streak == 0
  assert result.last_sampled_at is not None


def test_aggregate_rules() -> None:
  passed = CheckResult(name="a", verdict=Verdict.PASSED)
  failed = CheckResult(name="b", verdict=Verdict.FAILED)
  unknown = CheckResult(name="c", verdict=Verdict.INCONCLUSIVE)

  assert aggregate([]).verdict == Verdict.PASSED
  assert aggregate([passed]).verdict == Verdict.PASSED
  assert aggregate([passed, unknown]).verdict == Verdict.INCONCLUSIVE
  verdict = aggregate([passed, unknown, failed])
  assert verdict.verdict == Verdict.FAILED
  assert verdict.failing_checks == ["b"]
  assert verdict.inconclusive_checks == ["c"]


def test_consecutive_failures_fail_the_step() -> None:
  source = ScriptedMetricSource({"success_rate": 95.0})
  source.script("success_rate", 95.0, 99.5)
  handle = AnalysisEngine(source).start_step([_check()], LABELS)
  try:
    assert wait_for(lambda: handle.verdict().verdict == Verdict.FAILED)
    assert source.query_count("success_rate") >= 4
    assert handle.verdict().failing_checks == ["success_rate"]
  finally:
    handle.stop()


def test_zero_samples_stay_inconclusive_and_never_breach() -> None:
  source = ScriptedMetricSource()
  handle = AnalysisEngine(source).start_step([_check()], LABELS, rollback_thresholds=[FLOOR])
  try:
    assert wait_for(lambda: source.query_count() >= 8)
    assert handle.verdict().verdict == Verdict.INCONCLUSIVE
    assert handle.breaches == []
    assert not handle.degraded
  finally:
    handle.stop()


def test_threshold_breach_is_reported() -> None:
  source = ScriptedMetricSource({"success_rate": 97.0})
  handle = AnalysisEngine(source).start_step([_check(consecutive=5)], LABELS, rollback_thresholds=[FLOOR])
  try:
    assert wait_for(lambda: bool(handle.breaches))
    breach = handle.breaches[0]
    assert breach.name == "success_floor"
    assert breach.value == 97.0
    assert "success_rate=97.0 < 98.0" in breach.describe()
  finally:
    handle.stop()


def test_query_errors_degrade_without_touching_counters() -> None:
  source = ScriptedMetricSource({"success_rate": 99.5})
  source.fail("success_rate", 1000)
  handle = AnalysisEngine(source, degraded_after_errors=3).start_step([_check()], LABELS, counters={"success_rate": 1})
  try:
    assert wait_for(lambda: handle.degraded)
    assert handle.consecutive_errors >= 3
    assert "prometheus unreachable" in (handle.last_error or "")
    assert handle.counters == {"success_rate": 1}
    assert handle.verdict().verdict == Verdict.INCONCLUSIVE
  finally:
    handle.stop()


def test_resumed_degraded_handle_waits_for_a_successful_query() -> None:
  source = ScriptedMetricSource({"success_rate": 99.5})
  source.fail("success_rate", 4)
  handle = AnalysisEngine(source, degraded_after_errors=3).start_step(
    [_check()], LABELS, counters={"success_rate": 1}, degraded=True, last_error="prometheus unreachable"
  )
  try:
    assert handle.degraded
    assert handle.last_error == "prometheus unreachable"
    assert wait_for(lambda: handle.stats()["errors"] >= 1)
    assert handle.degraded
    assert wait_for(lambda: not handle.degraded)
    assert handle.stats()["queries"] > handle.stats()["errors"]
  finally:
    handle.stop()


def test_recovery_resets_error_count_only() -> None:
  source = ScriptedMetricSource()
  source.fail("success_rate", 3)
  handle = AnalysisEngine(source, degraded_after_errors=3).start_step([_check()], LABELS, counters={"success_rate": 1})
  try:
    assert wait_for(lambda: handle.stats()["errors"] == 3 and handle.stats()["queries"] >= 5)
    assert not handle.degraded
    assert handle.consecutive_errors == 0
    assert handle.counters == {"success_rate": 1}
  finally:
    handle.stop()


class _SlowSource(MetricSource):
  def query(self, metric, labels, window_seconds):
    time.sleep(0.3)
    return MetricQueryResult(99.9, 10)


def test_slow_queries_time_out() -> None:
  handle = AnalysisEngine(_SlowSource(), query_timeout_seconds=5.0).start_step([_check(interval=0.1)], LABELS)
  try:
    assert wait_for(lambda: handle.consecutive_errors >= 1)
    assert "timed out" in (handle.last_error or "")
    assert handle.verdict().verdict == Verdict.INCONCLUSIVE
  finally:
    handle.stop()


def test_results_after_stop_are_discarded() -> None:
  source = ScriptedMetricSource({"success_rate": 99.9})
  handle = AnalysisEngine(source).start_step([_check()], LABELS)
  handle.stop(wait=1.0)
  assert handle.stopped
  frozen = handle.verdict().checks[0].samples
  time.sleep(0.15)
  assert handle.verdict().checks[0].samples == frozen
