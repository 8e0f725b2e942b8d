from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from canary_core.analysis.checks import CheckTracker, aggregate
from canary_core.config import AnalysisConfig
from canary_core.errors import MetricQueryError
from canary_core.metrics.source import CohortLabels, MetricSource
from canary_core.types import MetricQueryResult, StepVerdict, ThresholdBreach

if TYPE_CHECKING:
    from canary_core.rollout.models import AnalysisCheck, RollbackThreshold


DEFAULT_THRESHOLD_INTERVAL_SECONDS = 5.0
TIMEOUT_SHARE_OF_INTERVAL = 0.8


class AnalysisHandle:
    """Background evaluation of one step; read by the decision loop, never written by it."""

    def __init__(
        self,
        source: MetricSource,
        *,
        checks: Iterable[AnalysisCheck],
        labels: CohortLabels,
        counters: dict[str, int] | None = None,
        rollback_thresholds: Iterable[RollbackThreshold] = (),
        query_timeout_seconds: float = 5.0,
        degraded_after_errors: int = 3,
        threshold_interval_seconds: float = DEFAULT_THRESHOLD_INTERVAL_SECONDS,
        degraded: bool = False,
        last_error: str | None = None,
    ) -> None:
        self.source = source
        self.labels = labels
        self.checks = list(checks)
        self.rollback_thresholds = list(rollback_thresholds)
        self.query_timeout_seconds = query_timeout_seconds
        self.degraded_after_errors = degraded_after_errors
        seeded = counters or {}
        self._trackers = {check.name: CheckTracker(check, seeded.get(check.name, 0)) for check in self.checks}
        if self.checks:
            self.threshold_interval_seconds = min(check.evaluation_interval_seconds for check in self.checks)
            self.threshold_window_seconds = min(check.query_window_seconds for check in self.checks)
        else:
            self.threshold_interval_seconds = threshold_interval_seconds
            self.threshold_window_seconds = threshold_interval_seconds
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._breaches: list[ThresholdBreach] = []
        # A handle resumed in degraded mode stays there until a query succeeds.
        self._consecutive_errors = degraded_after_errors if degraded else 0
        self._last_error: str | None = last_error
        self._query_count = 0
        self._error_count = 0
        loops = len(self.checks) + (1 if self.rollback_thresholds else 0)
        self._pool = ThreadPoolExecutor(max_workers=max(2, 2 * loops), thread_name_prefix=f"analysis-{labels.rollout_id}")
        self._threads: list[threading.Thread] = []

    def start(self) -> "AnalysisHandle":
        for tracker in self._trackers.values():
            th = threading.Thread(
                target=self._check_loop,
                args=(tracker,),
                name=f"check-{self.labels.rollout_id}-{tracker.check.name}",
                daemon=True,
            )
            self._threads.append(th)
        if self.rollback_thresholds:
            self._threads.append(
                threading.Thread(target=self._threshold_loop, name=f"thresholds-{self.labels.rollout_id}", daemon=True)
            )
        for th in self._threads:
            th.start()
        return self

    def stop(self, wait: float | None = None) -> None:
        self._stop.set()
        self._pool.shutdown(wait=False, cancel_futures=True)
        if wait is not None:
            for th in self._threads:
                th.join(timeout=wait)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _timeout_for(self, interval: float) -> float:
        return min(self.query_timeout_seconds, TIMEOUT_SHARE_OF_INTERVAL * interval)

    def _query(self, metric: str, window_seconds: float, timeout: float) -> MetricQueryResult:
        try:
            future = self._pool.submit(self.source.query, metric, self.labels, window_seconds)
        except RuntimeError as exc:
            raise MetricQueryError(metric, "analysis stopped") from exc
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise MetricQueryError(metric, f"timed out after {timeout:.3f}s") from exc
        except MetricQueryError:
            raise
        except Exception as exc:
            raise MetricQueryError(metric, repr(exc)) from exc

    def _record_error(self, exc: MetricQueryError) -> None:
        with self._lock:
            if self._stop.is_set():
                return
            self._query_count += 1
            self._error_count += 1
            self._consecutive_errors += 1
            self._last_error = str(exc)

    def _record_success(self) -> bool:
        if self._stop.is_set():
            return False
        self._query_count += 1
        self._consecutive_errors = 0
        return True

    def _check_loop(self, tracker: CheckTracker) -> None:
        check = tracker.check
        timeout = self._timeout_for(check.evaluation_interval_seconds)
        while not self._stop.wait(check.evaluation_interval_seconds):
            try:
                result = self._query(check.metric, check.query_window_seconds, timeout)
            except MetricQueryError as exc:
                self._record_error(exc)
                continue
            with self._lock:
                if not self._record_success():
                    return
                tracker.observe(result, datetime.now(timezone.utc))

    def _threshold_loop(self) -> None:
        timeout = self._timeout_for(self.threshold_interval_seconds)
        while not self._stop.wait(self.threshold_interval_seconds):
            for threshold in self.rollback_thresholds:
                if self._stop.is_set():
                    return
                window = threshold.window_seconds or self.threshold_window_seconds
                try:
                    result = self._query(threshold.metric, window, timeout)
                except MetricQueryError as exc:
                    self._record_error(exc)
                    continue
                with self._lock:
                    if not self._record_success():
                        return
                    if result.has_data and threshold.breached(result.value):
                        self._breaches.append(
                            ThresholdBreach(
                                name=threshold.name,
                                metric=threshold.metric,
                                value=result.value,
                                threshold=threshold.threshold,
                                comparator=threshold.comparator,
                                observed_at=datetime.now(timezone.utc),
                            )
                        )

    def verdict(self) -> StepVerdict:
        with self._lock:
            return aggregate([tracker.result() for tracker in self._trackers.values()])

    @property
    def breaches(self) -> list[ThresholdBreach]:
        with self._lock:
            return list(self._breaches)

    @property
    def degraded(self) -> bool:
        with self._lock:
            return self._consecutive_errors >= self.degraded_after_errors

    @property
    def consecutive_errors(self) -> int:
        with self._lock:
            return self._consecutive_errors

    @property
    def last_error(self) -> str | None:
        with self._lock:
            return self._last_error

    @property
    def counters(self) -> dict[str, int]:
        with self._lock:
            return {name: tracker.failure_streak for name, tracker in self._trackers.items()}

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"queries": self._query_count, "errors": self._error_count, "consecutive_errors": self._consecutive_errors}


class AnalysisEngine:
    def __init__(
        self,
        source: MetricSource,
        *,
        query_timeout_seconds: float = 5.0,
        degraded_after_errors: int = 3,
        threshold_interval_seconds: float = DEFAULT_THRESHOLD_INTERVAL_SECONDS,
    ) -> None:
        self.source = source
        self.query_timeout_seconds = query_timeout_seconds
        self.degraded_after_errors = degraded_after_errors
        self.threshold_interval_seconds = threshold_interval_seconds

    @classmethod
    def from_config(cls, source: MetricSource, cfg: AnalysisConfig) -> "AnalysisEngine":
        return cls(source, query_timeout_seconds=cfg.query_timeout_seconds, degraded_after_errors=cfg.degraded_after_errors)

    def start_step(
        self,
        checks: Iterable[AnalysisCheck],
        labels: CohortLabels,
        counters: dict[str, int] | None = None,
        rollback_thresholds: Iterable[RollbackThreshold] = (),
        *,
        degraded: bool = False,
        last_error: str | None = None,
    ) -> AnalysisHandle:
        handle = AnalysisHandle(
            self.source,
            checks=checks,
            labels=labels,
            counters=counters,
            rollback_thresholds=rollback_thresholds,
            query_timeout_seconds=self.query_timeout_seconds,
            degraded_after_errors=self.degraded_after_errors,
            threshold_interval_seconds=self.threshold_interval_seconds,
            degraded=degraded,
            last_error=last_error,
        )
        return handle.start()
