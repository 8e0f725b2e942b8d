from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import numpy as np

from canary_core.errors import MetricQueryError
from canary_core.types import Cohort, MetricQueryResult


@dataclass(slots=True, frozen=True)
class CohortLabels:
    """Selects the traffic of one version of one workload within one rollout."""

    rollout_id: str
    workload: str
    cohort: Cohort
    version: str

    def as_dict(self) -> dict[str, str]:
        return {
            "rollout_id": self.rollout_id,
            "workload": self.workload,
            "cohort": self.cohort.value,
            "version": self.version,
        }


class MetricSource:
    """Read-only query contract.

    `query` returns zero samples when the cohort has seen no traffic in the
    window and raises `MetricQueryError` when the backend cannot answer.
    """

    def query(self, metric: str, labels: CohortLabels, window_seconds: float) -> MetricQueryResult:
        raise NotImplementedError


@dataclass(slots=True, frozen=True)
class RequestSample:
    ts: float
    success: bool
    latency_ms: float


LATENCY_QUANTILES = {"latency_p50": 50.0, "latency_p95": 95.0, "latency_p99": 99.0}
SUPPORTED_METRICS = {"success_rate", "error_rate", "error_count", "request_count", *LATENCY_QUANTILES}


class CohortMetricStore(MetricSource):
    """In-memory request tallies, one series per (rollout, cohort)."""

    def __init__(self, *, retention_seconds: float = 3600.0, max_samples: int = 200_000, clock: Callable[[], float] = time.monotonic) -> None:
        self.retention_seconds = retention_seconds
        self.max_samples = max_samples
        self.clock = clock
        self._lock = threading.Lock()
        self._series: dict[tuple[str, Cohort], deque[RequestSample]] = {}

    @staticmethod
    def _key(labels: CohortLabels) -> tuple[str, Cohort]:
        return (labels.rollout_id, labels.cohort)

    def record(self, labels: CohortLabels, *, success: bool, latency_ms: float) -> None:
        now = self.clock()
        with self._lock:
            series = self._series.setdefault(self._key(labels), deque(maxlen=self.max_samples))
            series.append(RequestSample(ts=now, success=bool(success), latency_ms=float(latency_ms)))
            horizon = now - self.retention_seconds
            while series and series[0].ts < horizon:
                series.popleft()

    def reset(self, rollout_id: str | None = None) -> None:
        with self._lock:
            if rollout_id is None:
                self._series.clear()
                return
            for key in [key for key in self._series if key[0] == rollout_id]:
                del self._series[key]

    def _window(self, labels: CohortLabels, window_seconds: float) -> list[RequestSample]:
        horizon = self.clock() - window_seconds
        with self._lock:
            series = self._series.get(self._key(labels))
            if not series:
                return []
            return [row for row in series if row.ts >= horizon]

    def query(self, metric: str, labels: CohortLabels, window_seconds: float) -> MetricQueryResult:
        if metric not in SUPPORTED_METRICS:
            raise MetricQueryError(metric, "unsupported metric")
        rows = self._window(labels, window_seconds)
        count = len(rows)
        if count == 0:
            return MetricQueryResult(value=0.0, sample_count=0)
        successes = sum(1 for row in rows if row.success)
        if metric == "success_rate":
            value = 100.0 * successes / count
        elif metric == "error_rate":
            value = 100.0 * (count - successes) / count
        elif metric == "error_count":
            value = float(count - successes)
        elif metric == "request_count":
            value = float(count)
        else:
            latencies = np.fromiter((row.latency_ms for row in rows), dtype=float, count=count)
            value = float(np.percentile(latencies, LATENCY_QUANTILES[metric]))
        return MetricQueryResult(value=value, sample_count=count)
