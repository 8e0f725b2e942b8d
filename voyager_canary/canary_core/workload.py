from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Any

import numpy as np

from canary_core.metrics.source import CohortLabels, CohortMetricStore
from canary_core.traffic.splitter import InMemoryTrafficBackend
from canary_core.types import Cohort


PROCESSORS = ("stripe", "adyen", "mercadopago")
DECLINE_REASONS = ("insufficient_funds", "card_declined", "processor_timeout", "invalid_card")

DEFAULT_FAILURE_RATE = 0.02
DEFAULT_BASE_LATENCY_MS = 50.0
DEFAULT_JITTER_MS = 50


@dataclass(slots=True, frozen=True)
class CohortProfile:
    """Behaviour of one deployed version of the payment-authorization mock."""

    failure_rate: float = DEFAULT_FAILURE_RATE
    base_latency_ms: float = DEFAULT_BASE_LATENCY_MS
    jitter_ms: int = DEFAULT_JITTER_MS


HEALTHY = CohortProfile(failure_rate=0.002)

SCENARIOS: dict[str, CohortProfile] = {
    "normal": HEALTHY,
    "high_latency": CohortProfile(failure_rate=0.002, base_latency_ms=2000.0),
    "high_error_rate": CohortProfile(failure_rate=0.15),
    "degradation": CohortProfile(failure_rate=0.08, base_latency_ms=500.0),
    "bad_deployment": CohortProfile(failure_rate=0.5),
}


def scenario_profile(name: str) -> CohortProfile:
    try:
        return SCENARIOS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown scenario: {name} (expected one of {', '.join(sorted(SCENARIOS))})") from exc


class SimulatedWorkload:
    """Produces authorization requests for both cohorts of one rollout.

    Each request is routed on its own through the in-memory router, then its
    outcome is recorded in the cohort metric store.
    """

    def __init__(
        self,
        *,
        store: CohortMetricStore,
        router: InMemoryTrafficBackend,
        rollout_id: str,
        workload: str,
        stable_version: str,
        canary_version: str,
        stable: CohortProfile = HEALTHY,
        canary: CohortProfile = HEALTHY,
        seed: int | None = None,
    ) -> None:
        self.store = store
        self.router = router
        self.rollout_id = rollout_id
        self.workload = workload
        self.versions = {Cohort.STABLE: stable_version, Cohort.CANARY: canary_version}
        self.profiles = {Cohort.STABLE: stable, Cohort.CANARY: canary}
        self.rng = np.random.default_rng(seed)
        self._route_rng = random.Random(seed)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.served = {Cohort.STABLE: 0, Cohort.CANARY: 0}
        self.declined = {Cohort.STABLE: 0, Cohort.CANARY: 0}
        self.processor_counts = {name: 0 for name in PROCESSORS}
        self.decline_reasons = {name: 0 for name in DECLINE_REASONS}

    def labels(self, cohort: Cohort) -> CohortLabels:
        return CohortLabels(rollout_id=self.rollout_id, workload=self.workload, cohort=cohort, version=self.versions[cohort])

    def serve(self, n_requests: int) -> dict[str, int]:
        routed = [self.router.route(self.rollout_id, self._route_rng) for _ in range(max(0, int(n_requests)))]
        counts = {cohort: routed.count(cohort) for cohort in Cohort}
        with self._lock:
            for cohort, n in counts.items():
                if n == 0:
                    continue
                profile = self.profiles[cohort]
                declined = self.rng.random(n) < profile.failure_rate
                latency = profile.base_latency_ms + self.rng.integers(0, max(1, profile.jitter_ms), size=n)
                processors = self.rng.choice(len(PROCESSORS), size=n)
                labels = self.labels(cohort)
                for ok, ms in zip(~declined, latency):
                    self.store.record(labels, success=bool(ok), latency_ms=float(ms))
                for idx in processors:
                    self.processor_counts[PROCESSORS[int(idx)]] += 1
                n_declined = int(declined.sum())
                for idx in self.rng.choice(len(DECLINE_REASONS), size=n_declined):
                    self.decline_reasons[DECLINE_REASONS[int(idx)]] += 1
                self.served[cohort] += n
                self.declined[cohort] += n_declined
        return {cohort.value: n for cohort, n in counts.items()}

    def _run(self, requests_per_tick: int, tick_seconds: float) -> None:
        while not self._stop.wait(tick_seconds):
            self.serve(requests_per_tick)

    def start(self, *, requests_per_second: float = 400.0, tick_seconds: float = 0.05) -> "SimulatedWorkload":
        per_tick = max(1, int(round(requests_per_second * tick_seconds)))
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, args=(per_tick, tick_seconds), name=f"workload-{self.rollout_id}", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: float | None = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "served": {cohort.value: n for cohort, n in self.served.items()},
                "declined": {cohort.value: n for cohort, n in self.declined.items()},
                "processors": dict(self.processor_counts),
                "decline_reasons": dict(self.decline_reasons),
            }
