from __future__ import annotations

import random
import threading
import time
from typing import Any, Callable

import requests

from canary_core.errors import TrafficBusyError, TrafficWriteError
from canary_core.retry import RetryPolicy, call_with_backoff
from canary_core.types import Cohort


class TrafficBackend:
    """Control-plane adapter that owns the real routing table."""

    def apply_weight(self, rollout_id: str, workload: str, canary_weight: int) -> None:
        raise NotImplementedError


class InMemoryTrafficBackend(TrafficBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._routes: dict[str, int] = {}
        self.writes: list[dict[str, Any]] = []

    def apply_weight(self, rollout_id: str, workload: str, canary_weight: int) -> None:
        with self._lock:
            self._routes[rollout_id] = int(canary_weight)
            self.writes.append({"rollout_id": rollout_id, "workload": workload, "canary_weight": int(canary_weight)})

    def weight(self, rollout_id: str) -> int:
        with self._lock:
            return self._routes.get(rollout_id, 0)

    def route(self, rollout_id: str, rng: random.Random | None = None) -> Cohort:
        """Pick the cohort serving one request; a request never sees a half-applied weight."""
        draw = (rng or random).random() * 100.0
        with self._lock:
            weight = self._routes.get(rollout_id, 0)
        return Cohort.CANARY if draw < weight else Cohort.STABLE

    def write_count(self, rollout_id: str | None = None) -> int:
        with self._lock:
            return sum(1 for row in self.writes if rollout_id is None or row["rollout_id"] == rollout_id)


class HttpTrafficBackend(TrafficBackend):
    """PUTs `{canary_weight, stable_weight}` to `<base_url>/api/v1/routes/<workload>`."""

    def __init__(self, base_url: str, *, timeout: float = 5.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def apply_weight(self, rollout_id: str, workload: str, canary_weight: int) -> None:
        body = {"rollout_id": rollout_id, "canary_weight": int(canary_weight), "stable_weight": 100 - int(canary_weight)}
        try:
            res = self.session.put(f"{self.base_url}/api/v1/routes/{workload}", json=body, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as exc:
            raise TrafficWriteError(int(canary_weight), str(exc)) from exc


class TrafficSplitter:
    """Single-flight weight writer for one rollout.

    Writes are serialized per splitter; a second concurrent call either waits
    (`queue`) or fails fast with `TrafficBusyError` (`reject`).
    """

    def __init__(
        self,
        backend: TrafficBackend,
        *,
        rollout_id: str,
        workload: str,
        policy: RetryPolicy | None = None,
        on_busy: str = "queue",
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if on_busy not in {"queue", "reject"}:
            raise ValueError(f"Invalid on_busy mode: {on_busy}")
        self.backend = backend
        self.rollout_id = rollout_id
        self.workload = workload
        self.policy = policy or RetryPolicy()
        self.on_busy = on_busy
        self.on_retry = on_retry
        self.sleep = sleep
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._applied: int | None = None
        self._pending: int | None = None

    def current_weight(self) -> int:
        with self._state_lock:
            return self._applied or 0

    @property
    def pending_weight(self) -> int | None:
        with self._state_lock:
            return self._pending

    def set_weight(self, canary_percent: int, *, on_busy: str | None = None) -> None:
        weight = int(canary_percent)
        if not 0 <= weight <= 100:
            raise ValueError(f"canary weight must be within [0, 100], got {canary_percent}")
        mode = on_busy or self.on_busy
        if not self._write_lock.acquire(blocking=mode == "queue"):
            raise TrafficBusyError(weight, "another weight write is in flight")
        try:
            with self._state_lock:
                if self._applied == weight:
                    return
                self._pending = weight
            try:
                call_with_backoff(
                    lambda: self.backend.apply_weight(self.rollout_id, self.workload, weight),
                    self.policy,
                    retry_on=(TrafficWriteError,),
                    on_retry=self.on_retry,
                    sleep=self.sleep,
                )
            except TrafficWriteError as exc:
                raise TrafficWriteError(weight, exc.reason, attempts=getattr(exc, "attempts", 1)) from exc
            finally:
                with self._state_lock:
                    self._pending = None
            with self._state_lock:
                self._applied = weight
        finally:
            self._write_lock.release()
