from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from canary_core.config import TrafficConfig


T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    @classmethod
    def from_config(cls, cfg: TrafficConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay_seconds=cfg.backoff_base_seconds,
            max_delay_seconds=cfg.backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))


def call_with_backoff(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...],
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                setattr(exc, "attempts", attempt)
                raise
            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            sleep(delay)
