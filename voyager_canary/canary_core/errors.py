from __future__ import annotations


class RolloutError(Exception):
    """Base class for controller errors."""


class ValidationError(RolloutError, ValueError):
    """Malformed rollout definition; rejected before any traffic change."""


class MetricQueryError(RolloutError):
    def __init__(self, metric: str, reason: str) -> None:
        super().__init__(f"Metric query failed for {metric}: {reason}")
        self.metric = metric
        self.reason = reason


class TrafficWriteError(RolloutError):
    def __init__(self, weight: int, reason: str, attempts: int = 1) -> None:
        super().__init__(f"Traffic write of {weight}% failed after {attempts} attempt(s): {reason}")
        self.weight = weight
        self.reason = reason
        self.attempts = attempts


class TrafficBusyError(TrafficWriteError):
    """Raised when a weight write is already in flight and the caller asked not to queue."""


class OperatorOverrideConflict(RolloutError, ValueError):
    pass


class RolloutNotFound(RolloutError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Rollout not found"


class WorkloadBusy(RolloutError, ValueError):
    pass
