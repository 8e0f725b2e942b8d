from __future__ import annotations

import operator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class Cohort(str, Enum):
    STABLE = "stable"
    CANARY = "canary"


class Verdict(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


class OutcomeVerdict(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ABORTED = "aborted"


class Comparator(str, Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    def holds(self, value: float, threshold: float) -> bool:
        return _COMPARATOR_FUNCS[self](value, threshold)


_COMPARATOR_FUNCS: dict[Comparator, Callable[[float, float], bool]] = {
    Comparator.LT: operator.lt,
    Comparator.LE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GE: operator.ge,
}


@dataclass(slots=True, frozen=True)
class MetricQueryResult:
    value: float
    sample_count: int

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0


@dataclass(slots=True)
class CheckResult:
    name: str
    verdict: Verdict
    failure_streak: int = 0
    successes: int = 0
    samples: int = 0
    last_value: float | None = None
    last_sampled_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "verdict": self.verdict.value,
            "failure_streak": self.failure_streak,
            "successes": self.successes,
            "samples": self.samples,
            "last_value": self.last_value,
            "last_sampled_at": self.last_sampled_at.isoformat() if self.last_sampled_at else None,
        }


@dataclass(slots=True, frozen=True)
class ThresholdBreach:
    """Hard rollback condition observed; a signal, not an error."""

    name: str
    metric: str
    value: float
    threshold: float
    comparator: Comparator
    observed_at: datetime

    def describe(self) -> str:
        return f"{self.name}: {self.metric}={round(self.value, 4)} {self.comparator.value} {self.threshold}"


@dataclass(slots=True)
class StepVerdict:
    verdict: Verdict
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def failing_checks(self) -> list[str]:
        return [row.name for row in self.checks if row.verdict == Verdict.FAILED]

    @property
    def inconclusive_checks(self) -> list[str]:
        return [row.name for row in self.checks if row.verdict == Verdict.INCONCLUSIVE]
