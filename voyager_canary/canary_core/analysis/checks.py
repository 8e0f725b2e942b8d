from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from canary_core.types import CheckResult, MetricQueryResult, StepVerdict, Verdict

if TYPE_CHECKING:
    from canary_core.rollout.models import AnalysisCheck


class CheckTracker:
    """Streak bookkeeping for one check during one step."""

    def __init__(self, check: AnalysisCheck, failure_streak: int = 0) -> None:
        self.check = check
        self.failure_streak = max(0, int(failure_streak))
        self.successes = 0
        self.samples = 0
        self.failed = False
        self.last_value: float | None = None
        self.last_sampled_at: datetime | None = None

    def observe(self, result: MetricQueryResult, at: datetime | None = None) -> None:
        self.last_sampled_at = at or datetime.now(timezone.utc)
        if not result.has_data:
            return
        self.samples += 1
        self.last_value = result.value
        if self.check.passes(result.value):
            self.successes += 1
            self.failure_streak = 0
            return
        self.failure_streak += 1
        if self.failure_streak >= self.check.consecutive_failures_to_fail:
            # Latched for the rest of the step.
            self.failed = True

    @property
    def verdict(self) -> Verdict:
        if self.failed:
            return Verdict.FAILED
        if self.successes > 0 and self.failure_streak < self.check.consecutive_failures_to_fail:
            return Verdict.PASSED
        return Verdict.INCONCLUSIVE

    def result(self) -> CheckResult:
        return CheckResult(
            name=self.check.name,
            verdict=self.verdict,
            failure_streak=self.failure_streak,
            successes=self.successes,
            samples=self.samples,
            last_value=self.last_value,
            last_sampled_at=self.last_sampled_at,
        )


def aggregate(results: list[CheckResult]) -> StepVerdict:
    if any(row.verdict == Verdict.FAILED for row in results):
        return StepVerdict(verdict=Verdict.FAILED, checks=results)
    if all(row.verdict == Verdict.PASSED for row in results):
        return StepVerdict(verdict=Verdict.PASSED, checks=results)
    return StepVerdict(verdict=Verdict.INCONCLUSIVE, checks=results)
