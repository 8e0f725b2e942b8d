from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from canary_core.config import read_yaml
from canary_core.errors import ValidationError
from canary_core.types import Comparator, OutcomeVerdict


class Phase(str, Enum):
    INITIALIZING = "initializing"
    PROGRESSING = "progressing"
    PAUSED = "paused"
    DEGRADED = "degraded"
    PROMOTING = "promoting"
    SUCCEEDED = "succeeded"
    ABORTING = "aborting"
    ROLLED_BACK = "rolled_back"


ROLLOUT_STATES = {phase.value for phase in Phase}
TERMINAL_PHASES = {Phase.SUCCEEDED, Phase.ROLLED_BACK}
ACTIVE_PHASES = set(Phase) - TERMINAL_PHASES

ALLOWED_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.INITIALIZING: {Phase.PROGRESSING, Phase.ABORTING},
    Phase.PROGRESSING: {Phase.PAUSED, Phase.PROMOTING, Phase.DEGRADED, Phase.ABORTING},
    Phase.PAUSED: {Phase.PROGRESSING, Phase.PROMOTING, Phase.DEGRADED, Phase.ABORTING},
    Phase.DEGRADED: {Phase.PROGRESSING, Phase.PAUSED, Phase.PROMOTING, Phase.ABORTING},
    Phase.PROMOTING: {Phase.SUCCEEDED, Phase.DEGRADED, Phase.ABORTING},
    Phase.ABORTING: {Phase.ROLLED_BACK},
    Phase.SUCCEEDED: set(),
    Phase.ROLLED_BACK: set(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Step(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    weight_percent: int = Field(gt=0, le=100)
    pause_seconds: float = Field(default=60.0, ge=0)


class AnalysisCheck(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    comparator: Comparator
    threshold: float
    consecutive_failures_to_fail: int = Field(default=1, ge=1)
    evaluation_interval_seconds: float = Field(default=30.0, gt=0)
    window_seconds: float | None = Field(default=None, gt=0)

    @property
    def query_window_seconds(self) -> float:
        return self.window_seconds or self.evaluation_interval_seconds

    def passes(self, value: float) -> bool:
        return self.comparator.holds(value, self.threshold)


class RollbackThreshold(BaseModel):
    """Hard stop: breached when `metric comparator threshold` holds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    comparator: Comparator
    threshold: float
    window_seconds: float | None = Field(default=None, gt=0)

    def breached(self, value: float) -> bool:
        return self.comparator.holds(value, self.threshold)


def plan_problems(steps: tuple[Step, ...] | list[Step]) -> list[str]:
    problems: list[str] = []
    if not steps:
        return ["steps must not be empty"]
    previous = 0
    for index, step in enumerate(steps):
        if not 0 < step.weight_percent <= 100:
            problems.append(f"step {index}: weight {step.weight_percent} outside (0, 100]")
        if step.weight_percent <= previous:
            problems.append(f"step {index}: weight {step.weight_percent} must be greater than {previous}")
        previous = step.weight_percent
    if steps[-1].weight_percent != 100:
        problems.append(f"last step weight must be 100 (got {steps[-1].weight_percent})")
    return problems


class RolloutSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    workload: str = Field(min_length=1)
    stable_version: str = Field(min_length=1)
    canary_version: str = Field(min_length=1)
    steps: tuple[Step, ...]
    checks: tuple[AnalysisCheck, ...] = ()
    rollback_thresholds: tuple[RollbackThreshold, ...] = ()
    final_validation_seconds: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_plan(self) -> "RolloutSpec":
        problems = plan_problems(self.steps)
        check_names = [check.name for check in self.checks]
        if len(set(check_names)) != len(check_names):
            problems.append("check names must be unique")
        threshold_names = [row.name for row in self.rollback_thresholds]
        if len(set(threshold_names)) != len(threshold_names):
            problems.append("rollback threshold names must be unique")
        if self.stable_version == self.canary_version:
            problems.append("canary_version must differ from stable_version")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @property
    def last_step_index(self) -> int:
        return len(self.steps) - 1

    @property
    def min_evaluation_interval(self) -> float | None:
        if not self.checks:
            return None
        return min(check.evaluation_interval_seconds for check in self.checks)

    def with_canary_version(self, canary_version: str) -> "RolloutSpec":
        return parse_rollout_spec({**self.model_dump(mode="json"), "canary_version": canary_version})


def parse_rollout_spec(payload: Any) -> RolloutSpec:
    if isinstance(payload, RolloutSpec):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError("Rollout definition must be a mapping")
    try:
        return RolloutSpec.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid rollout definition: {exc}") from exc


def load_rollout_spec(path: str | Path) -> RolloutSpec:
    spec_path = Path(path)
    if not spec_path.exists():
        raise FileNotFoundError(f"Rollout definition not found: {spec_path}")
    payload = read_yaml(spec_path)
    if isinstance(payload, dict) and isinstance(payload.get("rollout"), dict):
        payload = payload["rollout"]
    return parse_rollout_spec(payload)


def default_rollout_definition(*, workload: str, stable_version: str, canary_version: str, pause_seconds: float = 60.0) -> dict[str, Any]:
    return {
        "workload": workload,
        "stable_version": stable_version,
        "canary_version": canary_version,
        "steps": [{"weight_percent": weight, "pause_seconds": pause_seconds} for weight in (5, 10, 25, 50, 75, 100)],
        "checks": [
            {
                "name": "success_rate",
                "metric": "success_rate",
                "comparator": ">=",
                "threshold": 99.0,
                "consecutive_failures_to_fail": 2,
                "evaluation_interval_seconds": 30.0,
            },
            {
                "name": "latency_p95",
                "metric": "latency_p95",
                "comparator": "<",
                "threshold": 500.0,
                "consecutive_failures_to_fail": 2,
                "evaluation_interval_seconds": 30.0,
            },
        ],
        "rollback_thresholds": [
            {"name": "success_rate_floor", "metric": "success_rate", "comparator": "<", "threshold": 98.0},
            {"name": "latency_p99_ceiling", "metric": "latency_p99", "comparator": ">", "threshold": 800.0},
        ],
    }


@dataclass(slots=True, frozen=True)
class StepOutcome:
    step_index: int
    weight: int
    verdict: OutcomeVerdict
    started_at: datetime | None
    finished_at: datetime
    failing_checks: tuple[str, ...] = ()
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.step_index,
            "weight": self.weight,
            "verdict": self.verdict.value,
            "failing_checks": list(self.failing_checks),
            "reason": self.reason,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "StepOutcome":
        return cls(
            step_index=int(row["step_index"]),
            weight=int(row["weight"]),
            verdict=OutcomeVerdict(str(row["verdict"])),
            failing_checks=tuple(str(x) for x in row.get("failing_checks") or []),
            reason=str(row.get("reason") or ""),
            started_at=_parse_dt(row.get("started_at")),
            finished_at=_parse_dt(row.get("finished_at")) or utc_now(),
        )


@dataclass(slots=True)
class RolloutState:
    id: str
    spec: RolloutSpec
    phase: Phase = Phase.INITIALIZING
    current_step_index: int = 0
    applied_weight: int = 0
    pending_weight: int | None = None
    step_started_at: datetime | None = None
    step_elapsed_seconds: float = 0.0
    inconclusive_extensions: int = 0
    consecutive_check_failures: dict[str, int] = field(default_factory=dict)
    history: list[StepOutcome] = field(default_factory=list)
    last_error: str | None = None
    degraded_from: Phase | None = None
    abort_reason: str | None = None
    promotion: dict[str, Any] | None = None
    retry_of: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def workload(self) -> str:
        return self.spec.workload

    def mandated_weight(self) -> int:
        if self.phase in {Phase.PROMOTING, Phase.SUCCEEDED}:
            return 100
        if self.phase in {Phase.ABORTING, Phase.ROLLED_BACK, Phase.INITIALIZING}:
            return 0
        if self.phase == Phase.PROGRESSING and self.step_started_at is None:
            # Entering a step: traffic still sits on the previous plateau.
            return self.spec.steps[self.current_step_index - 1].weight_percent if self.current_step_index > 0 else 0
        return self.spec.steps[self.current_step_index].weight_percent

    def append_outcome(self, outcome: StepOutcome) -> None:
        self.history.append(outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workload": self.spec.workload,
            "spec": self.spec.model_dump(mode="json"),
            "phase": self.phase.value,
            "current_step_index": self.current_step_index,
            "applied_weight": self.applied_weight,
            "pending_weight": self.pending_weight,
            "step_started_at": _iso(self.step_started_at),
            "step_elapsed_seconds": round(self.step_elapsed_seconds, 6),
            "inconclusive_extensions": self.inconclusive_extensions,
            "consecutive_check_failures": dict(self.consecutive_check_failures),
            "history": [row.to_dict() for row in self.history],
            "last_error": self.last_error,
            "degraded_from": self.degraded_from.value if self.degraded_from else None,
            "abort_reason": self.abort_reason,
            "promotion": self.promotion,
            "retry_of": self.retry_of,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "RolloutState":
        degraded_from = row.get("degraded_from")
        return cls(
            id=str(row["id"]),
            spec=parse_rollout_spec(row["spec"]),
            phase=Phase(str(row.get("phase") or Phase.INITIALIZING.value)),
            current_step_index=int(row.get("current_step_index") or 0),
            applied_weight=int(row.get("applied_weight") or 0),
            pending_weight=row.get("pending_weight"),
            step_started_at=_parse_dt(row.get("step_started_at")),
            step_elapsed_seconds=float(row.get("step_elapsed_seconds") or 0.0),
            inconclusive_extensions=int(row.get("inconclusive_extensions") or 0),
            consecutive_check_failures={str(k): int(v) for k, v in (row.get("consecutive_check_failures") or {}).items()},
            history=[StepOutcome.from_dict(item) for item in row.get("history") or []],
            last_error=row.get("last_error"),
            degraded_from=Phase(str(degraded_from)) if degraded_from else None,
            abort_reason=row.get("abort_reason"),
            promotion=row.get("promotion"),
            retry_of=row.get("retry_of"),
            created_at=_parse_dt(row.get("created_at")) or utc_now(),
            updated_at=_parse_dt(row.get("updated_at")) or utc_now(),
        )
