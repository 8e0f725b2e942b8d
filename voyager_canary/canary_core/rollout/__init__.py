from .controller import RolloutController
from .machine import RolloutStateMachine
from .models import (
    ALLOWED_TRANSITIONS,
    ROLLOUT_STATES,
    AnalysisCheck,
    Phase,
    RollbackThreshold,
    RolloutSpec,
    RolloutState,
    Step,
    StepOutcome,
    load_rollout_spec,
    parse_rollout_spec,
)
from .store import RolloutStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ROLLOUT_STATES",
    "AnalysisCheck",
    "Phase",
    "RollbackThreshold",
    "RolloutController",
    "RolloutSpec",
    "RolloutState",
    "RolloutStateMachine",
    "RolloutStore",
    "Step",
    "StepOutcome",
    "load_rollout_spec",
    "parse_rollout_spec",
]
