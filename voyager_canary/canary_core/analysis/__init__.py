from .checks import CheckTracker, aggregate
from .engine import AnalysisEngine, AnalysisHandle

__all__ = ["AnalysisEngine", "AnalysisHandle", "CheckTracker", "aggregate"]
