from .prometheus import PrometheusMetricSource
from .source import CohortLabels, CohortMetricStore, MetricSource

__all__ = ["CohortLabels", "CohortMetricStore", "MetricSource", "PrometheusMetricSource"]
