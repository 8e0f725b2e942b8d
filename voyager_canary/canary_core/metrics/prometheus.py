from __future__ import annotations

import math
from typing import Any

import requests

from canary_core.config import MetricsConfig
from canary_core.errors import MetricQueryError
from canary_core.metrics.source import CohortLabels, MetricSource
from canary_core.types import MetricQueryResult


def _safe_float(value: Any, default: float = math.nan) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _window_literal(window_seconds: float) -> str:
    return f"{max(1, int(round(window_seconds)))}s"


class PrometheusMetricSource(MetricSource):
    """Instant queries against the Prometheus HTTP API (`/api/v1/query`)."""

    def __init__(self, cfg: MetricsConfig, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self.base_url = cfg.prometheus_url.rstrip("/")
        self.session = session or requests.Session()

    def selector(self, labels: CohortLabels) -> str:
        values = labels.as_dict()
        parts = [f'{self.cfg.cohort_label}="{values.get(self.cfg.cohort_label, labels.version)}"']
        if self.cfg.workload_label:
            parts.append(f'{self.cfg.workload_label}="{labels.workload}"')
        return ",".join(parts)

    def render(self, template: str, labels: CohortLabels, window_seconds: float) -> str:
        return template.format(selector=self.selector(labels), window=_window_literal(window_seconds))

    def _instant(self, metric: str, promql: str) -> float | None:
        try:
            res = self.session.get(
                f"{self.base_url}/api/v1/query",
                params={"query": promql},
                timeout=self.cfg.request_timeout_seconds,
            )
            res.raise_for_status()
            payload = res.json()
        except requests.RequestException as exc:
            raise MetricQueryError(metric, str(exc)) from exc
        except ValueError as exc:
            raise MetricQueryError(metric, f"invalid JSON: {exc}") from exc
        if not isinstance(payload, dict) or payload.get("status") != "success":
            error = payload.get("error") if isinstance(payload, dict) else None
            raise MetricQueryError(metric, str(error or "query not successful"))
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        result = data.get("result") if isinstance(data.get("result"), list) else []
        if data.get("resultType") == "scalar":
            value = _safe_float((data.get("result") or [None, None])[1])
            return None if math.isnan(value) else value
        if not result:
            return None
        first = result[0] if isinstance(result[0], dict) else {}
        raw = first.get("value") if isinstance(first.get("value"), list) else [None, None]
        value = _safe_float(raw[1] if len(raw) > 1 else None)
        return None if math.isnan(value) or math.isinf(value) else value

    def query(self, metric: str, labels: CohortLabels, window_seconds: float) -> MetricQueryResult:
        template = self.cfg.queries.get(metric)
        if not template:
            raise MetricQueryError(metric, "no PromQL template configured")
        count = self._instant(metric, self.render(self.cfg.sample_count_query, labels, window_seconds))
        if not count:
            return MetricQueryResult(value=0.0, sample_count=0)
        value = self._instant(metric, self.render(template, labels, window_seconds))
        if value is None:
            return MetricQueryResult(value=0.0, sample_count=0)
        return MetricQueryResult(value=value, sample_count=int(round(count)))
