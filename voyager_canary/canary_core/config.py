from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "voyager_config.yaml"

DEFAULT_PROMQL: dict[str, str] = {
    "success_rate": (
        '100 * sum(rate(voyager_authorization_total{{status="approved",{selector}}}[{window}]))'
        ' / sum(rate(voyager_authorization_total{{{selector}}}[{window}]))'
    ),
    "error_count": 'sum(increase(voyager_authorization_total{{status="declined",{selector}}}[{window}]))',
    "latency_p50": "1000 * histogram_quantile(0.50, sum by (le) (rate(voyager_authorization_duration_seconds_bucket{{{selector}}}[{window}])))",
    "latency_p95": "1000 * histogram_quantile(0.95, sum by (le) (rate(voyager_authorization_duration_seconds_bucket{{{selector}}}[{window}])))",
    "latency_p99": "1000 * histogram_quantile(0.99, sum by (le) (rate(voyager_authorization_duration_seconds_bucket{{{selector}}}[{window}])))",
}
DEFAULT_SAMPLE_COUNT_PROMQL = "sum(increase(voyager_authorization_total{{{selector}}}[{window}]))"


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: str = "user_data"


class AnalysisConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query_timeout_seconds: float = Field(default=5.0, gt=0)
    degraded_after_errors: int = Field(default=3, ge=1)
    decision_tick_seconds: float = Field(default=0.5, gt=0)


class TrafficConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "http"] = "memory"
    base_url: str | None = None
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    max_attempts: int = Field(default=5, ge=1, le=5)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)
    on_busy: Literal["queue", "reject"] = "queue"


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "prometheus"] = "memory"
    prometheus_url: str = "http://localhost:9090"
    request_timeout_seconds: float = Field(default=4.0, gt=0)
    cohort_label: str = "version"
    workload_label: str | None = "app"
    queries: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_PROMQL))
    sample_count_query: str = DEFAULT_SAMPLE_COUNT_PROMQL


class PromotionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    final_validation_seconds: float | None = Field(default=None, ge=0)


class NotificationsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    telegram_enabled: bool = False
    bot_token: str | None = None
    chat_id: str | None = None


class ApiConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    admin_token: str | None = None
    viewer_token: str | None = None


class ControllerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    traffic: TrafficConfig = Field(default_factory=TrafficConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @model_validator(mode="after")
    def validate_guardrails(self) -> "ControllerConfig":
        if self.traffic.backend == "http" and not self.traffic.base_url:
            raise ValueError("traffic.base_url is required for the http backend")
        if self.traffic.backoff_max_seconds < self.traffic.backoff_base_seconds:
            raise ValueError("traffic.backoff_max_seconds must be >= traffic.backoff_base_seconds")
        return self

    @property
    def data_dir(self) -> Path:
        return Path(self.storage.data_dir).resolve()


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def read_yaml(path: Path) -> Any:
    return _expand_env(yaml.safe_load(path.read_text(encoding="utf-8")))


def load_config(path: str | Path | None = None) -> ControllerConfig:
    if path is None:
        return ControllerConfig()
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    payload = read_yaml(config_path) or {}
    try:
        return ControllerConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid controller config: {exc}") from exc


def load_runtime_config(config_path: str | None = None) -> ControllerConfig:
    """Resolve `--config`, then VOYAGER_CONFIG_PATH, then the project default; VOYAGER_DATA_DIR overrides storage."""
    explicit = config_path or os.environ.get("VOYAGER_CONFIG_PATH")
    if explicit:
        cfg = load_config(explicit)
    elif DEFAULT_CONFIG_PATH.exists():
        cfg = load_config(DEFAULT_CONFIG_PATH)
    else:
        cfg = ControllerConfig()
    data_dir = os.environ.get("VOYAGER_DATA_DIR")
    if data_dir:
        cfg = cfg.model_copy(update={"storage": StorageConfig(data_dir=data_dir)})
    return cfg
