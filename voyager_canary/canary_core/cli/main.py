from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from canary_core.config import ControllerConfig, load_runtime_config
from canary_core.errors import RolloutNotFound, ValidationError, WorkloadBusy
from canary_core.events import EventLog
from canary_core.metrics.source import CohortMetricStore
from canary_core.report import ReportEngine, rollouts_frame, summarize
from canary_core.rollout.controller import RolloutController, rollout_summary
from canary_core.rollout.models import RolloutSpec, default_rollout_definition, load_rollout_spec, parse_rollout_spec
from canary_core.rollout.store import RolloutStore
from canary_core.traffic.splitter import InMemoryTrafficBackend
from canary_core.workload import HEALTHY, SCENARIOS, SimulatedWorkload, scenario_profile


app = typer.Typer(help="Voyager progressive-delivery controller")
console = Console()

TERMINAL = {"succeeded", "rolled_back"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_log(event: str, **payload: Any) -> None:
    row = {"ts": _now(), "event": event, **payload}
    print(json.dumps(row, separators=(",", ":"), default=str))


def _load_controller_config(config_path: str | None) -> ControllerConfig:
    try:
        return load_runtime_config(config_path or None)
    except (FileNotFoundError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from exc


def _load_spec(file: str) -> RolloutSpec:
    try:
        return load_rollout_spec(file)
    except FileNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _steps_table(spec: RolloutSpec) -> Table:
    table = Table("step", "weight_percent", "pause_seconds")
    for index, step in enumerate(spec.steps):
        table.add_row(str(index), str(step.weight_percent), f"{step.pause_seconds:g}")
    return table


def _history_table(snapshot: dict[str, Any]) -> Table:
    table = Table("step", "weight", "verdict", "failing_checks", "reason")
    for row in snapshot.get("history") or []:
        table.add_row(str(row["step_index"]), str(row["weight"]), row["verdict"], ",".join(row["failing_checks"]), row["reason"])
    return table


def _follow(controller: RolloutController, rollout_id: str, *, timeout: float, poll_seconds: float = 0.1) -> dict[str, Any]:
    deadline = time.monotonic() + timeout
    last: tuple[Any, ...] | None = None
    snapshot = controller.status(rollout_id)
    while True:
        marker = (snapshot["phase"], snapshot["current_step_index"], snapshot["applied_weight"])
        if marker != last:
            _json_log(
                "rollout_progress",
                rollout_id=rollout_id,
                phase=snapshot["phase"],
                step=snapshot["current_step_index"],
                applied_weight=snapshot["applied_weight"],
                pending_weight=snapshot["pending_weight"],
            )
            last = marker
        if snapshot["phase"] in TERMINAL or not snapshot["running"] or time.monotonic() >= deadline:
            return snapshot
        time.sleep(poll_seconds)
        snapshot = controller.status(rollout_id)


@app.command("validate")
def validate(file: str = typer.Option(..., "--file", help="Path to a rollout definition YAML")) -> None:
    try:
        spec = _load_spec(file)
    except ValidationError as exc:
        console.print(f"[red]Invalid rollout definition[/red]: {exc}")
        raise typer.Exit(code=1)
    console.print(_steps_table(spec))
    console.print(
        f"Validation OK. workload={spec.workload} {spec.stable_version} -> {spec.canary_version} "
        f"checks={len(spec.checks)} rollback_thresholds={len(spec.rollback_thresholds)}"
    )


@app.command("start")
def start(
    file: str = typer.Option(..., "--file", help="Path to a rollout definition YAML"),
    canary_version: str = typer.Option("", "--canary-version", help="Override the canary version"),
    config: str = typer.Option("", "--config", help="Path to voyager config"),
    timeout: float = typer.Option(3600.0, "--timeout", help="Seconds to follow the rollout"),
) -> None:
    cfg = _load_controller_config(config)
    try:
        spec = _load_spec(file)
        if canary_version:
            spec = spec.with_canary_version(canary_version)
    except ValidationError as exc:
        console.print(f"[red]Invalid rollout definition[/red]: {exc}")
        raise typer.Exit(code=1)
    controller = RolloutController(cfg)
    try:
        rollout_id = controller.start(spec)
    except WorkloadBusy as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    _json_log("rollout_started", rollout_id=rollout_id, workload=spec.workload, canary_version=spec.canary_version)
    snapshot = _follow(controller, rollout_id, timeout=timeout)
    controller.shutdown()
    console.print(_history_table(snapshot))
    console.print(f"Rollout {rollout_id} finished in phase={snapshot['phase']} weight={snapshot['applied_weight']}%")
    if snapshot["phase"] != "succeeded":
        raise typer.Exit(code=1)


@app.command("simulate")
def simulate(
    scenario: str = typer.Option("normal", "--scenario", help="|".join(SCENARIOS)),
    file: str = typer.Option("", "--file", help="Rollout definition YAML (defaults to the built-in plan)"),
    workload: str = typer.Option("voyager-gateway", "--workload"),
    stable_version: str = typer.Option("1.0.0", "--stable-version"),
    canary_version: str = typer.Option("", "--canary-version", help="Defaults to 1.1.0 (2.0.0-bad for bad_deployment)"),
    pause: float = typer.Option(2.0, "--pause", help="Pause per step for the built-in plan"),
    interval: float = typer.Option(0.5, "--interval", help="Check evaluation interval for the built-in plan"),
    rps: float = typer.Option(2000.0, "--rps", help="Simulated requests per second"),
    seed: int = typer.Option(7, "--seed"),
    timeout: float = typer.Option(300.0, "--timeout"),
    config: str = typer.Option("", "--config", help="Path to voyager config"),
) -> None:
    try:
        canary_profile = scenario_profile(scenario)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    version = canary_version or ("2.0.0-bad" if scenario == "bad_deployment" else "1.1.0")
    try:
        if file:
            spec = _load_spec(file)
            if canary_version:
                spec = spec.with_canary_version(canary_version)
        else:
            payload = default_rollout_definition(
                workload=workload,
                stable_version=stable_version,
                canary_version=version,
                pause_seconds=pause,
            )
            for check in payload["checks"]:
                check["evaluation_interval_seconds"] = interval
                check["window_seconds"] = max(interval * 10, 5.0)
            spec = parse_rollout_spec(payload)
    except ValidationError as exc:
        console.print(f"[red]Invalid rollout definition[/red]: {exc}")
        raise typer.Exit(code=1)

    cfg = _load_controller_config(config)
    tick = min(cfg.analysis.decision_tick_seconds, max(interval / 2, 0.01))
    cfg = cfg.model_copy(update={"analysis": cfg.analysis.model_copy(update={"decision_tick_seconds": tick})})
    metrics = CohortMetricStore()
    router = InMemoryTrafficBackend()
    controller = RolloutController(cfg, metric_source=metrics, traffic_backend=router)
    try:
        rollout_id = controller.start(spec)
    except WorkloadBusy as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    generator = SimulatedWorkload(
        store=metrics,
        router=router,
        rollout_id=rollout_id,
        workload=spec.workload,
        stable_version=spec.stable_version,
        canary_version=spec.canary_version,
        stable=HEALTHY,
        canary=canary_profile,
        seed=seed,
    ).start(requests_per_second=rps)
    _json_log("simulation_started", rollout_id=rollout_id, scenario=scenario, canary_version=spec.canary_version)
    try:
        snapshot = _follow(controller, rollout_id, timeout=timeout)
    finally:
        generator.stop()
        controller.shutdown()
    _json_log("simulation_finished", rollout_id=rollout_id, phase=snapshot["phase"], traffic=generator.summary())
    artifacts = ReportEngine(cfg.data_dir).write_rollout_report(snapshot, controller.events.events_for(rollout_id))
    console.print(_history_table(snapshot))
    console.print(f"Scenario {scenario}: rollout {rollout_id} ended in phase={snapshot['phase']} weight={snapshot['applied_weight']}%")
    console.print(f"Report: {artifacts['report_json_local']}")


@app.command("status")
def status(
    rollout_id: str = typer.Option(..., "--id"),
    config: str = typer.Option("", "--config", help="Path to voyager config"),
) -> None:
    cfg = _load_controller_config(config)
    try:
        snapshot = RolloutStore(data_dir=cfg.data_dir).load(rollout_id).to_dict()
    except RolloutNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    table = Table("field", "value")
    for key in ("id", "workload", "phase", "current_step_index", "applied_weight", "pending_weight", "abort_reason", "last_error", "retry_of"):
        table.add_row(key, str(snapshot.get(key)))
    console.print(table)
    console.print(_history_table(snapshot))


@app.command("list")
def list_rollouts(
    workload: str = typer.Option("", "--workload"),
    config: str = typer.Option("", "--config", help="Path to voyager config"),
) -> None:
    cfg = _load_controller_config(config)
    rows = [rollout_summary(state.to_dict()) for state in RolloutStore(data_dir=cfg.data_dir).list()]
    if workload:
        rows = [row for row in rows if row["workload"] == workload]
    if not rows:
        console.print("No rollouts found")
        return
    df = rollouts_frame(rows)
    table = Table(*[str(col) for col in df.columns])
    for values in df.fillna("").astype(str).itertuples(index=False):
        table.add_row(*values)
    console.print(table)


@app.command("report")
def report(
    rollout_id: str = typer.Option(..., "--id"),
    config: str = typer.Option("", "--config", help="Path to voyager config"),
) -> None:
    cfg = _load_controller_config(config)
    try:
        snapshot = RolloutStore(data_dir=cfg.data_dir).load(rollout_id).to_dict()
    except RolloutNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    events = EventLog(cfg.data_dir / "events.sqlite3").events_for(rollout_id)
    artifacts = ReportEngine(cfg.data_dir).write_rollout_report(snapshot, events)
    _json_log("report_written", rollout_id=rollout_id, summary=summarize(snapshot), **artifacts)


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8080, "--port"),
) -> None:
    uvicorn.run("canary_core.web.app:create_app", factory=True, host=host, port=port, log_level="info")


if __name__ == "__main__":
    app()
