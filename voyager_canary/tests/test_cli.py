from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from canary_core.cli import main as cli_main
from canary_core.cli.main import app
from canary_core.rollout.models import Phase, RolloutState, parse_rollout_spec
from canary_core.rollout.store import RolloutStore


runner = CliRunner()

ROLLOUT_YAML = """\
rollout:
  workload: voyager-gateway
  stable_version: "1.0.0"
  canary_version: "1.1.0"
  steps:
    - {weight_percent: 10, pause_seconds: 0.2}
    - {weight_percent: 100, pause_seconds: 0.2}
  checks:
    - name: success_rate
      metric: success_rate
      comparator: ">="
      threshold: 99
      consecutive_failures_to_fail: 2
      evaluation_interval_seconds: 0.05
      window_seconds: 1
"""


def _json_lines(output: str) -> list[dict]:
  rows = []
  for line in output.splitlines():
    if line.startswith("{"):
      rows.append(json.loads(line))
  return rows


@pytest.fixture()
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
  monkeypatch.delenv("VOYAGER_CONFIG_PATH", raising=False)
  monkeypatch.setenv("VOYAGER_DATA_DIR", str(tmp_path / "state"))
  return tmp_path / "state"


def test_validate_accepts_good_definition(tmp_path: Path) -> None:
  path = tmp_path / "rollout.yaml"
  path.write_text(ROLLOUT_YAML, encoding="utf-8")
  result = runner.invoke(app, ["validate", "--file", str(path)])
  assert result.exit_code == 0, result.output
  assert "Validation OK" in result.output


def test_validate_rejects_bad_definition(tmp_path: Path) -> None:
  path = tmp_path / "rollout.yaml"
  path.write_text(ROLLOUT_YAML.replace("weight_percent: 100", "weight_percent: 90"), encoding="utf-8")
  result = runner.invoke(app, ["validate", "--file", str(path)])
  assert result.exit_code == 1
  assert "Invalid rollout definition" in result.output


def test_simulated_bad_deployment_is_rolled_back(data_dir: Path) -> None:
  result = runner.invoke(
    app,
    ["simulate", "--scenario", "bad_deployment", "--pause", "0.3", "--interval", "0.05", "--rps", "2000", "--timeout", "30"],
  )
  assert result.exit_code == 0, result.output
  rows = _json_lines(result.output)
  started = next(row for row in rows if row["event"] == "simulation_started")
  finished = next(row for row in rows if row["event"] == "simulation_finished")
  rollout_id = started["rollout_id"]
  assert started["canary_version"] == "2.0.0-bad"
  assert finished["phase"] == "rolled_back"
  assert finished["traffic"]["served"]["canary"] > 0
  assert (data_dir / "reports" / rollout_id / "report.json").exists()

  status = runner.invoke(app, ["status", "--id", rollout_id])
  assert status.exit_code == 0, status.output
  assert "rolled_back" in status.output

  listing = runner.invoke(app, ["list"])
  assert listing.exit_code == 0
  assert "No rollouts found" not in listing.output

  report = runner.invoke(app, ["report", "--id", rollout_id])
  assert report.exit_code == 0, report.output
  written = next(row for row in _json_lines(report.output) if row["event"] == "report_written")
  assert written["summary"]["phase"] == "rolled_back"
  assert written["summary"]["aborted"] is True


def test_simulated_healthy_canary_succeeds(data_dir: Path, tmp_path: Path) -> None:
  path = tmp_path / "rollout.yaml"
  path.write_text(ROLLOUT_YAML, encoding="utf-8")
  result = runner.invoke(app, ["simulate", "--scenario", "normal", "--file", str(path), "--rps", "4000", "--timeout", "30"])
  assert result.exit_code == 0, result.output
  finished = next(row for row in _json_lines(result.output) if row["event"] == "simulation_finished")
  assert finished["phase"] == "succeeded"


def test_read_commands_handle_unknown_ids(data_dir: Path) -> None:
  assert runner.invoke(app, ["status", "--id", "ro_missing"]).exit_code == 1
  assert runner.invoke(app, ["report", "--id", "ro_missing"]).exit_code == 1
  listing = runner.invoke(app, ["list"])
  assert listing.exit_code == 0
  assert "No rollouts found" in listing.output


def test_unknown_scenario_is_a_usage_error(data_dir: Path) -> None:
  result = runner.invoke(app, ["simulate", "--scenario", "meteor_strike"])
  assert result.exit_code != 0


def test_list_renders_rollouts_without_retry_link(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(cli_main.console, "width", 240)
  spec = parse_rollout_spec(
    {
      "workload": "voyager-gateway",
      "stable_version": "1.0.0",
      "canary_version": "1.1.0",
      "steps": [{"weight_percent": 10}, {"weight_percent": 100}],
    }
  )
  RolloutStore(data_dir=data_dir).save(RolloutState(id="ro_listed", spec=spec, phase=Phase.PAUSED, applied_weight=10))

  result = runner.invoke(app, ["list", "--workload", "voyager-gateway"])
  assert result.exit_code == 0, result.output
  assert "ro_listed" in result.output
  assert "paused" in result.output
  assert "nan" not in result.output
