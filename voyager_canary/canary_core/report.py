from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd


HISTORY_COLUMNS = ["step_index", "weight", "verdict", "failing_checks", "reason", "started_at", "finished_at"]


def history_frame(snapshot: dict[str, Any]) -> pd.DataFrame:
    df = pd.DataFrame(snapshot.get("history") or [], columns=HISTORY_COLUMNS)
    df["failing_checks"] = df["failing_checks"].apply(lambda value: ",".join(value) if isinstance(value, list) else (value or ""))
    started = pd.to_datetime(df["started_at"], utc=True, errors="coerce")
    finished = pd.to_datetime(df["finished_at"], utc=True, errors="coerce")
    df["duration_seconds"] = (finished - started).dt.total_seconds().round(3)
    df.insert(0, "rollout_id", snapshot.get("id"))
    return df


def rollouts_frame(summaries: list[dict[str, Any]]) -> pd.DataFrame:
    columns = ["id", "workload", "phase", "stable_version", "canary_version", "current_step_index", "applied_weight", "retry_of", "created_at"]
    return pd.DataFrame(summaries, columns=columns)


def summarize(snapshot: dict[str, Any]) -> dict[str, Any]:
    df = history_frame(snapshot)
    counts = df["verdict"].value_counts().to_dict() if not df.empty else {}
    return {
        "rollout_id": snapshot.get("id"),
        "workload": snapshot.get("workload"),
        "phase": snapshot.get("phase"),
        "applied_weight": snapshot.get("applied_weight"),
        "steps_passed": int(counts.get("passed", 0)),
        "steps_failed": int(counts.get("failed", 0)),
        "aborted": bool(counts.get("aborted", 0)),
        "analysis_seconds": float(df["duration_seconds"].fillna(0.0).sum()) if not df.empty else 0.0,
        "abort_reason": snapshot.get("abort_reason"),
        "promotion": snapshot.get("promotion"),
    }


class ReportEngine:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir).resolve()

    def write_rollout_report(self, snapshot: dict[str, Any], events: list[dict[str, Any]] | None = None) -> dict[str, str]:
        base = self.data_dir / "reports" / str(snapshot["id"])
        base.mkdir(parents=True, exist_ok=True)

        report_json = base / "report.json"
        history_csv = base / "history.csv"
        events_csv = base / "events.csv"

        report_json.write_text(json.dumps({"summary": summarize(snapshot), "rollout": snapshot}, indent=2, default=str), encoding="utf-8")
        history_frame(snapshot).to_csv(history_csv, index=False)
        event_rows = [
            {"ts": row["ts"], "type": row["type"], "severity": row["severity"], "module": row["module"], "message": row["message"]}
            for row in events or []
        ]
        pd.DataFrame(event_rows, columns=["ts", "type", "severity", "module", "message"]).to_csv(events_csv, index=False)

        return {
            "report_json_local": str(report_json),
            "history_csv_local": str(history_csv),
            "events_csv_local": str(events_csv),
        }
