from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from canary_core.errors import RolloutNotFound
from canary_core.rollout.models import RolloutState, utc_now


def _json_load(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return default


def _json_save(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class RolloutStore:
    """One JSON document per rollout, replaced atomically on every save."""

    def __init__(self, *, data_dir: Path) -> None:
        self.root = (Path(data_dir).resolve() / "rollouts").resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def path_for(self, rollout_id: str) -> Path:
        return self.root / f"{rollout_id}.json"

    def save(self, state: RolloutState) -> dict[str, Any]:
        state.updated_at = utc_now()
        payload = state.to_dict()
        with self._lock:
            _json_save(self.path_for(state.id), payload)
        return payload

    def load(self, rollout_id: str) -> RolloutState:
        payload = _json_load(self.path_for(rollout_id), None)
        if not isinstance(payload, dict):
            raise RolloutNotFound(f"Rollout not found: {rollout_id}")
        return RolloutState.from_dict(payload)

    def exists(self, rollout_id: str) -> bool:
        return self.path_for(rollout_id).exists()

    def list(self) -> list[RolloutState]:
        rows: list[RolloutState] = []
        for path in sorted(self.root.glob("*.json")):
            payload = _json_load(path, None)
            if isinstance(payload, dict):
                rows.append(RolloutState.from_dict(payload))
        rows.sort(key=lambda row: row.created_at)
        return rows

    def active_for_workload(self, workload: str) -> RolloutState | None:
        for state in self.list():
            if state.workload == workload and not state.is_terminal:
                return state
        return None
