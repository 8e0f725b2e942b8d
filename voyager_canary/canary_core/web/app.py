from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict

from canary_core.config import ControllerConfig, load_runtime_config
from canary_core.errors import OperatorOverrideConflict, RolloutNotFound, WorkloadBusy
from canary_core.rollout.controller import RolloutController
from canary_core.rollout.models import default_rollout_definition

APP_VERSION = "0.1.0"

ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RolloutStartBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workload: str | None = None
    stable_version: str | None = None
    canary_version: str | None = None
    spec: dict[str, Any] | None = None


class AbortBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = "operator abort"


class RetryBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    canary_version: str | None = None


def rollout_payload(body: RolloutStartBody) -> dict[str, Any]:
    if body.spec is None:
        if not (body.workload and body.stable_version and body.canary_version):
            raise ValueError("workload, stable_version and canary_version are required when no spec is given")
        return default_rollout_definition(
            workload=body.workload,
            stable_version=body.stable_version,
            canary_version=body.canary_version,
        )
    payload = dict(body.spec)
    for key in ("workload", "stable_version", "canary_version"):
        value = getattr(body, key)
        if value:
            payload[key] = value
    return payload


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, RolloutNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (WorkloadBusy, OperatorOverrideConflict)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def create_app(controller: RolloutController | None = None, config: ControllerConfig | None = None) -> FastAPI:
    cfg = config or (controller.config if controller is not None else load_runtime_config())
    if controller is None:
        controller = RolloutController(cfg)
        controller.resume()
    ctl = controller

    app = FastAPI(title="Voyager Canary API", version=APP_VERSION)
    app.state.controller = ctl

    def current_user(request: Request) -> dict[str, str]:
        admin_token = cfg.api.admin_token
        viewer_token = cfg.api.viewer_token
        if not admin_token and not viewer_token:
            return {"username": "anonymous", "role": ROLE_ADMIN}
        auth_header = request.headers.get("authorization") or ""
        if auth_header.lower().startswith("bearer "):
            token = auth_header.split(" ", 1)[1].strip()
            if admin_token and hmac.compare_digest(token, admin_token):
                return {"username": "admin", "role": ROLE_ADMIN}
            if viewer_token and hmac.compare_digest(token, viewer_token):
                return {"username": "viewer", "role": ROLE_VIEWER}
        raise HTTPException(status_code=401, detail="Unauthorized")

    def require_admin(user: dict[str, str] = Depends(current_user)) -> dict[str, str]:
        if user["role"] != ROLE_ADMIN:
            raise HTTPException(status_code=403, detail="Admin role required")
        return user

    @app.get("/api/v1/health")
    def health() -> dict[str, Any]:
        active = [row for row in ctl.list_rollouts() if row["phase"] not in {"succeeded", "rolled_back"}]
        return {
            "status": "ok",
            "ok": True,
            "time": utc_now_iso(),
            "version": APP_VERSION,
            "active_rollouts": len(active),
            "metrics_backend": cfg.metrics.backend,
            "traffic_backend": cfg.traffic.backend,
        }

    @app.get("/api/v1/rollouts")
    def list_rollouts(
        workload: str | None = None,
        phase: str | None = None,
        _: dict[str, str] = Depends(current_user),
    ) -> dict[str, Any]:
        items = ctl.list_rollouts(workload=workload, phase=phase)
        return {"items": items, "total": len(items)}

    @app.post("/api/v1/rollouts")
    def start_rollout(body: RolloutStartBody, user: dict[str, str] = Depends(require_admin)) -> dict[str, Any]:
        try:
            rollout_id = ctl.start(rollout_payload(body))
        except (ValueError, WorkloadBusy) as exc:
            raise _to_http(exc) from exc
        ctl.events.add_log(
            event_type="api_rollout_started",
            severity="info",
            module="api",
            message=f"started by {user['username']}",
            related_ids=[rollout_id],
        )
        return ctl.status(rollout_id)

    @app.get("/api/v1/rollouts/{rollout_id}")
    def rollout_status(rollout_id: str, _: dict[str, str] = Depends(current_user)) -> dict[str, Any]:
        try:
            return ctl.status(rollout_id)
        except RolloutNotFound as exc:
            raise _to_http(exc) from exc

    @app.get("/api/v1/rollouts/{rollout_id}/events")
    def rollout_events(rollout_id: str, _: dict[str, str] = Depends(current_user)) -> dict[str, Any]:
        try:
            ctl.status(rollout_id)
        except RolloutNotFound as exc:
            raise _to_http(exc) from exc
        items = ctl.events.events_for(rollout_id)
        return {"items": items, "total": len(items)}

    @app.post("/api/v1/rollouts/{rollout_id}/abort")
    def abort_rollout(rollout_id: str, body: AbortBody | None = None, _: dict[str, str] = Depends(require_admin)) -> dict[str, Any]:
        try:
            return ctl.abort(rollout_id, reason=(body.reason if body else "operator abort"))
        except (RolloutNotFound, OperatorOverrideConflict, WorkloadBusy) as exc:
            raise _to_http(exc) from exc

    @app.post("/api/v1/rollouts/{rollout_id}/promote")
    def promote_rollout(rollout_id: str, _: dict[str, str] = Depends(require_admin)) -> dict[str, Any]:
        try:
            return ctl.promote(rollout_id)
        except (RolloutNotFound, OperatorOverrideConflict, WorkloadBusy) as exc:
            raise _to_http(exc) from exc

    @app.post("/api/v1/rollouts/{rollout_id}/retry")
    def retry_rollout(rollout_id: str, body: RetryBody | None = None, _: dict[str, str] = Depends(require_admin)) -> dict[str, Any]:
        try:
            new_id = ctl.retry(rollout_id, canary_version=body.canary_version if body else None)
        except (RolloutNotFound, OperatorOverrideConflict, WorkloadBusy, ValueError) as exc:
            raise _to_http(exc) from exc
        return ctl.status(new_id)

    @app.get("/api/v1/logs")
    def list_logs(
        severity: str | None = None,
        module: str | None = None,
        rollout_id: str | None = None,
        event_type: str | None = None,
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=100, ge=1, le=1000),
        _: dict[str, str] = Depends(current_user),
    ) -> dict[str, Any]:
        return ctl.events.list_logs(
            severity=severity,
            module=module,
            related_id=rollout_id,
            event_type=event_type,
            page=page,
            page_size=page_size,
        )

    return app
