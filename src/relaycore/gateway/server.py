"""FastAPI ingestion gateway.

Routes are thin wrappers over the shared :class:`RelayRuntime`.  Every
refusal answers ``{"ok": false, "reason": <RefusalReason>}`` with a fixed
status code and is logged as an ``ingest_refused`` event.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from relaycore.errors import PayloadError, UnknownRouteError
from relaycore.gateway.ratelimit import TokenBucketLimiter
from relaycore.logging.events import EventType, emit_error, emit_warning
from relaycore.project import DEFAULT_CONFIG
from relaycore.runtime import RelayRuntime


class RefusalReason(str, Enum):
    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    PAYLOAD_INVALID = "PAYLOAD_INVALID"
    ROUTE_UNKNOWN = "ROUTE_UNKNOWN"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_STATUS = {
    RefusalReason.AUTH_MISSING: 401,
    RefusalReason.AUTH_INVALID: 403,
    RefusalReason.RATE_LIMITED: 429,
    RefusalReason.PAYLOAD_TOO_LARGE: 400,
    RefusalReason.PAYLOAD_INVALID: 400,
    RefusalReason.ROUTE_UNKNOWN: 404,
    RefusalReason.INTERNAL_ERROR: 500,
}


class Gateway:
    """Runtime plus admission-control settings for one app instance."""

    def __init__(
        self,
        runtime: RelayRuntime,
        *,
        gateway_key: str | None = None,
        limiter: TokenBucketLimiter | None = None,
    ) -> None:
        config = runtime.config
        self.runtime = runtime
        self.max_body_bytes = int(config.get("max_body_bytes", DEFAULT_CONFIG["max_body_bytes"]))
        if gateway_key is None:
            env_name = config.get("gateway_key_env") or DEFAULT_CONFIG["gateway_key_env"]
            gateway_key = os.environ.get(env_name) or config.get("gateway_dev_key") or ""
        self.gateway_key = gateway_key
        self.limiter = limiter or TokenBucketLimiter(
            int(config.get("rate_capacity", DEFAULT_CONFIG["rate_capacity"])),
            float(config.get("rate_refill_per_sec", DEFAULT_CONFIG["rate_refill_per_sec"])),
        )


# The singleton gateway is set at startup by ``create_app()``.
_gateway: Gateway | None = None


def create_app(
    runtime: RelayRuntime | None = None,
    *,
    project_dir: Path | None = None,
    gateway_key: str | None = None,
    limiter: TokenBucketLimiter | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        runtime: A ready runtime; built from *project_dir* when omitted.
        project_dir: Root of the relay project (config, seeds, logs).
        gateway_key: Accepted ``X-Relay-Key``; default from the environment
            variable named by ``gateway_key_env``, else ``gateway_dev_key``.
        limiter: Admission limiter; default built from config.

    Returns:
        Configured FastAPI instance.
    """
    global _gateway
    if runtime is None:
        runtime = RelayRuntime.from_project(project_dir)
    _gateway = Gateway(runtime, gateway_key=gateway_key, limiter=limiter)

    from relaycore import __version__

    app = FastAPI(title="relaycore gateway", version=__version__)
    _register_routes(app)
    return app


def _gw() -> Gateway:
    """Get the singleton gateway, raising if not initialised."""
    if _gateway is None:
        raise HTTPException(500, "Gateway not initialised")
    return _gateway


def _refuse(reason: RefusalReason, detail: str | None = None, **extra: Any) -> JSONResponse:
    emit_warning(
        EventType.ingest_refused,
        f"Refused ingest: {reason.value}",
        {"reason": reason.value, "detail": detail, **extra},
        error_code=reason.value,
    )
    body: dict[str, Any] = {"ok": False, "reason": reason.value}
    if detail is not None:
        body["detail"] = detail
    body.update(extra)
    return JSONResponse(status_code=_STATUS[reason], content=body)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "service": "relaycore-gateway"}

    @app.get("/debug/state-hashes")
    async def state_hashes() -> dict[str, Any]:
        return {"ok": True, **_gw().runtime.state_hashes()}

    @app.get("/kpis/{branch_id}")
    async def kpi_history(branch_id: str) -> dict[str, Any]:
        runtime = _gw().runtime
        if branch_id not in runtime.modules.branch_ids():
            raise HTTPException(404, f"Unknown branch: {branch_id}")
        snapshots = runtime.kpi_history(branch_id)
        return {
            "ok": True,
            "branchId": branch_id,
            "snapshots": [s.model_dump(mode="json") for s in snapshots],
        }

    @app.post("/ingest")
    async def ingest(request: Request) -> JSONResponse:
        gw = _gw()

        relay_key = request.headers.get("x-relay-key", "")
        if not relay_key:
            return _refuse(RefusalReason.AUTH_MISSING)
        if relay_key != gw.gateway_key:
            return _refuse(RefusalReason.AUTH_INVALID)
        if not gw.limiter.consume(relay_key):
            return _refuse(RefusalReason.RATE_LIMITED)

        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > gw.max_body_bytes:
            return _refuse(RefusalReason.PAYLOAD_TOO_LARGE)
        raw = await request.body()
        if len(raw) > gw.max_body_bytes:
            return _refuse(RefusalReason.PAYLOAD_TOO_LARGE)

        try:
            body = json.loads(raw or b"{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            return _refuse(RefusalReason.PAYLOAD_INVALID, f"invalid JSON: {exc}")
        if not isinstance(body, dict):
            return _refuse(RefusalReason.PAYLOAD_INVALID, "body must be an object")

        route_id = str(body.get("routeId") or "").strip()
        records = body.get("records")
        if not route_id or not records:
            return _refuse(RefusalReason.PAYLOAD_INVALID, "routeId and records are required")
        meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
        proof = request.headers.get("x-relay-proof", "") == "1"

        try:
            outcome = gw.runtime.ingest(route_id, records, meta=meta, proof=proof)
        except UnknownRouteError:
            return _refuse(RefusalReason.ROUTE_UNKNOWN, routeId=route_id)
        except PayloadError as exc:
            return _refuse(RefusalReason.PAYLOAD_INVALID, exc.detail)
        except Exception as exc:
            emit_error(
                EventType.ingest_failed,
                f"Ingest via {route_id} failed: {type(exc).__name__}",
                {"route_id": route_id, "error": str(exc)},
                error_code=RefusalReason.INTERNAL_ERROR.value,
            )
            return JSONResponse(
                status_code=500, content={"ok": False, "reason": RefusalReason.INTERNAL_ERROR.value}
            )

        batch = outcome.batch
        return JSONResponse(
            content={
                "ok": True,
                "routeId": route_id,
                "ingested": batch.ingested,
                "failed": batch.failed,
                "sheetId": batch.sheet_id,
            }
        )
