"""
Campaign Orchestrator — API Server

FastAPI application serving:
  POST /v1/operations                      — initiate an operation
  GET  /v1/operations/{id}                 — operation status
  POST /v1/operations/{id}/advance         — advance one phase
  POST /v1/operations/{id}/cancel          — cancel an operation
  POST /v1/targets/{target_id}/complete    — complete the target's active operation
  GET  /v1/targets/{target_id}/operations  — active + historical operations
  GET  /v1/messages/ready                  — messages ready for delivery
  POST /v1/messages/{id}/delivered         — confirm a delivery
  POST /v1/sweep                           — run a resumption pass now
  GET  /v1/stats                           — store statistics
  GET  /health                             — liveness
  GET  /ready                              — readiness

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Sweep-only deployment (arq cron worker does the sweeping)
    CAMPAIGN_WORKER_MODE=none uvicorn api.server:app
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.models import (
    AdvanceRequest,
    ErrorBody,
    InitiateRequest,
    InitiateResponse,
    STATUS_FOR_ERROR,
)
from api.worker import SweepBackend, create_sweeper
from campaign.result import Err, ErrorKind, PersistenceError
from campaign.runtime import CampaignEngine
from engine.config import get_config_value, load_config
from engine.logging import configure_logging

logger = logging.getLogger("campaign_orchestrator.api")


def _error(err: Err) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_FOR_ERROR.get(err.kind, 500),
        content=ErrorBody.of(err).to_dict(),
    )


async def _json_body(request: Request) -> dict[str, Any] | None:
    """Parsed JSON object body; {} when empty, None when malformed."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    engine: CampaignEngine | None = None,
    config: dict[str, Any] | None = None,
    worker_mode: str | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances around their own engine.
    """
    app = FastAPI(
        title="Campaign Orchestrator API",
        version="0.1.0",
        description="Phased campaign orchestration engine",
    )

    # ── State ────────────────────────────────────────────────

    _engine: CampaignEngine | None = engine
    _sweeper: SweepBackend | None = None
    _config: dict[str, Any] | None = config

    def get_config() -> dict[str, Any]:
        nonlocal _config
        if _config is None:
            _config = load_config()
        return _config

    def get_engine() -> CampaignEngine:
        nonlocal _engine
        if _engine is None:
            _engine = CampaignEngine.from_config(get_config())
        return _engine

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("startup")
    async def startup():
        nonlocal _sweeper
        eng = get_engine()
        report = eng.start()
        logger.info("Startup resumption: %s", report.to_dict())
        interval = float(get_config_value("scheduler.sweep_interval", get_config(), 15.0))
        _sweeper = create_sweeper(eng, mode=worker_mode, interval=interval)
        _sweeper.start()

    @app.on_event("shutdown")
    async def shutdown():
        if _sweeper:
            _sweeper.stop()
        if _engine:
            _engine.shutdown()

    @app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError):
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return _error(Err(ErrorKind.PERSISTENCE, str(exc)[:200]))

    # ── Operations ────────────────────────────────────────────

    @app.post("/v1/operations")
    async def initiate(request: Request):
        body = await _json_body(request)
        if body is None:
            return JSONResponse(status_code=422, content={"errors": ["body must be a JSON object"]})

        req = InitiateRequest.from_body(body)
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        result = get_engine().initiate(
            target_id=req.target_id,
            initiator_id=req.initiator_id,
            participant_ids=req.participant_ids,
            initial_metrics=req.initial_metrics,
            metadata=req.metadata,
            campaign=req.campaign,
        )
        if not result.ok:
            return _error(result)
        response = InitiateResponse(operation_id=result.value, target_id=req.target_id)
        return JSONResponse(status_code=201, content=response.to_dict())

    @app.get("/v1/operations/{operation_id}")
    async def get_status(operation_id: str):
        result = get_engine().get_status(operation_id)
        if not result.ok:
            return _error(result)
        return JSONResponse(content=result.value)

    @app.post("/v1/operations/{operation_id}/advance")
    async def advance(operation_id: str, request: Request):
        body = await _json_body(request)
        if body is None:
            return JSONResponse(status_code=422, content={"errors": ["body must be a JSON object"]})

        req = AdvanceRequest.from_body(body)
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        result = get_engine().advance_phase(operation_id, expected_phase=req.expected_phase)
        if not result.ok:
            return _error(result)
        op = result.value
        return JSONResponse(content={
            "operation_id": op.operation_id,
            "phase": op.phase,
            "progress": op.progress,
            "phase_start_times": {str(k): v for k, v in op.phase_start_times.items()},
        })

    @app.post("/v1/operations/{operation_id}/cancel")
    async def cancel(operation_id: str):
        result = get_engine().cancel(operation_id)
        if not result.ok:
            return _error(result)
        return JSONResponse(content={"operation_id": operation_id, "cancelled": result.value})

    # ── Targets ───────────────────────────────────────────────

    @app.post("/v1/targets/{target_id}/complete")
    async def complete(target_id: str):
        result = get_engine().mark_complete(target_id)
        if not result.ok:
            return _error(result)
        return JSONResponse(content={"target_id": target_id, "completed": result.value})

    @app.get("/v1/targets/{target_id}/operations")
    async def list_for_target(target_id: str):
        return JSONResponse(content=get_engine().list_for_target(target_id))

    # ── Delivery ──────────────────────────────────────────────

    @app.get("/v1/messages/ready")
    async def ready_messages(limit: int | None = None):
        if limit is not None and limit < 0:
            return JSONResponse(status_code=422, content={"errors": ["limit must be non-negative"]})
        messages = get_engine().get_ready_messages(limit)
        return JSONResponse(content={"count": len(messages), "messages": messages})

    @app.post("/v1/messages/{message_id}/delivered")
    async def confirm_delivered(message_id: str):
        result = get_engine().confirm_delivered(message_id)
        if not result.ok:
            return _error(result)
        if not result.value:
            return _error(Err(ErrorKind.NOT_FOUND, f"message {message_id} not found"))
        return JSONResponse(content={"message_id": message_id, "delivered": True})

    # ── Maintenance ───────────────────────────────────────────

    @app.post("/v1/sweep")
    async def sweep():
        return JSONResponse(content=get_engine().sweep().to_dict())

    @app.get("/v1/stats")
    async def get_stats():
        stats = get_engine().stats()
        if _sweeper:
            stats["worker"] = _sweeper.stats
        return JSONResponse(content=stats)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        # Check the store is reachable
        try:
            get_engine().stats()
            return JSONResponse(content={"status": "ok"})
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


def build_app() -> FastAPI:
    """Module-level app for uvicorn: config from CAMPAIGN_* settings."""
    config = load_config()
    configure_logging(str(get_config_value("logging.level", config, "INFO")))
    return create_app(config=config, worker_mode=os.environ.get("CAMPAIGN_WORKER_MODE"))


app = build_app()
