"""
FastAPI Application — REST API + Server-Sent Events + Webhooks.

Provides:
- REST API for bulk-send jobs, auto-reply rules, bot config and handoffs
- SSE stream of job progress and conversation events
- Webhook endpoints for the WhatsApp Cloud API
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import pydantic
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from config.settings import get_settings
from core.errors import ConfigurationError, NotFoundError, StateConflict, ValidationError
from core.orchestrator import Orchestrator, create_orchestrator
from models.schemas import (
    BusinessHoursWindow, EventType, JobItemStatus, JobStatus, MatchType, utcnow,
)
from utils.logging import configure_logging

logger = structlog.get_logger()

SSE_PING_SECONDS = 15.0


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class JobCreateRequest(BaseModel):
    device_id: str
    recipients: list[str]
    payload: dict[str, Any]
    options: dict[str, Any] = {}


class RuleCreateRequest(BaseModel):
    name: str
    trigger: str
    response: str
    match_type: MatchType = MatchType.CONTAINS
    priority: int = 0
    is_active: bool = True
    cooldown_seconds: int = 0
    metadata: dict[str, Any] = {}


class RuleUpdateRequest(BaseModel):
    name: Optional[str] = None
    trigger: Optional[str] = None
    response: Optional[str] = None
    match_type: Optional[MatchType] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    cooldown_seconds: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None


class BotConfigRequest(BaseModel):
    bot_enabled: bool = True
    timezone: str = "UTC"
    business_hours: list[BusinessHoursWindow] = []
    off_hours_enabled: bool = False
    off_hours_message: Optional[str] = None
    handoff_keywords: list[str] = []
    resume_keywords: list[str] = []
    handoff_message: Optional[str] = None
    resume_message: Optional[str] = None
    ignore_groups: bool = True


class HandoffRequest(BaseModel):
    reason: str = "operator"


class ResumeRequest(BaseModel):
    resumed_by: str = "operator"


class InboundEventRequest(BaseModel):
    sender_id: str
    text: str
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    from_me: bool = False


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(orchestrator: Orchestrator = None) -> FastAPI:
    """
    Build the API around an orchestrator.
    Without one, the lifespan builds it from settings and owns its shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.orchestrator is None:
            settings = get_settings()
            configure_logging(settings.debug)
            app.state.orchestrator = await create_orchestrator(settings)
        settings = app.state.orchestrator.settings

        await app.state.orchestrator.start()
        logger.info("automation_api_started", app=settings.app_name)
        yield

        await app.state.orchestrator.stop()
        logger.info("automation_api_stopped")

    app = FastAPI(
        title="Messaging Automation API",
        description="Bulk-send dispatch and conversation automation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _orch(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(pydantic.ValidationError)
    async def model_validation_error(request: Request, exc: pydantic.ValidationError):
        errors = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        return JSONResponse(status_code=422, content={"detail": "Invalid input", "errors": errors})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StateConflict)
    async def conflict(request: Request, exc: StateConflict):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def misconfigured(request: Request, exc: ConfigurationError):
        logger.error("api_configuration_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"detail": str(exc)})


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        orchestrator = _orch(request)
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "workers_running": orchestrator.workers.running,
            "active_devices": orchestrator.workers.active_devices(),
            "event_subscribers": orchestrator.bus.subscriber_count,
            "event_relay": orchestrator.relay is not None,
        }

    # ══════════════════════════════════════════════════════════
    #  JOBS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/jobs", status_code=202)
    async def create_job(req: JobCreateRequest, request: Request):
        job_id = await _orch(request).enqueue_job(req.device_id, req.recipients, req.payload, req.options)
        return {"job_id": job_id, "status": JobStatus.QUEUED.value}

    @app.get("/api/v1/jobs")
    async def list_jobs(
        request: Request,
        device_id: str = None,
        status: JobStatus = None,
        limit: int = Query(50, ge=1, le=200),
    ):
        jobs = await _orch(request).list_jobs(device_id=device_id, status=status, limit=limit)
        return [j.model_dump(mode="json") for j in jobs]

    @app.get("/api/v1/jobs/stats")
    async def job_stats(request: Request, device_id: str = None):
        return await _orch(request).job_statistics(device_id)

    @app.post("/api/v1/jobs/purge")
    async def purge_jobs(request: Request, older_than_hours: float = Query(24, ge=0)):
        purged = await _orch(request).purge_finished_jobs(older_than_hours)
        return {"purged": purged}

    @app.get("/api/v1/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        job = await _orch(request).get_job(job_id)
        return job.model_dump(mode="json")

    @app.get("/api/v1/jobs/{job_id}/items")
    async def list_job_items(job_id: str, request: Request, status: JobItemStatus = None):
        orchestrator = _orch(request)
        await orchestrator.get_job(job_id)
        items = await orchestrator.list_job_items(job_id, status=status)
        return [i.model_dump(mode="json") for i in items]

    @app.post("/api/v1/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, request: Request):
        job = await _orch(request).cancel_job(job_id)
        return job.summary()

    @app.post("/api/v1/jobs/{job_id}/retry", status_code=202)
    async def retry_job(job_id: str, request: Request):
        new_job_id = await _orch(request).retry_job(job_id)
        return {"job_id": new_job_id, "retry_of": job_id}

    # ══════════════════════════════════════════════════════════
    #  RULES
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/devices/{device_id}/rules")
    async def list_rules(device_id: str, request: Request, active_only: bool = False):
        rules = await _orch(request).list_rules(device_id, active_only=active_only)
        return [r.model_dump(mode="json") for r in rules]

    @app.post("/api/v1/devices/{device_id}/rules", status_code=201)
    async def create_rule(device_id: str, req: RuleCreateRequest, request: Request):
        rule = await _orch(request).create_rule(device_id, **req.model_dump())
        return rule.model_dump(mode="json")

    @app.get("/api/v1/rules/{rule_id}")
    async def get_rule(rule_id: int, request: Request):
        rule = await _orch(request).get_rule(rule_id)
        return rule.model_dump(mode="json")

    @app.patch("/api/v1/rules/{rule_id}")
    async def update_rule(rule_id: int, req: RuleUpdateRequest, request: Request):
        rule = await _orch(request).update_rule(rule_id, **req.model_dump(exclude_unset=True))
        return rule.model_dump(mode="json")

    @app.delete("/api/v1/rules/{rule_id}", status_code=204)
    async def delete_rule(rule_id: int, request: Request):
        await _orch(request).delete_rule(rule_id)

    # ══════════════════════════════════════════════════════════
    #  BOT CONFIG
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/devices/{device_id}/bot-config")
    async def get_bot_config(device_id: str, request: Request):
        config = await _orch(request).get_bot_config(device_id)
        return config.model_dump(mode="json")

    @app.put("/api/v1/devices/{device_id}/bot-config")
    async def save_bot_config(device_id: str, req: BotConfigRequest, request: Request):
        # fields left out keep their stored value
        config = await _orch(request).update_bot_config(device_id, **req.model_dump(exclude_unset=True))
        return config.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS & HANDOFF
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/devices/{device_id}/inbound")
    async def inbound_event(device_id: str, req: InboundEventRequest, request: Request):
        action = await _orch(request).on_inbound_event(
            device_id, req.sender_id, req.text,
            timestamp=req.timestamp, message_id=req.message_id, from_me=req.from_me,
        )
        return action.model_dump(mode="json")

    @app.get("/api/v1/devices/{device_id}/handoffs")
    async def list_handoffs(device_id: str, request: Request):
        conversations = await _orch(request).list_handoffs(device_id)
        return [c.model_dump(mode="json") for c in conversations]

    @app.get("/api/v1/devices/{device_id}/conversations/stats")
    async def conversation_stats(device_id: str, request: Request):
        return await _orch(request).conversation_stats(device_id)

    @app.get("/api/v1/devices/{device_id}/conversations/{counterpart_id}")
    async def get_conversation(device_id: str, counterpart_id: str, request: Request):
        conversation = await _orch(request).get_conversation(device_id, counterpart_id)
        if conversation is None:
            raise HTTPException(404, "Conversation not found")
        return conversation.model_dump(mode="json")

    @app.post("/api/v1/devices/{device_id}/conversations/{counterpart_id}/handoff")
    async def request_handoff(device_id: str, counterpart_id: str, request: Request, req: HandoffRequest = None):
        reason = req.reason if req else "operator"
        conversation = await _orch(request).request_handoff(device_id, counterpart_id, reason)
        return conversation.model_dump(mode="json")

    @app.post("/api/v1/devices/{device_id}/conversations/{counterpart_id}/resume")
    async def resume_bot(device_id: str, counterpart_id: str, request: Request, req: ResumeRequest = None):
        resumed_by = req.resumed_by if req else "operator"
        conversation = await _orch(request).resume_bot(device_id, counterpart_id, resumed_by)
        return conversation.model_dump(mode="json")

    @app.get("/api/v1/devices/{device_id}/actions")
    async def list_actions(
        device_id: str,
        request: Request,
        counterpart_id: str = None,
        limit: int = Query(100, ge=1, le=500),
    ):
        actions = await _orch(request).list_actions(device_id, counterpart_id=counterpart_id, limit=limit)
        return [a.model_dump(mode="json") for a in actions]

    # ══════════════════════════════════════════════════════════
    #  EVENTS — SSE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/events")
    async def stream_events(
        request: Request,
        device_id: str = None,
        types: Optional[list[EventType]] = Query(None),
    ):
        subscription = _orch(request).subscribe(device_id=device_id, types=types)

        async def generator() -> AsyncGenerator[dict, None]:
            try:
                while not subscription.closed:
                    if await request.is_disconnected():
                        break
                    event = await subscription.get(timeout=SSE_PING_SECONDS)
                    if event is None:
                        yield {"event": "ping", "data": "{}"}
                        continue
                    yield {"id": event.id, "event": event.type.value, "data": event.model_dump_json()}
            finally:
                subscription.close()

        return EventSourceResponse(generator())

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — WhatsApp
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp/{device_id}")
    async def whatsapp_verify(device_id: str, request: Request):
        verify = getattr(_orch(request).transport, "verify_webhook", None)
        challenge = verify(dict(request.query_params)) if verify else None
        if challenge:
            return PlainTextResponse(challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp/{device_id}")
    async def whatsapp_webhook(device_id: str, request: Request):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(400, "Invalid JSON body")
        if not isinstance(body, dict):
            raise HTTPException(400, "Invalid webhook payload")

        actions = await _orch(request).handle_webhook(device_id, body)
        logger.info("whatsapp_webhook_processed", device_id=device_id, messages=len(actions))
        return {"status": "ok", "processed": len(actions)}


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
