"""
HTTP trigger surface: shared-secret-gated endpoints that run refresh
operations, enqueue jobs and report queue state. Every response is JSON with
a `success` flag.
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fpl_refresh.config import Config
from fpl_refresh.orchestrator_context import OrchestratorContext, UnknownQueueError
from fpl_refresh.queues.jobs import JobStatus
from fpl_refresh.refresh.manager import ERROR, RefreshOutcome
from fpl_refresh.refresh.schedule import InvalidScheduleError

logger = logging.getLogger(__name__)

app = FastAPI(title="FPL Refresh API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Lazy init so importing the app does not require Supabase
_context: Optional[OrchestratorContext] = None

REFRESH_TYPES = ("live", "post-match", "pre-deadline", "regular", "full", "incremental", "manual")
STATUS_JOB_LIMIT = 10


def get_context() -> OrchestratorContext:
    global _context
    if _context is None:
        _context = OrchestratorContext.from_config(Config())
    return _context


def set_context(context: Optional[OrchestratorContext]):
    """Install the context built by the service entry point (or a test)."""
    global _context
    _context = context


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def require_cron_secret(
    authorization: Optional[str] = Header(None),
    context: OrchestratorContext = Depends(get_context),
):
    secret = context.config.cron_secret
    if not secret:
        logger.warning("CRON_SECRET is not configured, rejecting request")
        raise HTTPException(status_code=401, detail="Unauthorized")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return context


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail, "timestamp": _timestamp()},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled API error", extra={
        "path": request.url.path,
        "error": str(exc),
        "error_type": type(exc).__name__
    }, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc), "timestamp": _timestamp()},
    )


class RefreshRequest(BaseModel):
    admin_id: Optional[str] = None


class ScheduleUpdateRequest(BaseModel):
    windows: List[Dict[str, Any]] = Field(default_factory=list)


class EnqueueRequest(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)


def _outcome_response(outcome: RefreshOutcome) -> JSONResponse:
    if outcome.state == ERROR:
        return JSONResponse(status_code=500, content={
            "success": False,
            "error": outcome.details.get("error") or "Refresh failed",
            "result": outcome.to_dict(),
            "timestamp": _timestamp(),
        })
    return JSONResponse(content={"success": True, "result": outcome.to_dict(), "timestamp": _timestamp()})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/api/v1/state")
async def current_state(context: OrchestratorContext = Depends(require_cron_secret)):
    state = await context.refresh_manager.get_current_state()
    return {"success": state["state"] != ERROR, **state, "timestamp": _timestamp()}


@app.post("/api/v1/refresh/{refresh_type}")
async def refresh(
    refresh_type: str,
    body: Optional[RefreshRequest] = None,
    context: OrchestratorContext = Depends(require_cron_secret),
):
    """Run one refresh operation synchronously."""
    if refresh_type not in REFRESH_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown refresh type: {refresh_type}")

    manager = context.refresh_manager
    operations = {
        "live": manager.perform_live_refresh,
        "post-match": manager.perform_post_match_refresh,
        "pre-deadline": manager.perform_pre_deadline_refresh,
        "regular": manager.perform_regular_refresh,
        "full": manager.perform_full_refresh,
        "incremental": manager.perform_incremental_refresh,
    }
    if refresh_type == "manual":
        outcome = await manager.perform_manual_refresh(body.admin_id if body else None)
    else:
        outcome = await operations[refresh_type]()
    return _outcome_response(outcome)


@app.post("/api/v1/cron/hourly")
async def hourly(context: OrchestratorContext = Depends(require_cron_secret)):
    """Live refresh on match days, incremental otherwise."""
    job_context = await context.get_job_context("hourly-refresh", "cron")
    if job_context.is_match_day:
        outcome = await context.refresh_manager.perform_live_refresh()
    else:
        outcome = await context.refresh_manager.perform_incremental_refresh()
    return _outcome_response(outcome)


@app.post("/api/v1/schedule/update")
async def schedule_update(
    body: ScheduleUpdateRequest,
    context: OrchestratorContext = Depends(require_cron_secret),
):
    try:
        outcome = await context.refresh_manager.perform_schedule_update(body.windows)
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _outcome_response(outcome)


@app.post("/api/v1/queue/{queue_name}")
async def enqueue(
    queue_name: str,
    body: Optional[EnqueueRequest] = None,
    context: OrchestratorContext = Depends(require_cron_secret),
):
    body = body or EnqueueRequest()
    data = {"triggered_by": "api", **body.data}
    try:
        job = await context.enqueue(queue_name, data, body.options)
    except UnknownQueueError:
        raise HTTPException(status_code=400, detail=f"Unknown queue: {queue_name}")
    return {"success": True, "job": job.to_dict(), "timestamp": _timestamp()}


@app.get("/api/v1/queue/{queue_name}/status")
async def queue_status(queue_name: str, context: OrchestratorContext = Depends(require_cron_secret)):
    try:
        queue = context.get_queue(queue_name)
    except UnknownQueueError:
        raise HTTPException(status_code=400, detail=f"Unknown queue: {queue_name}")

    jobs = {}
    for status in JobStatus:
        listed = await queue.get_jobs([status], 0, STATUS_JOB_LIMIT - 1)
        jobs[status.value] = [job.to_dict() for job in listed]
    return {
        "success": True,
        "queue": queue_name,
        "counts": await queue.get_job_counts(),
        "jobs": jobs,
        "timestamp": _timestamp(),
    }


@app.get("/api/v1/jobs/context/{queue_name}")
async def job_context(
    queue_name: str,
    source: str = "api",
    context: OrchestratorContext = Depends(require_cron_secret),
):
    try:
        built = await context.get_job_context(queue_name, source)
    except UnknownQueueError:
        raise HTTPException(status_code=400, detail=f"Unknown queue: {queue_name}")
    return {"success": True, "context": built.to_dict(), "timestamp": _timestamp()}
