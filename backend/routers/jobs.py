"""
Jobs router: scheduler status, manual trigger and cancel.
"""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from task_engine import TaskEngine, TriggerOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])

_REFUSALS = {
    TriggerOutcome.ALREADY_RUNNING: "already-running",
    TriggerOutcome.BLOCKED_BY_PEER: "blocked-by-peer",
}


def _engine(request: Request) -> TaskEngine:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return context.engine


@router.get("")
async def list_jobs(request: Request):
    """Status of every registered job."""
    return _engine(request).list_jobs()


@router.get("/{job_name}")
async def get_job(job_name: str, request: Request):
    status = _engine(request).get_status(job_name)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Job {job_name} not found")
    return status


@router.post("/{job_name}/run")
async def run_job(job_name: str, request: Request):
    """Start a job now, under the same rules as the interval trigger."""
    outcome = await _engine(request).trigger(job_name, triggered_by="manual")
    if outcome == TriggerOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Job {job_name} not found")
    if outcome in _REFUSALS:
        raise HTTPException(status_code=409, detail=_REFUSALS[outcome])
    logger.info(f"[{job_name}] Manual run started")
    return JSONResponse(status_code=202, content={"status": outcome.value})


@router.post("/{job_name}/cancel")
async def cancel_job(job_name: str, request: Request):
    result = _engine(request).cancel(job_name)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Job {job_name} not found")
    return result
