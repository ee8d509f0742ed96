"""API routes for the meta-analysis engine.

This module defines the synchronous analysis endpoint, which returns
the dispatcher response directly, and a job endpoint that runs any
operation in the background so that O(k²) analyses (leave-one-out,
cumulative, influence) on large study sets do not block the caller.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Body, HTTPException
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..config.settings import settings
from ..meta.service import handle_request, parse_request, error_response, status_code_for
from ..core.errors import MetaAnalysisError
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

# In-memory registry of analysis jobs.  Keys are job IDs and values
# contain status information and, once finished, the response payload.
# Only coroutines running on the event loop read or write it; analyses
# themselves run in the thread pool.
active_jobs: Dict[str, Dict[str, object]] = {}


def _prune_jobs() -> None:
    """Drop the oldest finished jobs beyond the configured history limit."""
    limit = settings.job_history_limit
    if limit is None:
        return
    finished = [jid for jid, job in active_jobs.items() if job["status"] != "running"]
    # Leave room for the job about to be registered
    for job_id in finished[: max(0, len(active_jobs) + 1 - limit)]:
        del active_jobs[job_id]


@router.post("/api/meta-analysis")
def run_meta_analysis(payload: Dict[str, Any] = Body(...)) -> JSONResponse:
    """Run one operation synchronously.

    Failures come back with ``success: false`` and a structured
    ``error``; malformed input maps to 400, analyses that cannot be
    computed on valid input map to 422.
    """
    response = handle_request(payload)
    return JSONResponse(
        status_code=status_code_for(response),
        content=response.model_dump(mode="json"),
    )


@router.post("/api/meta-analysis/jobs")
async def start_analysis_job(
    background_tasks: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> JSONResponse:
    """Queue an operation to run in the background.

    The envelope is validated up front so that an unknown operation is
    rejected immediately rather than surfacing as a failed job.
    """
    try:
        request = parse_request(payload)
    except MetaAnalysisError as exc:
        response = error_response(exc)
        return JSONResponse(status_code=status_code_for(response), content=response.model_dump(mode="json"))

    job_id = f"meta_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"
    _prune_jobs()
    active_jobs[job_id] = {
        "type": request.operation.value,
        "status": "running",
        "n_studies": len(request.studies),
        "started_at": datetime.now().isoformat(),
    }
    background_tasks.add_task(run_analysis_job, job_id, payload)
    return JSONResponse(status_code=202, content={"job_id": job_id, "status": "started"})


async def run_analysis_job(job_id: str, payload: Dict[str, Any]) -> None:
    """Run the analysis off the event loop and record its outcome on the job."""
    try:
        response = await run_in_threadpool(handle_request, payload)
        active_jobs[job_id]["status"] = "completed" if response.success else "failed"
        active_jobs[job_id]["response"] = response.model_dump(mode="json")
        if not response.success:
            active_jobs[job_id]["error"] = response.message
    except Exception as e:
        logger.exception(f"Job {job_id} crashed", extra={"job_id": job_id})
        active_jobs[job_id]["status"] = "failed"
        active_jobs[job_id]["error"] = str(e)
    active_jobs[job_id]["completed_at"] = datetime.now().isoformat()


@router.get("/api/jobs/{job_id}")
async def get_job_status(job_id: str) -> Dict[str, object]:
    """Return the status (and result, when finished) of a job."""
    if job_id not in active_jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    return active_jobs[job_id]
