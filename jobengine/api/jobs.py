"""
Jobs API: create, inspect, cancel, approve and stream supervised jobs
"""

import json
import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.responses import StreamingResponse

from .. import config
from ..broadcaster import Subscription
from ..controller import JobController
from ..schemas.job import ApprovalResponse, JobCreate, JobEnvelope, JobList

logger = logging.getLogger("jobengine.api.jobs")

router = APIRouter(tags=["Jobs"])


def get_controller(request: Request) -> JobController:
    return request.app.state.controller


@router.post("/jobs", response_model=JobEnvelope)
async def create_job(body: JobCreate, controller: JobController = Depends(get_controller)):
    """Create a job and start it"""
    job = controller.create(body.type, body.target, environment=body.environment, params=body.params)
    return {"job": job.to_dict()}


@router.get("/jobs", response_model=JobList)
async def list_jobs(
    active: bool = Query(False, description="Only pending, running or awaiting approval"),
    controller: JobController = Depends(get_controller),
):
    return {"jobs": [j.to_dict() for j in controller.list(active_only=active)]}


@router.get("/jobs/history", response_model=JobList)
async def job_history(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    controller: JobController = Depends(get_controller),
):
    """Finished jobs from the archive, most recent first"""
    return {"jobs": [j.to_dict() for j in await controller.job_history(limit=limit)]}


@router.post("/jobs/clear")
async def clear_jobs(controller: JobController = Depends(get_controller)):
    """Force-terminate every active job and drop all records"""
    cleared = await controller.clear()
    return {"success": True, "cleared": cleared}


@router.get("/jobs/{job_id}", response_model=JobEnvelope)
async def get_job(job_id: str, controller: JobController = Depends(get_controller)):
    return {"job": controller.get(job_id).to_dict()}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, controller: JobController = Depends(get_controller)):
    job = await controller.cancel(job_id)
    return {"success": True, "job": job.to_dict()}


@router.get("/jobs/{job_id}/diff")
async def get_diff(job_id: str, controller: JobController = Depends(get_controller)):
    job = controller.diff(job_id)
    return {"diff_output": job.diff_output, "status": job.status.value, "target": job.target}


@router.post("/jobs/{job_id}/respond")
async def respond(job_id: str, body: ApprovalResponse, controller: JobController = Depends(get_controller)):
    """Approve or reject the job's pending change"""
    job = controller.respond(job_id, body.approved)
    return {"success": True, "approved": body.approved, "job": job.to_dict()}


async def event_stream(sub: Subscription, keepalive: float) -> AsyncGenerator[str, None]:
    """Server-Sent Events: one data frame per line, then the done frame"""
    async with sub:
        while True:
            event = await sub.get(timeout=keepalive)
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield f"data: {json.dumps(event)}\n\n"
            if event.get("done"):
                break


@router.get("/jobs/{job_id}/output")
async def stream_output(job_id: str, controller: JobController = Depends(get_controller)):
    """Replay the job's output so far, then follow it live until it finishes"""
    sub = controller.subscribe(job_id)
    return StreamingResponse(
        event_stream(sub, config.SSE_KEEPALIVE_SEC),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
