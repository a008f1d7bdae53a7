"""
Health check endpoints
"""

from fastapi import APIRouter, Request

from ..config import API_VERSION

router = APIRouter()


@router.get("/health", include_in_schema=False)
async def health(request: Request):
    controller = request.app.state.controller
    return {
        "status": "ok",
        "version": API_VERSION,
        "active_jobs": controller.store.count_active(),
        "running_processes": controller.supervisor.running_count,
    }


# Unauthenticated probe for docker HEALTHCHECKs
@router.get("/healthz", include_in_schema=False)
async def healthz():
    return {"status": "ok"}
