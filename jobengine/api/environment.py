"""
Deploy environment selection and protection
"""

import logging

from fastapi import APIRouter, Request

from ..schemas.job import EnvironmentOut, EnvironmentUpdate

logger = logging.getLogger("jobengine.api.environment")

router = APIRouter(tags=["Environment"])


@router.get("/environment", response_model=EnvironmentOut)
async def get_environment(request: Request):
    return request.app.state.controller.runtime.get_all()


@router.put("/environment", response_model=EnvironmentOut)
async def update_environment(body: EnvironmentUpdate, request: Request):
    runtime = request.app.state.controller.runtime
    if body.environment is not None:
        runtime.set_environment(body.environment)
    if body.protected_environments is not None:
        runtime.set_protected_environments(body.protected_environments)
    current = runtime.get_all()
    logger.info(f"Environment set to {current['environment']!r}", extra={
        "component": "api",
        "protected": current["is_protected"],
    })
    return current
