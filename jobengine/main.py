"""
FastAPI application for the job engine
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import config
from .api.environment import router as environment_router
from .api.health import router as health_router
from .api.jobs import router as jobs_router
from .api.prometheus import router as prometheus_router
from .config import API_PREFIX, API_VERSION, RuntimeConfig
from .controller import JobController
from .errors import JobEngineError
from .history import JobHistory
from .logging_config import setup_logging
from .middleware import TracingMiddleware
from .recipes import RecipeRegistry

logger = logging.getLogger("jobengine")


async def job_engine_error_handler(request: Request, exc: JobEngineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": problems or "Invalid request", "code": "InvalidJobRequest"})


def build_controller(
    recipes: Optional[RecipeRegistry] = None,
    runtime: Optional[RuntimeConfig] = None,
    archive: Optional[bool] = None,
    db_url: Optional[str] = None,
    **options,
) -> JobController:
    """Assemble the engine components from configuration"""
    archive = config.JOB_ARCHIVE_ENABLED if archive is None else archive
    history = None
    if archive:
        history = JobHistory(db_url)
        history.init()
    return JobController(
        recipes=recipes or RecipeRegistry.from_config(),
        runtime=runtime or RuntimeConfig(),
        history=history,
        **options,
    )


def create_app(controller_factory=None, configure_logging: bool = True) -> FastAPI:
    """Build the app; controller_factory lets tests inject their own engine"""
    if configure_logging:
        setup_logging()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        # Engine objects are created inside the running loop they will use
        controller = (controller_factory or build_controller)()
        application.state.controller = controller
        logger.info("Job engine ready", extra={
            "component": "api",
            "version": API_VERSION,
            "job_types": controller.recipes.names(),
            "max_active_jobs": controller.max_active_jobs,
        })
        try:
            yield
        finally:
            await controller.shutdown()
            logger.info("Job engine shut down", extra={"component": "api"})

    application = FastAPI(title="Job Engine", version=API_VERSION, lifespan=lifespan)
    application.add_middleware(TracingMiddleware)
    application.add_exception_handler(JobEngineError, job_engine_error_handler)
    application.add_exception_handler(RequestValidationError, validation_error_handler)

    application.include_router(health_router, prefix=API_PREFIX)
    application.include_router(jobs_router, prefix=API_PREFIX)
    application.include_router(environment_router, prefix=API_PREFIX)
    application.include_router(prometheus_router, prefix=API_PREFIX)
    return application


app = create_app()
