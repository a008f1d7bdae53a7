"""
JobController: the engine's only entry point.

Validates a request against policy (job type, parameters, environment
protection, concurrency limit) before anything is created, then hands the
job to the supervisor. It coordinates; the job records themselves are
owned by the store and written by the runners.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from . import config
from .approval import ApprovalGate
from .broadcaster import OutputBroadcaster, Subscription
from .config import RuntimeConfig
from .errors import ConcurrencyLimitError, InvalidJobRequest, InvalidTransition, ProtectedEnvironmentError
from .history import JobHistory
from .models import Job
from .recipes import RecipeRegistry
from .services.prometheus_metrics import prometheus_metrics
from .store import JobStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger("jobengine.controller")


class JobController:
    def __init__(
        self,
        store: Optional[JobStore] = None,
        recipes: Optional[RecipeRegistry] = None,
        runtime: Optional[RuntimeConfig] = None,
        history: Optional[JobHistory] = None,
        max_active_jobs: Optional[int] = None,
        grace: Optional[float] = None,
        approval_timeout: Optional[float] = None,
        drain_timeout: Optional[float] = None,
        workdir: Optional[str] = None,
    ):
        self.store = store or JobStore(OutputBroadcaster())
        self.recipes = recipes or RecipeRegistry()
        self.runtime = runtime or RuntimeConfig()
        self.history = history
        self.max_active_jobs = config.MAX_ACTIVE_JOBS if max_active_jobs is None else max_active_jobs
        self.workdir = workdir or config.JOB_WORKDIR
        self.gate = ApprovalGate(
            self.store,
            timeout=config.APPROVAL_TIMEOUT_SEC if approval_timeout is None else approval_timeout,
        )
        self.supervisor = ProcessSupervisor(
            self.store,
            self.gate,
            grace=config.CANCEL_GRACE_SEC if grace is None else grace,
            drain_timeout=config.STREAM_DRAIN_TIMEOUT_SEC if drain_timeout is None else drain_timeout,
        )
        # one worker keeps archive writes ordered and off the event loop
        self._archiver: Optional[ThreadPoolExecutor] = None
        if self.history is not None:
            self._archiver = ThreadPoolExecutor(max_workers=1, thread_name_prefix="job-history")
            self.store.add_terminal_listener(self._archive)

    def _archive(self, job: Job):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.history.archive(job)
            return
        loop.run_in_executor(self._archiver, self.history.archive, job)

    def _reject(self, reason: str, error: Exception):
        prometheus_metrics.increment_jobs_rejected(reason)
        logger.warning(f"Job request rejected: {error}", extra={
            "component": "controller",
            "reason": reason,
        })
        raise error

    def create(
        self,
        job_type: str,
        target: str,
        environment: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Validate, create in pending and start the job's runner"""
        if not job_type or not str(job_type).strip():
            self._reject("invalid", InvalidJobRequest("Job type is required"))
        if not target or not str(target).strip():
            self._reject("invalid", InvalidJobRequest("Target is required"))

        try:
            recipe = self.recipes.get(job_type)
        except InvalidJobRequest as e:
            self._reject("unknown_type", e)

        environment = environment or self.runtime.environment
        if recipe.deploys and self.runtime.is_protected(environment):
            self._reject("protected_environment", ProtectedEnvironmentError(environment))

        if self.max_active_jobs > 0 and self.store.count_active() >= self.max_active_jobs:
            self._reject("concurrency_limit", ConcurrencyLimitError(self.max_active_jobs))

        try:
            plan = recipe.plan(target, environment=environment, params=params, workdir=self.workdir)
        except InvalidJobRequest as e:
            self._reject("invalid", e)

        job = self.store.create(job_type, target, environment=environment)
        self.supervisor.start(job.id, plan)
        logger.info(f"Started {job_type} job {job.id} for {target}", extra={
            "component": "controller",
            "job_id": job.id,
            "environment": environment,
        })
        return job

    def get(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def list(self, active_only: bool = False) -> List[Job]:
        return self.store.list(active_only=active_only)

    async def cancel(self, job_id: str, reason: str = "Cancelled by user") -> Job:
        """Cancel a job; a job that already finished is returned as is"""
        return await self.supervisor.cancel(job_id, reason)

    async def clear(self) -> int:
        """Force every active job to a terminal state, then drop all records"""
        # jobs created while earlier ones were being stopped get stopped too
        while self.supervisor.running_count:
            await self.supervisor.cancel_all("Job force-cleared")
        self.gate.reset()
        return self.store.clear()

    def respond(self, job_id: str, approved: bool) -> Job:
        return self.gate.respond(job_id, approved)

    def subscribe(self, job_id: str) -> Subscription:
        """Replay-then-live output stream for one viewer"""
        self.store.get(job_id)
        return self.store.broadcaster.subscribe(job_id)

    def diff(self, job_id: str) -> Job:
        """Job with its captured preview; fails if no preview exists yet"""
        job = self.store.get(job_id)
        if job.diff_output is None:
            raise InvalidTransition("No diff has been captured for this job", job_id=job_id)
        return job

    async def job_history(self, limit: Optional[int] = None) -> List[Job]:
        """Archived jobs; runs after every archive write already queued"""
        if self.history is None:
            return []
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._archiver, self.history.list, limit)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        return await self.supervisor.wait(job_id, timeout=timeout)

    async def shutdown(self):
        await self.supervisor.shutdown()
        self.gate.reset()
        if self.history is not None:
            await asyncio.get_running_loop().run_in_executor(self._archiver, self.history.close)
            self._archiver.shutdown(wait=False)
