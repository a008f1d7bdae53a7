"""
Process supervisor.

One runner task per job owns that job's record from spawn to settlement.
It walks the job plan phase by phase, feeds captured lines into the store
(which fans them out), parks at approval checkpoints, and is the one place
that turns process outcomes into terminal statuses. Cancellation is a
signal to the runner; the runner settles the job itself.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from . import config
from .approval import ApprovalGate
from .errors import Cancelled, InvalidTransition, JobNotFound, RuntimeExitError, SpawnError
from .logging_config import job_id_var
from .models import Job, JobStatus
from .process import KILL_CONFIRM_TIMEOUT, ProcessHandle, spawned
from .recipes import JobPlan, Phase
from .store import JobStore

logger = logging.getLogger("jobengine.supervisor")

PROGRESS_RE = re.compile(r"(?<![\d.])(\d{1,3})(?:\.\d+)?\s?%")


def parse_progress(line: str) -> Optional[int]:
    """Last percentage on the line, if it is a plausible progress value"""
    found = None
    for match in PROGRESS_RE.finditer(line):
        value = int(match.group(1))
        if value <= 100:
            found = value
    return found


@dataclass
class _Run:
    job_id: str
    plan: JobPlan
    task: Optional[asyncio.Task] = None
    handle: Optional[ProcessHandle] = None
    cancel_requested: bool = False
    cancel_reason: str = "Cancelled by user"


class ProcessSupervisor:
    """Owns the external processes backing jobs"""

    def __init__(
        self,
        store: JobStore,
        gate: ApprovalGate,
        grace: float = config.CANCEL_GRACE_SEC,
        drain_timeout: float = config.STREAM_DRAIN_TIMEOUT_SEC,
    ):
        self._store = store
        self._gate = gate
        self.grace = grace
        self.drain_timeout = drain_timeout
        self._runs: Dict[str, _Run] = {}

    def is_running(self, job_id: str) -> bool:
        return job_id in self._runs

    @property
    def running_count(self) -> int:
        return len(self._runs)

    def start(self, job_id: str, plan: JobPlan) -> asyncio.Task:
        """Start the runner for a pending job"""
        if job_id in self._runs:
            raise InvalidTransition("Job already has a running supervisor", job_id=job_id)
        run = _Run(job_id=job_id, plan=plan)
        self._runs[job_id] = run
        run.task = asyncio.create_task(self._run(run), name=f"job-{job_id}")
        return run.task

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Wait for the runner of job_id to finish and return the record"""
        run = self._runs.get(job_id)
        if run is not None and run.task is not None:
            await asyncio.wait({run.task}, timeout=timeout)
        return self._store.get(job_id)

    async def cancel(self, job_id: str, reason: str = "Cancelled by user") -> Job:
        """Stop a job and everything it spawned; settles it as cancelled.

        Idempotent: a job that already finished is returned unchanged.
        """
        job = self._store.get(job_id)
        run = self._runs.get(job_id)
        if run is None:
            if not job.is_terminal:
                # never started, or the runner is gone
                self._settle(job_id, JobStatus.CANCELLED, reason)
            return self._store.get(job_id)

        if not run.cancel_requested:
            run.cancel_requested = True
            run.cancel_reason = reason
            logger.info(f"Cancel requested for job {job_id}", extra={
                "component": "supervisor",
                "job_id": job_id,
                "reason": reason,
            })

        self._gate.abort(job_id)
        if run.handle is not None:
            await run.handle.terminate(self.grace)

        task = run.task
        if task is not None and not task.done():
            budget = self.grace + KILL_CONFIRM_TIMEOUT + self.drain_timeout + 1
            done, _ = await asyncio.wait({task}, timeout=budget)
            if not done:
                logger.warning(f"Runner for job {job_id} did not stop in {budget}s; cancelling it", extra={
                    "component": "supervisor",
                    "job_id": job_id,
                })
                task.cancel()
                await asyncio.wait({task}, timeout=KILL_CONFIRM_TIMEOUT)

        job = self._store.find(job_id)
        if job is not None and not job.is_terminal:
            self._settle(job_id, JobStatus.CANCELLED, reason)
        return self._store.get(job_id)

    async def cancel_all(self, reason: str = "Job force-cleared") -> int:
        job_ids = list(self._runs)
        if job_ids:
            await asyncio.gather(
                *(self.cancel(job_id, reason) for job_id in job_ids),
                return_exceptions=True,
            )
        return len(job_ids)

    async def shutdown(self):
        """Stop every runner; used on service shutdown"""
        count = await self.cancel_all("Service shutting down")
        if count:
            logger.info(f"Stopped {count} running jobs", extra={"component": "supervisor"})

    # Runner

    def _settle(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        try:
            self._store.update(job_id, status=status, error=error)
            return True
        except (InvalidTransition, JobNotFound):
            # already settled elsewhere (approval rejection, clear)
            return False

    def _on_line(self, run: _Run, collected: Optional[List[str]]):
        def handle(line: str):
            if run.cancel_requested:
                return
            if collected is not None:
                collected.append(line)
            try:
                self._store.append_output(run.job_id, [line], progress=parse_progress(line))
            except (InvalidTransition, JobNotFound):
                pass
        return handle

    async def _run(self, run: _Run):
        job_id = run.job_id
        job_id_var.set(job_id)
        try:
            for index, phase in enumerate(run.plan.phases):
                if not await self._run_phase(run, index, phase):
                    return
            self._settle(job_id, JobStatus.COMPLETED)
        except Cancelled as e:
            self._settle(job_id, JobStatus.CANCELLED, e.message)
        except asyncio.CancelledError:
            self._settle(job_id, JobStatus.CANCELLED, run.cancel_reason)
        except (InvalidTransition, JobNotFound) as e:
            # settled or cleared by someone else while a phase was running
            logger.info(f"Runner for job {job_id} stopped: {e.message}", extra={
                "component": "supervisor",
                "job_id": job_id,
            })
        except (SpawnError, RuntimeExitError) as e:
            if run.cancel_requested:
                self._settle(job_id, JobStatus.CANCELLED, run.cancel_reason)
            else:
                logger.warning(f"Job {job_id} failed: {e.message}", extra={
                    "component": "supervisor",
                    "job_id": job_id,
                })
                self._settle(job_id, JobStatus.FAILED, e.message)
        except Exception as e:
            logger.exception(f"Runner for job {job_id} crashed")
            self._settle(job_id, JobStatus.FAILED, f"Internal error: {e}")
        finally:
            self._runs.pop(job_id, None)

    async def _run_phase(self, run: _Run, index: int, phase: Phase) -> bool:
        """Run one phase; False means the job was settled and the plan stops"""
        job_id = run.job_id
        if run.cancel_requested:
            raise Cancelled(run.cancel_reason)

        collected: Optional[List[str]] = [] if phase.preview else None
        env = dict(run.plan.env)
        env.update(phase.env)

        async with spawned(
            phase.argv,
            cwd=phase.cwd,
            env=env,
            on_line=self._on_line(run, collected),
            drain_timeout=self.drain_timeout,
        ) as handle:
            run.handle = handle
            try:
                if run.cancel_requested:
                    await handle.terminate(self.grace)
                    raise Cancelled(run.cancel_reason)
                if self._store.status(job_id) == JobStatus.PENDING:
                    self._store.update(job_id, status=JobStatus.RUNNING)
                logger.info(f"Job {job_id} phase {index + 1}/{len(run.plan.phases)}: {phase.command}", extra={
                    "component": "supervisor",
                    "job_id": job_id,
                    "pid": handle.pid,
                })
                exit_code = await handle.wait()
            finally:
                run.handle = None

        if run.cancel_requested:
            raise Cancelled(run.cancel_reason)
        if exit_code not in phase.ok_exit_codes:
            raise RuntimeExitError(handle.name, exit_code, list(handle.tail))

        if not phase.preview:
            return True

        diff = collected or []
        if exit_code == 0 and not phase.has_changes(diff):
            logger.info(f"Job {job_id}: preview found no changes, nothing to apply", extra={
                "component": "supervisor",
                "job_id": job_id,
            })
            self._settle(job_id, JobStatus.COMPLETED)
            return False

        approved = await self._gate.checkpoint(job_id, diff)
        if run.cancel_requested:
            raise Cancelled(run.cancel_reason)
        # a rejection has already been recorded by the gate
        return approved
