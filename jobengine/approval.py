"""
Two-phase approval checkpoints.

A job that previews an irreversible change parks at a checkpoint in
awaiting_approval until someone responds. The first response settles the
checkpoint; any later response for it is rejected.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .errors import AlreadyResponded, ApprovalRejected, NotAwaitingApproval
from .models import Job, JobStatus, utcnow
from .services.prometheus_metrics import prometheus_metrics
from .store import JobStore

logger = logging.getLogger("jobengine.approval")


@dataclass
class Checkpoint:
    job_id: str
    future: asyncio.Future
    opened_at: datetime = field(default_factory=utcnow)
    decided: bool = False
    approved: Optional[bool] = None


class ApprovalGate:
    """Coordinates preview -> decision -> apply for jobs that need review"""

    def __init__(self, store: JobStore, timeout: float = 0):
        self._store = store
        self._timeout = timeout
        self._open: Dict[str, Checkpoint] = {}
        # last settled checkpoint per job, so a repeated answer is told apart
        # from an answer to a job that never asked
        self._settled: Dict[str, Checkpoint] = {}

    def is_waiting(self, job_id: str) -> bool:
        cp = self._open.get(job_id)
        return cp is not None and not cp.decided

    async def checkpoint(self, job_id: str, diff_output: List[str]) -> bool:
        """Publish the preview, park the job, and wait for the decision.

        Returns True when approved. On rejection the gate has already moved
        the job to cancelled. Returns False without touching the job when
        the checkpoint is aborted by a cancel.
        """
        loop = asyncio.get_running_loop()
        cp = Checkpoint(job_id=job_id, future=loop.create_future())
        self._open[job_id] = cp
        self._settled.pop(job_id, None)
        self._store.update(job_id, status=JobStatus.AWAITING_APPROVAL, diff_output=diff_output)
        logger.info(f"Job {job_id} awaiting approval", extra={
            "component": "approval",
            "job_id": job_id,
            "diff_lines": len(diff_output),
        })

        try:
            if self._timeout > 0:
                try:
                    return await asyncio.wait_for(asyncio.shield(cp.future), self._timeout)
                except asyncio.TimeoutError:
                    if cp.decided:
                        return await cp.future
                    logger.warning(f"Approval for job {job_id} timed out after {self._timeout}s", extra={
                        "component": "approval",
                        "job_id": job_id,
                    })
                    self._decide(cp, False, reason="Approval timed out")
                    return False
            return await cp.future
        finally:
            if self._open.get(job_id) is cp:
                del self._open[job_id]
            if cp.decided and cp.approved is not None:
                self._settled[job_id] = cp

    def respond(self, job_id: str, approved: bool) -> Job:
        """Record the human decision for the job's open checkpoint"""
        job = self._store.get(job_id)
        cp = self._open.get(job_id)

        settled = cp if cp is not None and cp.decided else self._settled.get(job_id)
        if settled is not None and settled.approved is not None:
            raise AlreadyResponded(job_id)
        if cp is None or cp.decided or job.status != JobStatus.AWAITING_APPROVAL:
            raise NotAwaitingApproval(job_id)

        job = self._decide(cp, approved)
        logger.info(f"Job {job_id} {'approved' if approved else 'rejected'}", extra={
            "component": "approval",
            "job_id": job_id,
            "approved": approved,
        })
        return job

    def _decide(self, cp: Checkpoint, approved: bool, reason: Optional[str] = None) -> Job:
        cp.decided = True
        cp.approved = approved
        if approved:
            job = self._store.update(cp.job_id, status=JobStatus.RUNNING)
        else:
            rejection = ApprovalRejected(reason) if reason else ApprovalRejected()
            job = self._store.update(cp.job_id, status=JobStatus.CANCELLED, error=rejection.message)
        self._settled[cp.job_id] = cp
        prometheus_metrics.increment_approval_decision(
            "approved" if approved else ("timeout" if reason else "rejected")
        )
        if not cp.future.done():
            cp.future.set_result(approved)
        return job

    def abort(self, job_id: str) -> bool:
        """Release a parked job because it is being cancelled"""
        cp = self._open.get(job_id)
        if cp is None or cp.decided:
            return False
        cp.decided = True
        if not cp.future.done():
            cp.future.set_result(False)
        return True

    def reset(self):
        for job_id in list(self._open):
            self.abort(job_id)
        self._open.clear()
        self._settled.clear()
