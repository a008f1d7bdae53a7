"""
In-memory job registry.

The store is the only place job records live. Status, progress, output and
error are patched together under one lock so readers always get a
consistent snapshot, and every patch is checked against the state machine.
"""

import logging
import uuid
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, Union

from .broadcaster import OutputBroadcaster
from .errors import InvalidTransition, JobNotFound
from .models import ACTIVE_STATUSES, Job, JobStatus, can_transition, utcnow
from .services.prometheus_metrics import prometheus_metrics

logger = logging.getLogger("jobengine.store")

TerminalListener = Callable[[Job], None]


class JobStore:
    """Authoritative registry of Job records"""

    def __init__(self, broadcaster: Optional[OutputBroadcaster] = None):
        self.broadcaster = broadcaster or OutputBroadcaster()
        self._jobs: Dict[str, Job] = {}
        self._lock = RLock()
        self._terminal_listeners: List[TerminalListener] = []

    def add_terminal_listener(self, listener: TerminalListener):
        """Called with a snapshot every time a job reaches a terminal state"""
        self._terminal_listeners.append(listener)

    def create(self, job_type: str, target: str, environment: Optional[str] = None) -> Job:
        """Create a new job in pending state"""
        job = Job(id=str(uuid.uuid4()), type=job_type, target=target, environment=environment)
        with self._lock:
            self._jobs[job.id] = job
            self.broadcaster.open(job.id)
            snapshot = job.snapshot()

        prometheus_metrics.increment_jobs_created(job_type)
        prometheus_metrics.set_active_jobs(self.count_active())
        logger.info(f"Created job {job.id} of type {job_type}", extra={
            "component": "store",
            "job_id": job.id,
            "job_type": job_type,
            "target": target,
        })
        return snapshot

    def find(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def get(self, job_id: str) -> Job:
        """Get job by ID"""
        job = self.find(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def status(self, job_id: str) -> JobStatus:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job.status

    def list(self, active_only: bool = False) -> List[Job]:
        """List jobs, newest first"""
        with self._lock:
            jobs = [
                j.snapshot() for j in self._jobs.values()
                if not active_only or j.status in ACTIVE_STATUSES
            ]
        jobs.sort(key=lambda j: j.started_at, reverse=True)
        return jobs

    def count_active(self) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if j.status in ACTIVE_STATUSES)

    def update(
        self,
        job_id: str,
        *,
        status: Union[JobStatus, str, None] = None,
        progress: Optional[int] = None,
        lines: Optional[Iterable[str]] = None,
        error: Optional[str] = None,
        diff_output: Optional[List[str]] = None,
    ) -> Job:
        """Apply a status/progress/output delta as one unit"""
        return self._patch(
            job_id, status=status, progress=progress, lines=lines, error=error,
            diff_output=diff_output, want_snapshot=True,
        )

    def append_output(self, job_id: str, lines: Iterable[str], progress: Optional[int] = None):
        """Hot path for captured lines; same checks as update, no snapshot"""
        self._patch(job_id, lines=lines, progress=progress, want_snapshot=False)

    def _patch(
        self,
        job_id: str,
        status=None,
        progress=None,
        lines=None,
        error=None,
        diff_output=None,
        want_snapshot: bool = True,
    ) -> Optional[Job]:
        new_status = JobStatus(status) if status is not None else None
        lines = list(lines) if lines else []
        snapshot = None

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.is_terminal:
                raise InvalidTransition(
                    f"Job is already {job.status.value}; no further updates allowed", job_id=job_id
                )
            if new_status is not None and not can_transition(job.status, new_status):
                raise InvalidTransition(
                    f"Cannot move job from {job.status.value} to {new_status.value}", job_id=job_id
                )

            if lines:
                job.output.extend(lines)
                self.broadcaster.publish(job_id, lines)
            if progress is not None:
                job.progress = max(job.progress, min(100, max(0, int(progress))))
            if diff_output is not None:
                job.diff_output = list(diff_output)
            if error is not None:
                job.error = error

            previous = job.status
            if new_status is not None:
                job.status = new_status
                if new_status == JobStatus.COMPLETED:
                    job.progress = 100
                if new_status.is_terminal:
                    job.completed_at = utcnow()
                    self.broadcaster.close(job_id, new_status.value)

            changed = new_status is not None and new_status != previous
            if want_snapshot or changed:
                snapshot = job.snapshot()

        if lines:
            prometheus_metrics.increment_output_lines(len(lines))
        if changed:
            logger.info(f"Job {job_id} {previous.value} -> {new_status.value}", extra={
                "component": "store",
                "job_id": job_id,
                "status": new_status.value,
                "error": snapshot.error,
            })
            if new_status.is_terminal:
                self._job_finished(snapshot)
        return snapshot

    def _job_finished(self, job: Job):
        duration = (job.completed_at - job.started_at).total_seconds()
        prometheus_metrics.record_job_finished(job.type, job.status.value, duration)
        prometheus_metrics.set_active_jobs(self.count_active())
        for listener in self._terminal_listeners:
            try:
                listener(job)
            except Exception:
                logger.exception(f"Terminal listener failed for job {job.id}")

    def clear(self, reason: str = "Job force-cleared") -> int:
        """Settle anything still active as cancelled, then drop every record"""
        for job in self.list(active_only=True):
            try:
                self.update(job.id, status=JobStatus.CANCELLED, error=reason)
            except (InvalidTransition, JobNotFound):
                # finished on its own in the meantime
                pass

        with self._lock:
            removed = list(self._jobs)
            self._jobs.clear()
            for job_id in removed:
                self.broadcaster.discard(job_id)

        prometheus_metrics.set_active_jobs(0)
        logger.info(f"Cleared {len(removed)} jobs", extra={"component": "store"})
        return len(removed)
