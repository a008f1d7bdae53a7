"""
Archive of finished jobs.

The live registry is in memory; terminal jobs are copied here so the UI can
show recent runs after a clear or a restart. Only the newest records are
kept.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, delete, select
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .db import Base, init_db, make_engine, make_session_factory, session_scope
from .models import Job, JobStatus

logger = logging.getLogger("jobengine.history")


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class JobRecord(Base):
    __tablename__ = "job_history"
    id = Column(String(36), primary_key=True)  # uuid4
    type = Column(String(64), nullable=False, index=True)
    target = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False)
    progress = Column(Integer, nullable=False, default=0)
    environment = Column(String(128), nullable=True)
    error = Column(Text, nullable=True)
    output = Column(JSON, nullable=False, default=list)
    diff_output = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True, index=True)

    @classmethod
    def from_job(cls, job: Job) -> "JobRecord":
        return cls(
            id=job.id,
            type=job.type,
            target=job.target,
            status=job.status.value,
            progress=job.progress,
            environment=job.environment,
            error=job.error,
            output=list(job.output),
            diff_output=list(job.diff_output) if job.diff_output is not None else None,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            type=self.type,
            target=self.target,
            status=JobStatus(self.status),
            progress=self.progress,
            output=list(self.output or []),
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
            error=self.error,
            diff_output=list(self.diff_output) if self.diff_output is not None else None,
            environment=self.environment,
        )


class JobHistory:
    """SQLAlchemy-backed archive of terminal jobs"""

    def __init__(self, url: Optional[str] = None, limit: Optional[int] = None):
        self.url = url or config.JOB_DB_URL
        self.limit = limit if limit is not None else config.JOB_HISTORY_LIMIT
        self.engine = make_engine(self.url)
        self.SessionLocal = make_session_factory(self.engine)

    def init(self):
        init_db(self.engine)

    def archive(self, job: Job):
        """Store a terminal job; used as a store terminal listener"""
        if not job.is_terminal:
            return
        try:
            with session_scope(self.SessionLocal) as s:
                s.merge(JobRecord.from_job(job))
                s.flush()
                self._prune(s)
        except SQLAlchemyError as e:
            logger.error(f"Failed to archive job {job.id}: {e}", extra={
                "component": "history",
                "job_id": job.id,
            })

    def _prune(self, s):
        if self.limit <= 0:
            return
        keep = select(JobRecord.id).order_by(JobRecord.completed_at.desc()).limit(self.limit)
        s.execute(delete(JobRecord).where(JobRecord.id.not_in(keep)).execution_options(synchronize_session=False))

    def list(self, limit: Optional[int] = None) -> List[Job]:
        """Archived jobs, most recently finished first"""
        query = select(JobRecord).order_by(JobRecord.completed_at.desc())
        if limit:
            query = query.limit(limit)
        with session_scope(self.SessionLocal) as s:
            return [r.to_job() for r in s.scalars(query)]

    def get(self, job_id: str) -> Optional[Job]:
        with session_scope(self.SessionLocal) as s:
            record = s.get(JobRecord, job_id)
            return record.to_job() if record else None

    def close(self):
        self.engine.dispose()
