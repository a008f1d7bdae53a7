"""
Job record and status state machine
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.AWAITING_APPROVAL})

# pending -> failed covers spawn errors before the first process ever ran
TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {
        JobStatus.AWAITING_APPROVAL,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    JobStatus.AWAITING_APPROVAL: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    if current.is_terminal:
        return False
    return new == current or new in TRANSITIONS[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.isoformat().replace("+00:00", "Z")


@dataclass
class Job:
    id: str
    type: str
    target: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    output: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    diff_output: Optional[List[str]] = None
    environment: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def awaiting_approval(self) -> bool:
        return self.status == JobStatus.AWAITING_APPROVAL

    def snapshot(self) -> "Job":
        """Copy handed to readers so they never share the live lists"""
        return replace(
            self,
            output=list(self.output),
            diff_output=list(self.diff_output) if self.diff_output is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "target": self.target,
            "status": self.status.value,
            "progress": self.progress,
            "output": list(self.output),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "error": self.error,
            "diff_output": list(self.diff_output) if self.diff_output is not None else None,
            "awaiting_approval": self.awaiting_approval,
            "environment": self.environment,
        }
