"""
Error taxonomy for the job engine.

Control-plane errors are raised synchronously to the caller and leave the
job untouched. Process-level failures (spawn errors, non-zero exits,
cancellation) are recorded on the job record instead of propagating.
"""

from typing import Optional


class JobEngineError(Exception):
    """Base class for every error the engine hands back to a caller"""

    status_code = 500

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.job_id:
            body["job_id"] = self.job_id
        return body


# Control plane

class JobNotFound(JobEngineError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__("Job not found", job_id=job_id)


class InvalidTransition(JobEngineError):
    status_code = 409


class NotAwaitingApproval(JobEngineError):
    status_code = 409

    def __init__(self, job_id: str):
        super().__init__("Job is not awaiting approval", job_id=job_id)


class AlreadyResponded(JobEngineError):
    status_code = 409

    def __init__(self, job_id: str):
        super().__init__("Approval for this checkpoint was already given", job_id=job_id)


class InvalidJobRequest(JobEngineError):
    status_code = 400


class UnknownJobType(InvalidJobRequest):
    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class ProtectedEnvironmentError(JobEngineError):
    status_code = 403

    def __init__(self, environment: str):
        super().__init__(
            f'Cannot deploy to protected environment "{environment}". '
            "Switch to a personal environment first."
        )
        self.environment = environment


class ConcurrencyLimitError(JobEngineError):
    status_code = 409

    def __init__(self, limit: int):
        super().__init__(f"Too many active jobs (limit {limit}); wait for one to finish or cancel it")
        self.limit = limit


# Process level, recorded on the job

class SpawnError(JobEngineError):
    """The backing command could not be started"""

    def __init__(self, command: str, reason: str):
        super().__init__(f"Failed to start {command}: {reason}")
        self.command = command


class RuntimeExitError(JobEngineError):
    """The backing command exited with a code outside its success set"""

    def __init__(self, command: str, exit_code: int, tail: Optional[list] = None):
        message = f"{command} exited with code {exit_code}"
        if tail:
            message += ": " + " | ".join(tail)
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code


class Cancelled(JobEngineError):
    def __init__(self, reason: str = "Cancelled by user"):
        super().__init__(reason)


class ApprovalRejected(Cancelled):
    def __init__(self, reason: str = "Deploy rejected by user"):
        super().__init__(reason)


class OrphanProcessWarning(UserWarning):
    """A process group could not be confirmed dead after SIGKILL"""

    def __init__(self, pgid: int):
        super().__init__(f"process group {pgid} still has live members after SIGKILL")
        self.pgid = pgid
