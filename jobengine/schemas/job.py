from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class JobCreate(BaseModel):
    type: str = Field(..., min_length=1, max_length=64)
    target: str = Field(..., min_length=1, max_length=255)
    environment: Optional[str] = Field(None, max_length=128, description="Defaults to the selected environment")
    params: Dict[str, Any] = {}


class JobOut(BaseModel):
    id: str
    type: str
    target: str
    status: str
    progress: int
    output: List[str]
    started_at: str
    completed_at: Optional[str]
    error: Optional[str]
    diff_output: Optional[List[str]]
    awaiting_approval: bool
    environment: Optional[str]


class JobEnvelope(BaseModel):
    job: JobOut


class JobList(BaseModel):
    jobs: List[JobOut]


class ApprovalResponse(BaseModel):
    approved: bool


class EnvironmentUpdate(BaseModel):
    environment: Optional[str] = Field(None, max_length=128)
    protected_environments: Optional[List[str]] = None


class EnvironmentOut(BaseModel):
    environment: Optional[str]
    protected_environments: List[str]
    is_protected: bool
