"""Job-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class EnqueueRequest(BaseModel):
    """Schema for submitting a job to a stage queue."""

    model_config = ConfigDict(populate_by_name=True)

    queue: str
    payload: Dict[str, Any]
    priority: Literal["urgent", "high", "normal", "low"] = "normal"
    delay_ms: int = Field(default=0, alias="delayMs", ge=0)
    max_attempts: Optional[int] = Field(default=None, alias="maxAttempts", ge=1)


class JobResponse(BaseModel):
    """Job status response."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    queue: str
    client_id: Optional[str] = None
    status: str  # 'queued', 'running', 'completed', 'failed'
    priority: str
    attempt_count: int
    max_attempts: int
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_class: Optional[str] = None
    error_history: List[Dict[str, Any]] = Field(default_factory=list)
    output: Optional[Dict[str, Any]] = None
    parent_job_id: Optional[str] = None
    awaiting_callback: bool = False
    escalated_at: Optional[datetime] = None


class QueueStatsResponse(BaseModel):
    """Per-queue job counts."""

    queues: Dict[str, Dict[str, int]]  # queue -> {'queued', 'delayed', 'running', 'completed', 'failed'}
