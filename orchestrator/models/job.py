"""Job model for the stage queues."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Text

from orchestrator.database import Base, JSONType

PRIORITY_RANKS = {
    "urgent": 10,
    "high": 5,
    "normal": 0,
    "low": -5,
}

JOB_STATUSES = ("queued", "running", "completed", "failed")
ACTIVE_STATUSES = ("queued", "running")


def new_id() -> str:
    """Generate a string primary key."""
    return str(uuid.uuid4())


class Job(Base):
    """Job represents one queued unit of work for a pipeline stage."""

    __tablename__ = "jobs"

    job_id = Column(Text, primary_key=True, default=new_id)
    queue = Column(Text, nullable=False)  # One of the five stage queues
    client_id = Column(Text)  # Nullable for jobs not tied to a client
    payload = Column(JSONType, nullable=False)
    status = Column(Text, nullable=False, default="queued")  # 'queued', 'running', 'completed', 'failed'
    priority = Column(Text, nullable=False, default="normal")
    priority_rank = Column(Integer, nullable=False, default=0)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    next_run_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_error = Column(Text)
    error_class = Column(Text)
    error_history = Column(JSONType)  # [{attempt, error, error_class, at}]
    output = Column(JSONType)
    parent_job_id = Column(Text)  # Job whose completion enqueued this one
    awaiting_callback = Column(Boolean, nullable=False, default=False)
    external_ref = Column(Text)  # Remote job id while awaiting a callback
    escalated_at = Column(DateTime)

    __table_args__ = (
        Index("idx_jobs_queue_status", "queue", "status"),
        Index("idx_jobs_ready", "queue", "status", "next_run_at"),
        Index("idx_jobs_client_queue", "client_id", "queue"),
        Index("idx_jobs_external_ref", "external_ref"),
        {"schema": None},
    )

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempt_count, 0)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")
