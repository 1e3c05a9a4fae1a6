"""Identified process model."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, Text, UniqueConstraint

from orchestrator.database import Base, JSONType
from orchestrator.models.job import new_id


class IdentifiedProcess(Base):
    """Business process identified by the AI analysis of a form response."""

    __tablename__ = "identified_processes"

    id = Column(Text, primary_key=True, default=new_id)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    ai_job_id = Column(Text, nullable=False)  # ai-processing job that produced it
    name = Column(Text, nullable=False)
    category = Column(Text, nullable=False, default="primary")  # 'primary', 'support', 'management'
    description = Column(Text)
    is_explicit = Column(Boolean, nullable=False, default=True)
    frequency_per_month = Column(Integer, default=0)
    manual_steps_count = Column(Integer, default=0)
    error_rate_percentage = Column(Float, default=0.0)
    automation_score = Column(Float, default=0.5)
    estimated_roi_percentage = Column(Integer, default=0)
    implementation_complexity = Column(Text, default="medium")
    systems_involved = Column(JSONType)
    integration_complexity = Column(Text, default="medium")
    process_metadata = Column(JSONType)
    is_approved = Column(Boolean, nullable=False, default=False)  # Set by a human reviewer
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("ai_job_id", "name", name="uq_processes_job_name"),
        Index("idx_processes_client", "client_id"),
        {"schema": None},
    )
