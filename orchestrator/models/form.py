"""Diagnostic form and form response models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, Text

from orchestrator.database import Base, JSONType
from orchestrator.models.job import new_id


class GeneratedForm(Base):
    """Diagnostic form sent to a client through the forms vendor."""

    __tablename__ = "generated_forms"

    id = Column(Text, primary_key=True, default=new_id)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    external_form_id = Column(Text, nullable=False, unique=True)  # Vendor form id
    total_questions = Column(Integer, nullable=False, default=0)
    status = Column(Text, nullable=False, default="created")  # 'created', 'sent', 'in_progress', 'completed', 'expired'
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    current_question = Column(Integer, default=0)
    completion_percentage = Column(Float, default=0.0)
    partial_responses = Column(JSONType)
    last_saved_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


class FormResponse(Base):
    """Completed submission of a diagnostic form."""

    __tablename__ = "form_responses"

    id = Column(Text, primary_key=True, default=new_id)
    form_id = Column(Text, ForeignKey("generated_forms.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    submission_id = Column(Text, nullable=False, unique=True)
    raw_responses = Column(JSONType, nullable=False)
    processed_responses = Column(JSONType, nullable=False)
    completion_time_minutes = Column(Integer)
    submitted_at = Column(DateTime, nullable=False)
    ip_address = Column(Text)
    user_agent = Column(Text)
    validation_score = Column(Float)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_responses_client", "client_id"), {"schema": None})
