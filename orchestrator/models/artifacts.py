"""Generated SOP, commercial proposal and rendered document models."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, Text, UniqueConstraint

from orchestrator.database import Base, JSONType
from orchestrator.models.job import new_id


class GeneratedSOP(Base):
    """Standard operating procedure generated for one identified process."""

    __tablename__ = "generated_sops"

    id = Column(Text, primary_key=True, default=new_id)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    process_id = Column(Text, ForeignKey("identified_processes.id", ondelete="CASCADE"), nullable=False)
    job_id = Column(Text)
    objective = Column(Text, nullable=False)
    responsible_roles = Column(JSONType)
    inputs = Column(JSONType)
    steps = Column(JSONType)
    outputs = Column(JSONType)
    estimated_duration_minutes = Column(Integer, default=0)
    complexity_level = Column(Text, default="medium")
    version = Column(Integer, nullable=False, default=1)
    is_approved = Column(Boolean, nullable=False, default=False)
    generation_metadata = Column(JSONType)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("process_id", "version", name="uq_sops_process_version"),
        Index("idx_sops_client", "client_id"),
        {"schema": None},
    )


class CommercialProposal(Base):
    """Commercial proposal built from approved SOPs."""

    __tablename__ = "commercial_proposals"

    id = Column(Text, primary_key=True, default=new_id)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    job_id = Column(Text, nullable=False, unique=True)
    analysis_id = Column(Text)
    sop_ids = Column(JSONType, nullable=False)
    executive_summary = Column(Text)
    opportunities = Column(JSONType)
    roadmap = Column(JSONType)
    investment_breakdown = Column(JSONType)
    total_value = Column(Float)
    estimated_roi = Column(Float)
    implementation_weeks = Column(Integer)
    status = Column(Text, nullable=False, default="draft")  # 'draft', 'ready', 'sent'
    pdf_file_path = Column(Text)
    pdf_generated_at = Column(DateTime)
    pdf_file_size_bytes = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)


class RenderedDocument(Base):
    """Reference to a document produced by the renderer."""

    __tablename__ = "rendered_documents"

    id = Column(Text, primary_key=True, default=new_id)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    job_id = Column(Text, nullable=False, unique=True)
    artifact_type = Column(Text, nullable=False)  # 'sop', 'proposal', 'report'
    artifact_id = Column(Text, nullable=False)
    template_id = Column(Text)
    file_path = Column(Text, nullable=False)
    file_size_bytes = Column(Integer)
    page_count = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
