"""Client and workflow transition models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from orchestrator.database import Base, JSONType
from orchestrator.models.job import new_id


class Client(Base):
    """Client moving through the diagnostic pipeline."""

    __tablename__ = "clients"

    id = Column(Text, primary_key=True, default=new_id)
    name = Column(Text, nullable=False)
    contact_email = Column(Text, nullable=False)
    current_status = Column(Text, nullable=False, default="created")
    status_version = Column(Integer, nullable=False, default=0)  # Bumped on every transition
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transitions = relationship(
        "WorkflowTransition",
        order_by="WorkflowTransition.sequence",
        back_populates="client",
    )


class WorkflowTransition(Base):
    """Append-only record of a client status change."""

    __tablename__ = "workflow_transitions"

    id = Column(Text, primary_key=True, default=new_id)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)  # Equals the client's status_version after the change
    from_status = Column(Text)
    to_status = Column(Text, nullable=False)
    trigger_event = Column(Text, nullable=False)
    actor = Column(Text, nullable=False, default="system")  # 'system' or a user id
    context = Column(JSONType)
    created_at = Column(DateTime, default=datetime.utcnow)

    client = relationship("Client", back_populates="transitions")

    __table_args__ = (
        UniqueConstraint("client_id", "sequence", name="uq_transitions_client_sequence"),
        Index("idx_transitions_client", "client_id"),
        Index("idx_transitions_status", "to_status"),
        {"schema": None},
    )
