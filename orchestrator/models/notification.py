"""Notification delivery record."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text

from orchestrator.database import Base, JSONType
from orchestrator.models.job import new_id


class Notification(Base):
    """One outbound notification and its delivery state."""

    __tablename__ = "notifications"

    id = Column(Text, primary_key=True, default=new_id)
    client_id = Column(Text, ForeignKey("clients.id", ondelete="CASCADE"))
    job_id = Column(Text, nullable=False, unique=True)
    notification_type = Column(Text, nullable=False)
    method = Column(Text, nullable=False, default="email")
    recipient = Column(Text, nullable=False)
    subject = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # 'pending', 'sent', 'failed', 'bounced'
    provider_message_id = Column(Text)
    sent_at = Column(DateTime)
    delivery_response = Column(JSONType)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_client", "client_id"),
        Index("idx_notifications_provider_message", "provider_message_id"),
        {"schema": None},
    )
