"""Webhook deduplication record."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Text

from orchestrator.database import Base


class WebhookEvent(Base):
    """Processed inbound event, keyed by its idempotency key."""

    __tablename__ = "webhook_events"

    event_key = Column(Text, primary_key=True)
    source = Column(Text, nullable=False)  # 'forms', 'ai', 'email'
    event_type = Column(Text, nullable=False)
    outcome = Column(Text, nullable=False)  # 'processed', 'orphaned', 'ignored', 'duplicate'
    correlation_id = Column(Text)  # Form id, job id or provider message id
    received_at = Column(DateTime, default=datetime.utcnow)
