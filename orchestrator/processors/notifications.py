"""Notification delivery stage."""

import logging
from datetime import datetime
from typing import Any, Dict

from orchestrator.config import NOTIFICATIONS
from orchestrator.errors import PayloadValidationError, TransientError
from orchestrator.models.artifacts import RenderedDocument
from orchestrator.models.job import Job
from orchestrator.models.notification import Notification
from orchestrator.processors.base import BaseProcessor, StageResult
from orchestrator.schemas.stages import NotificationInput
from orchestrator.services.templates import NOTIFICATION_TYPES, render_body, render_subject

logger = logging.getLogger(__name__)


class NotificationProcessor(BaseProcessor):
    """Persists a notification and hands it to the delivery provider."""

    queue_name = NOTIFICATIONS

    def _run(self, payload: Dict[str, Any], job: Job) -> StageResult:
        """Send one notification, at most once per job."""
        input_data = NotificationInput(**payload)
        if input_data.notification_type not in NOTIFICATION_TYPES:
            raise PayloadValidationError(f"Unknown notification type: {input_data.notification_type}")

        client = self._get_client(input_data.client_id)

        notification = self.db.query(Notification).filter(Notification.job_id == job.job_id).first()
        if notification is not None and notification.status == "sent":
            logger.info(f"Notification {notification.id} already sent, skipping delivery")
            return StageResult(output=self._output(notification))

        if notification is None:
            document_path = None
            if input_data.document_id:
                document = (
                    self.db.query(RenderedDocument)
                    .filter(RenderedDocument.id == input_data.document_id)
                    .first()
                )
                document_path = document.file_path if document else None

            notification = Notification(
                client_id=client.id,
                job_id=job.job_id,
                notification_type=input_data.notification_type,
                method=input_data.method,
                recipient=input_data.recipient or client.contact_email,
                subject=render_subject(input_data.notification_type, client.name),
                message=render_body(
                    input_data.notification_type,
                    client.name,
                    document_path,
                    input_data.detail,
                ),
                status="pending",
            )
            self.db.add(notification)
            # Record the pending delivery before calling out
            self.db.commit()

        delivery = self.invokers.notifier.send(
            notification.recipient,
            notification.subject,
            notification.message,
            notification.method,
        )

        delivered = delivery.get("success", True)
        notification.delivery_response = delivery
        notification.provider_message_id = delivery.get("messageId")
        notification.status = "sent" if delivered else "failed"
        notification.sent_at = datetime.utcnow() if delivered else None

        if not delivered:
            self.db.commit()
            raise TransientError(f"Provider did not deliver notification {notification.id}")

        return StageResult(output=self._output(notification))

    def _output(self, notification: Notification) -> Dict[str, Any]:
        return {
            "clientId": notification.client_id,
            "notificationId": notification.id,
            "notificationType": notification.notification_type,
            "delivered": notification.status == "sent",
            "method": notification.method,
            "recipient": notification.recipient,
        }
