"""Webhook ingestion: turns vendor callbacks into jobs and status changes."""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orchestrator.config import AI_PROCESSING, NOTIFICATIONS, Settings, settings
from orchestrator.errors import IllegalTransitionError, PayloadValidationError, StaleStateError, TransientError
from orchestrator.models.form import FormResponse, GeneratedForm
from orchestrator.models.job import new_id
from orchestrator.models.notification import Notification
from orchestrator.models.webhook_event import WebhookEvent
from orchestrator.queue import QueueManager
from orchestrator.schemas.webhooks import (
    AI_EVENT_ADAPTER,
    FORM_EVENT_ADAPTER,
    AICompletedEvent,
    AIEvent,
    AIFailedEvent,
    EmailDeliveryEvent,
    FormCompletedEvent,
    FormEvent,
    FormStartedEvent,
    FormUpdatedEvent,
    WebhookAck,
    union_members,
)
from orchestrator.workflow import WorkflowStateMachine, WorkflowStatus

logger = logging.getLogger(__name__)

# Handler result: (outcome, message)
HandlerResult = Tuple[str, str]

EMAIL_EVENT_STATUS = {
    "delivered": "sent",
    "opened": "sent",
    "clicked": "sent",
    "bounced": "bounced",
    "failed": "failed",
}

EMPTY_ANSWERS = ("N/A", "No aplica")


def _strip_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_strip_nulls(item) for item in value]
    return value


def canonical_json(payload: Dict[str, Any]) -> str:
    normalized = _strip_nulls(payload)
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def idempotency_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def infer_answer_type(answer: Any) -> str:
    """Rough type label for a form answer."""
    if isinstance(answer, bool):
        return "boolean"
    if isinstance(answer, (int, float)):
        return "number"
    if isinstance(answer, list):
        return "array"
    if isinstance(answer, str):
        if "@" in answer:
            return "email"
        if answer.isdigit():
            return "numeric_string"
        if len(answer) > 100:
            return "long_text"
        return "text"
    return "unknown"


def process_form_responses(raw_responses: List[Dict[str, Any]], processed_at: datetime) -> List[Dict[str, Any]]:
    """Normalize raw answers and tag each with its inferred type."""
    return [
        {
            "questionId": response.get("questionId"),
            "question": response.get("question"),
            "answer": response.get("answer"),
            "type": infer_answer_type(response.get("answer")),
            "processed": True,
            "timestamp": processed_at.isoformat(),
        }
        for response in raw_responses
    ]


def calculate_validation_score(raw_responses: List[Dict[str, Any]]) -> float:
    """Share of answers that are present and meaningful, rounded to 2 places."""
    if not raw_responses:
        return 0.0

    valid = 0
    for response in raw_responses:
        answer = response.get("answer")
        if not answer:
            continue
        text = str(answer).strip()
        if text and text not in EMPTY_ANSWERS:
            valid += 1

    return round(valid / len(raw_responses), 2)


def parse_event(adapter: TypeAdapter, payload: Any):
    """Validate a webhook body against a discriminated union."""
    try:
        return adapter.validate_python(payload)
    except ValidationError as e:
        raise PayloadValidationError(f"Invalid webhook payload: {e.errors()[0]['msg']}")


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class WebhookIngestionAdapter:
    """Validates, deduplicates and applies inbound webhooks.

    Each event is recorded in `webhook_events` under its idempotency key in
    the same transaction as its side effects, so a redelivered event is
    acknowledged without being applied twice.
    """

    def __init__(
        self,
        session_factory,
        queue_manager: QueueManager,
        workflow: WorkflowStateMachine,
        app_settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize adapter."""
        self.session_factory = session_factory
        self.queue_manager = queue_manager
        self.workflow = workflow
        self.settings = app_settings or settings
        self.clock = clock or queue_manager.clock

        self.form_handlers = {
            FormStartedEvent: self._form_started,
            FormUpdatedEvent: self._form_updated,
            FormCompletedEvent: self._form_completed,
        }
        self.ai_handlers = {
            AICompletedEvent: self._ai_completed,
            AIFailedEvent: self._ai_failed,
        }
        self._check_handlers(FormEvent, self.form_handlers)
        self._check_handlers(AIEvent, self.ai_handlers)

    @staticmethod
    def _check_handlers(event_union, handlers: Dict[type, Callable]):
        missing = [member.__name__ for member in union_members(event_union) if member not in handlers]
        if missing:
            raise RuntimeError(f"No webhook handler for: {', '.join(missing)}")

    # Entry points

    def handle_form_webhook(self, payload: Dict[str, Any]) -> WebhookAck:
        """Apply a forms vendor event."""
        event = parse_event(FORM_EVENT_ADAPTER, payload)
        handler = self.form_handlers[type(event)]

        logger.info(f"Form webhook received: {event.event_type} (event: {event.event_id}, form: {event.form_id})")

        return self._ingest(
            source="forms",
            event_type=event.event_type,
            event_key=f"forms:{event.event_id}",
            correlation_id=event.form_id,
            handler=lambda db: handler(db, event),
        )

    def handle_ai_webhook(self, payload: Dict[str, Any]) -> WebhookAck:
        """Apply an AI service completion or failure callback."""
        event = parse_event(AI_EVENT_ADAPTER, payload)
        handler = self.ai_handlers[type(event)]
        event_key = f"ai:{event.event_id or idempotency_hash(payload)}"

        logger.info(f"AI webhook received: {event.status} (job: {event.job_id})")

        return self._ingest(
            source="ai",
            event_type=event.status,
            event_key=event_key,
            correlation_id=event.job_id,
            handler=lambda db: handler(db, event),
        )

    def handle_email_webhook(self, payload: Dict[str, Any]) -> WebhookAck:
        """Apply a mail provider delivery status event."""
        try:
            event = EmailDeliveryEvent.model_validate(payload)
        except ValidationError as e:
            raise PayloadValidationError(f"Invalid webhook payload: {e.errors()[0]['msg']}")

        logger.info(f"Email webhook received: {event.event} (message: {event.message_id})")

        return self._ingest(
            source="email",
            event_type=event.event,
            event_key=f"email:{event.message_id}:{event.event}",
            correlation_id=event.message_id,
            handler=lambda db: self._email_event(db, event),
        )

    def _ingest(
        self,
        source: str,
        event_type: str,
        event_key: str,
        correlation_id: Optional[str],
        handler: Callable[[Session], HandlerResult],
    ) -> WebhookAck:
        """
        Run a handler once per idempotency key.

        Stale workflow reads are retried from a fresh transaction up to
        STALE_STATE_RETRIES times before the conflict propagates.
        """
        retries = self.settings.STALE_STATE_RETRIES
        attempt = 0
        while True:
            attempt += 1
            db = self.session_factory()
            try:
                if db.get(WebhookEvent, event_key) is not None:
                    logger.warning(f"Duplicate {source} webhook {event_key} acknowledged without processing")
                    return WebhookAck(
                        message="Duplicate event acknowledged",
                        event_key=event_key,
                        duplicate=True,
                    )

                outcome, message = handler(db)

                db.add(
                    WebhookEvent(
                        event_key=event_key,
                        source=source,
                        event_type=event_type,
                        outcome=outcome,
                        correlation_id=correlation_id,
                        received_at=self.clock(),
                    )
                )
                db.commit()

                logger.info(f"webhook_{source}_{outcome}: {event_type} ({event_key})")
                return WebhookAck(
                    message=message,
                    event_key=event_key,
                    duplicate=outcome == "duplicate",
                    orphaned=outcome == "orphaned",
                )

            except IntegrityError:
                db.rollback()
                logger.warning(f"Concurrent duplicate {source} webhook {event_key} acknowledged")
                return WebhookAck(
                    message="Duplicate event acknowledged",
                    event_key=event_key,
                    duplicate=True,
                )
            except StaleStateError as e:
                db.rollback()
                if attempt > retries:
                    logger.error(f"{source} webhook {event_key} gave up after {retries} stale retries: {e}")
                    raise
                logger.warning(f"{source} webhook {event_key} hit stale state, retrying ({attempt}/{retries}): {e}")
            finally:
                db.close()

    # Forms

    def _find_form(self, db: Session, external_form_id: str) -> Optional[GeneratedForm]:
        form = db.query(GeneratedForm).filter(GeneratedForm.external_form_id == external_form_id).first()
        if form is None:
            logger.warning(f"Webhook received for unknown form {external_form_id}")
        return form

    def _form_started(self, db: Session, event: FormStartedEvent) -> HandlerResult:
        form = self._find_form(db, event.form_id)
        if form is None:
            return "orphaned", "Form not found but webhook acknowledged"
        if form.status == "completed":
            return "ignored", "Form already completed"

        form.status = "in_progress"
        form.started_at = self.clock()
        form.current_question = 1
        return "processed", "Form start recorded"

    def _form_updated(self, db: Session, event: FormUpdatedEvent) -> HandlerResult:
        form = self._find_form(db, event.form_id)
        if form is None:
            return "orphaned", "Form not found but webhook acknowledged"
        if form.status == "completed":
            return "ignored", "Form already completed"

        answered = len(event.data.responses)
        if form.total_questions:
            percentage = min(answered / form.total_questions * 100, 100.0)
        else:
            percentage = 0.0

        form.status = "in_progress"
        form.current_question = answered + 1
        form.completion_percentage = percentage
        form.partial_responses = [r.model_dump(by_alias=True) for r in event.data.responses]
        form.last_saved_at = self.clock()
        return "processed", f"Form progress saved ({percentage:.0f}%)"

    def _form_completed(self, db: Session, event: FormCompletedEvent) -> HandlerResult:
        form = self._find_form(db, event.form_id)
        if form is None:
            return "orphaned", "Form not found but webhook acknowledged"

        existing = (
            db.query(FormResponse.id)
            .filter(FormResponse.submission_id == event.submission_id)
            .first()
        )
        if existing is not None:
            logger.warning(f"Submission {event.submission_id} already recorded, skipping")
            return "duplicate", "Submission already recorded"

        now = self.clock()
        metadata = event.data.metadata
        submitted_at = _naive_utc(metadata.submitted_at) if metadata.submitted_at else now
        raw_responses = [r.model_dump(by_alias=True) for r in event.data.responses]

        form.status = "completed"
        form.completed_at = submitted_at
        form.completion_percentage = 100.0
        form.current_question = form.total_questions

        form_response = FormResponse(
            id=new_id(),
            form_id=form.id,
            client_id=form.client_id,
            submission_id=event.submission_id,
            raw_responses=raw_responses,
            processed_responses=process_form_responses(raw_responses, now),
            completion_time_minutes=metadata.completion_time,
            submitted_at=submitted_at,
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            validation_score=calculate_validation_score(raw_responses),
        )
        db.add(form_response)
        db.flush()

        try:
            self.workflow.advance(
                db,
                form.client_id,
                WorkflowStatus.RESPONSES_RECEIVED,
                "form_completed",
                context={
                    "formId": form.id,
                    "submissionId": event.submission_id,
                    "completionTime": metadata.completion_time,
                    "responseCount": len(raw_responses),
                },
            )
        except IllegalTransitionError as e:
            # Response is kept; the client status is left for manual action
            logger.warning(f"Form {form.id} completed but client {form.client_id} cannot take responses: {e}")
            self._notify_consultant(form, db)
            return "processed", "Form completion recorded; client status needs manual review"

        active = self.queue_manager.find_active_job(form.client_id, AI_PROCESSING, db)
        if active is not None:
            logger.info(f"Client {form.client_id} already has active AI job {active.job_id}, not enqueueing")
        else:
            self.queue_manager.enqueue(
                AI_PROCESSING,
                {"clientId": form.client_id, "formResponseId": form_response.id},
                db=db,
            )

        self._notify_consultant(form, db)
        return "processed", "Form completion processed"

    def _notify_consultant(self, form: GeneratedForm, db: Session):
        if not self.settings.CONSULTANT_EMAIL:
            logger.info(f"Form {form.id} completed; no consultant address configured for notification")
            return
        self.queue_manager.enqueue(
            NOTIFICATIONS,
            {
                "clientId": form.client_id,
                "notificationType": "form_completed",
                "recipient": self.settings.CONSULTANT_EMAIL,
                "formId": form.id,
            },
            db=db,
        )

    # AI service

    def _ai_completed(self, db: Session, event: AICompletedEvent) -> HandlerResult:
        outcome = self.queue_manager.resume(event.job_id, event.results)
        return self._ai_outcome(event.job_id, outcome)

    def _ai_failed(self, db: Session, event: AIFailedEvent) -> HandlerResult:
        error = TransientError(f"AI service reported failure: {event.error.message}")
        outcome = self.queue_manager.fail(event.job_id, error)
        return self._ai_outcome(event.job_id, outcome)

    def _ai_outcome(self, job_id: str, outcome: Optional[str]) -> HandlerResult:
        if outcome is None:
            logger.warning(f"AI webhook for unknown job {job_id}")
            return "orphaned", "Job not found but webhook acknowledged"
        if outcome in ("ignored", "skipped"):
            return "ignored", f"Job {job_id} is not awaiting a callback"
        return "processed", f"Job {job_id} {outcome}"

    # Mail provider

    def _email_event(self, db: Session, event: EmailDeliveryEvent) -> HandlerResult:
        notification = (
            db.query(Notification)
            .filter(Notification.provider_message_id == event.message_id)
            .first()
        )
        if notification is None:
            logger.warning(f"Email webhook for unknown message {event.message_id}")
            return "orphaned", "Message not found but webhook acknowledged"

        status = EMAIL_EVENT_STATUS.get(event.event)
        if status is None:
            logger.warning(f"Unknown email event {event.event} for message {event.message_id}")
            return "ignored", f"Unknown email event {event.event}"

        notification.status = status
        notification.delivery_response = {
            **(notification.delivery_response or {}),
            "lastEvent": {
                "event": event.event,
                "timestamp": event.timestamp,
                "recipient": event.recipient,
            },
        }
        return "processed", f"Notification marked {status}"
