"""Tests for webhook ingestion."""

from datetime import timedelta

import pytest

from orchestrator.config import AI_PROCESSING, NOTIFICATIONS, SOP_GENERATION
from orchestrator.errors import PayloadValidationError, StaleStateError
from orchestrator.models.form import FormResponse, GeneratedForm
from orchestrator.models.job import Job
from orchestrator.models.notification import Notification
from orchestrator.models.webhook_event import WebhookEvent
from orchestrator.schemas.webhooks import FormEvent
from orchestrator.webhooks import (
    calculate_validation_score,
    idempotency_hash,
    infer_answer_type,
    process_form_responses,
)
from orchestrator.workflow import WorkflowStatus

from fakes import START, analysis_results

ANSWERS = [
    {"questionId": "q1", "question": "Company size?", "answer": "45"},
    {"questionId": "q2", "question": "Contact email?", "answer": "ops@acme.example"},
    {"questionId": "q3", "question": "Which processes are manual?", "answer": "Invoicing and payroll"},
    {"questionId": "q4", "question": "Do you use an ERP?", "answer": "N/A"},
]


def form_event(event_type, event_id, form_id="tally-form-1", submission_id=None, responses=None):
    payload = {
        "eventType": event_type,
        "eventId": event_id,
        "formId": form_id,
        "data": {
            "responses": responses if responses is not None else ANSWERS,
            "metadata": {
                "completionTime": 12,
                "submittedAt": "2026-03-02T08:55:00Z",
                "ipAddress": "203.0.113.9",
                "userAgent": "Mozilla/5.0",
            },
        },
    }
    if submission_id is not None:
        payload["submissionId"] = submission_id
    return payload


def jobs_on(test_db, queue_name):
    test_db.expire_all()
    return test_db.query(Job).filter(Job.queue == queue_name).all()


@pytest.fixture
def sent_form(make_client, make_form):
    client_id = make_client(WorkflowStatus.FORM_SENT)
    form_id = make_form(client_id, external_form_id="tally-form-1", total_questions=8)
    return client_id, form_id


# Pure helpers


def test_validation_score():
    """Test empty and placeholder answers do not count as valid."""
    answers = [
        {"answer": "Yes"},
        {"answer": ""},
        {"answer": "N/A"},
        {"answer": "No aplica"},
        {"answer": None},
        {"answer": ["Excel", "SAP"]},
    ]

    assert calculate_validation_score(answers) == 0.33
    assert calculate_validation_score([]) == 0.0


def test_infer_answer_type():
    assert infer_answer_type(True) == "boolean"
    assert infer_answer_type(3.5) == "number"
    assert infer_answer_type(["a"]) == "array"
    assert infer_answer_type("me@example.com") == "email"
    assert infer_answer_type("42") == "numeric_string"
    assert infer_answer_type("x" * 101) == "long_text"
    assert infer_answer_type("short") == "text"
    assert infer_answer_type(None) == "unknown"


def test_process_form_responses_tags_types():
    processed = process_form_responses(ANSWERS[:2], START)

    assert [p["type"] for p in processed] == ["numeric_string", "email"]
    assert all(p["processed"] for p in processed)
    assert processed[0]["timestamp"] == START.isoformat()


def test_idempotency_hash_ignores_key_order_and_nulls():
    first = {"jobId": "j1", "status": "failed", "error": {"message": "x"}}
    second = {"error": {"message": "x"}, "status": "failed", "jobId": "j1", "eventId": None}

    assert idempotency_hash(first) == idempotency_hash(second)
    assert idempotency_hash(first) != idempotency_hash({**first, "jobId": "j2"})


def test_missing_handler_detected(runtime):
    with pytest.raises(RuntimeError, match="FormCompletedEvent"):
        runtime.webhooks._check_handlers(FormEvent, dict(list(runtime.webhooks.form_handlers.items())[:2]))


# Forms vendor


def test_form_completed_creates_response_and_jobs(runtime, test_db, sent_form):
    """Test a completion stores the response, advances the client and queues work."""
    client_id, form_id = sent_form

    ack = runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    assert ack.success and not ack.duplicate and not ack.orphaned
    assert ack.event_key == "forms:evt-1"

    response = test_db.query(FormResponse).one()
    assert response.client_id == client_id
    assert response.submission_id == "sub-1"
    assert response.validation_score == 0.75
    assert response.completion_time_minutes == 12
    assert response.submitted_at == START.replace(minute=55, hour=8)
    assert len(response.processed_responses) == 4

    form = test_db.get(GeneratedForm, form_id)
    assert form.status == "completed"
    assert form.completion_percentage == 100.0

    assert runtime.workflow.current_status(test_db, client_id) is WorkflowStatus.RESPONSES_RECEIVED
    ai_jobs = jobs_on(test_db, AI_PROCESSING)
    assert len(ai_jobs) == 1
    assert ai_jobs[0].payload == {"clientId": client_id, "formResponseId": response.id}

    consultant = jobs_on(test_db, NOTIFICATIONS)
    assert len(consultant) == 1
    assert consultant[0].payload["notificationType"] == "form_completed"
    assert consultant[0].payload["recipient"] == "consultant@example.com"

    event = test_db.get(WebhookEvent, "forms:evt-1")
    assert event.outcome == "processed"
    assert event.correlation_id == "tally-form-1"


def test_completion_time_minutes_field_accepted(runtime, test_db, sent_form):
    payload = form_event("form.completed", "evt-1", submission_id="sub-1")
    payload["data"]["metadata"] = {"completionTimeMinutes": 17, "submittedAt": "2026-03-02T08:55:00Z"}

    runtime.webhooks.handle_form_webhook(payload)

    assert test_db.query(FormResponse).one().completion_time_minutes == 17


def test_completion_for_client_not_awaiting_responses(runtime, test_db, make_client, make_form):
    """Test a completion for a client still in created is kept and acknowledged without retries."""
    client_id = make_client(WorkflowStatus.CREATED)
    make_form(client_id)

    ack = runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    assert ack.success is True
    assert ack.duplicate is False
    assert test_db.query(FormResponse).one().client_id == client_id
    assert runtime.workflow.current_status(test_db, client_id) is WorkflowStatus.CREATED
    assert jobs_on(test_db, AI_PROCESSING) == []
    assert jobs_on(test_db, NOTIFICATIONS)[0].payload["notificationType"] == "form_completed"
    assert test_db.get(WebhookEvent, "forms:evt-1").outcome == "processed"


def test_redelivered_event_is_acknowledged_once(runtime, test_db, sent_form):
    """Test the same event id is applied only once."""
    payload = form_event("form.completed", "evt-1", submission_id="sub-1")

    runtime.webhooks.handle_form_webhook(payload)
    ack = runtime.webhooks.handle_form_webhook(payload)

    assert ack.duplicate is True
    assert test_db.query(FormResponse).count() == 1
    assert len(jobs_on(test_db, AI_PROCESSING)) == 1


def test_duplicate_submission_with_new_event_id(runtime, test_db, sent_form):
    """Test a resubmitted completion with a fresh event id creates nothing new."""
    runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    ack = runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-2", submission_id="sub-1"))

    assert ack.success is True
    assert ack.duplicate is True
    assert test_db.query(FormResponse).count() == 1
    assert len(jobs_on(test_db, AI_PROCESSING)) == 1
    assert test_db.get(WebhookEvent, "forms:evt-2").outcome == "duplicate"


def test_active_ai_job_not_duplicated(runtime, test_db, sent_form, make_form):
    """Test a second completion for a client with a queued AI job does not enqueue another."""
    client_id, _ = sent_form
    make_form(client_id, external_form_id="tally-form-2")
    runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    runtime.webhooks.handle_form_webhook(
        form_event("form.completed", "evt-2", form_id="tally-form-2", submission_id="sub-2")
    )

    assert test_db.query(FormResponse).count() == 2
    assert len(jobs_on(test_db, AI_PROCESSING)) == 1


def test_unknown_form_is_orphaned(runtime, test_db, sent_form):
    ack = runtime.webhooks.handle_form_webhook(
        form_event("form.completed", "evt-9", form_id="deleted-form", submission_id="sub-9")
    )

    assert ack.success is True
    assert ack.orphaned is True
    assert test_db.query(FormResponse).count() == 0
    assert jobs_on(test_db, AI_PROCESSING) == []
    assert test_db.get(WebhookEvent, "forms:evt-9").outcome == "orphaned"


def test_form_started_and_updated_track_progress(runtime, test_db, sent_form, clock):
    _, form_id = sent_form

    runtime.webhooks.handle_form_webhook(form_event("form.started", "evt-1", responses=[]))
    runtime.webhooks.handle_form_webhook(form_event("form.updated", "evt-2", responses=ANSWERS[:2]))

    form = test_db.get(GeneratedForm, form_id)
    assert form.status == "in_progress"
    assert form.started_at == clock.now
    assert form.current_question == 3
    assert form.completion_percentage == 25.0
    assert len(form.partial_responses) == 2
    assert runtime.workflow.current_status(test_db, form.client_id) is WorkflowStatus.FORM_SENT


def test_progress_after_completion_is_ignored(runtime, test_db, sent_form):
    runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    runtime.webhooks.handle_form_webhook(form_event("form.updated", "evt-2", responses=ANSWERS[:1]))

    assert test_db.get(WebhookEvent, "forms:evt-2").outcome == "ignored"
    assert test_db.query(GeneratedForm).one().completion_percentage == 100.0


@pytest.mark.parametrize(
    "payload",
    [
        {"eventType": "form.deleted", "eventId": "evt-1", "formId": "tally-form-1"},
        {"eventId": "evt-1", "formId": "tally-form-1"},
        {"eventType": "form.completed", "eventId": "evt-1", "formId": "tally-form-1"},
    ],
)
def test_invalid_form_payload_rejected(runtime, test_db, payload):
    """Test unknown event types and missing fields are rejected before any side effect."""
    with pytest.raises(PayloadValidationError):
        runtime.webhooks.handle_form_webhook(payload)

    assert test_db.query(WebhookEvent).count() == 0


def test_stale_state_retried_then_applied(runtime, test_db, sent_form, monkeypatch):
    """Test a lost workflow race is retried from a fresh transaction."""
    real_advance = runtime.workflow.advance
    calls = []

    def flaky_advance(db, client_id, *args, **kwargs):
        calls.append(client_id)
        if len(calls) == 1:
            raise StaleStateError(client_id, "form_sent", "responses_received")
        return real_advance(db, client_id, *args, **kwargs)

    monkeypatch.setattr(runtime.workflow, "advance", flaky_advance)

    ack = runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    assert ack.duplicate is False
    assert len(calls) == 2
    assert test_db.query(FormResponse).count() == 1
    assert len(jobs_on(test_db, AI_PROCESSING)) == 1


def test_stale_state_gives_up_after_retries(runtime, test_db, sent_form, monkeypatch, test_settings):
    def always_stale(db, client_id, *args, **kwargs):
        raise StaleStateError(client_id, "form_sent", "closed")

    monkeypatch.setattr(runtime.workflow, "advance", always_stale)

    with pytest.raises(StaleStateError):
        runtime.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    assert test_db.query(FormResponse).count() == 0
    assert test_db.query(WebhookEvent).count() == 0


def test_no_consultant_notification_without_address(session_factory, invokers, clock, test_db, sent_form):
    from orchestrator.config import Settings
    from orchestrator.runtime import build_runtime

    quiet = build_runtime(session_factory, invokers, app_settings=Settings(_env_file=None), clock=clock)

    quiet.webhooks.handle_form_webhook(form_event("form.completed", "evt-1", submission_id="sub-1"))

    assert jobs_on(test_db, NOTIFICATIONS) == []
    assert len(jobs_on(test_db, AI_PROCESSING)) == 1


# AI service


def deferred_ai_job(runtime, run_next, invokers, make_client, make_form_response):
    invokers.ai.script("analyze_responses", {"status": "accepted", "jobId": "remote-7"})
    client_id = make_client(WorkflowStatus.RESPONSES_RECEIVED)
    response_id = make_form_response(client_id)
    job = runtime.queue_manager.enqueue(AI_PROCESSING, {"clientId": client_id, "formResponseId": response_id})
    _, outcome = run_next(AI_PROCESSING)
    assert outcome == "deferred"
    return job.job_id


def test_ai_completed_webhook_resumes_job(
    runtime, test_db, run_next, invokers, make_client, make_form_response, load_job
):
    """Test the completion callback finishes the waiting AI job."""
    job_id = deferred_ai_job(runtime, run_next, invokers, make_client, make_form_response)
    results = analysis_results(6)
    results.pop("status")

    ack = runtime.webhooks.handle_ai_webhook(
        {"eventId": "ai-evt-1", "jobId": job_id, "status": "completed", "results": results}
    )

    assert ack.success is True
    assert ack.orphaned is False
    job = load_job(job_id)
    assert job.status == "completed"
    assert job.output["processCount"] == 6
    assert test_db.get(WebhookEvent, "ai:ai-evt-1").outcome == "processed"


def test_ai_completed_webhook_matches_remote_job_id(
    runtime, test_db, run_next, invokers, make_client, make_form_response, load_job
):
    """Test a callback carrying the AI service's own job id finds the waiting job."""
    job_id = deferred_ai_job(runtime, run_next, invokers, make_client, make_form_response)
    results = analysis_results(6)
    results.pop("status")

    ack = runtime.webhooks.handle_ai_webhook(
        {"eventId": "ai-evt-remote", "jobId": "remote-7", "status": "completed", "results": results}
    )

    assert ack.orphaned is False
    job = load_job(job_id)
    assert job.status == "completed"
    assert job.awaiting_callback is False
    assert job.output["processCount"] == 6
    assert len(jobs_on(test_db, SOP_GENERATION)) == 1
    assert invokers.ai.callback_ids == [job_id]


def test_ai_failed_webhook_with_remote_job_id_backs_off(
    runtime, run_next, invokers, make_client, make_form_response, load_job, clock
):
    job_id = deferred_ai_job(runtime, run_next, invokers, make_client, make_form_response)

    ack = runtime.webhooks.handle_ai_webhook(
        {"eventId": "ai-evt-remote-2", "jobId": "remote-7", "status": "failed", "error": {"message": "quota"}}
    )

    assert ack.orphaned is False
    job = load_job(job_id)
    assert job.status == "queued"
    assert job.next_run_at == clock.now + timedelta(seconds=30 * 2)


def test_ai_failed_webhook_retries_with_backoff(
    runtime, run_next, invokers, make_client, make_form_response, load_job, clock
):
    """Test a remote failure is retried like any other transient error."""
    job_id = deferred_ai_job(runtime, run_next, invokers, make_client, make_form_response)

    runtime.webhooks.handle_ai_webhook(
        {"eventId": "ai-evt-2", "jobId": job_id, "status": "failed", "error": {"message": "model overloaded"}}
    )

    job = load_job(job_id)
    assert job.status == "queued"
    assert job.awaiting_callback is False
    assert "model overloaded" in job.last_error
    assert job.next_run_at == clock.now + timedelta(seconds=30 * 2)


def test_ai_webhook_without_event_id_dedupes_by_content(
    runtime, test_db, run_next, invokers, make_client, make_form_response
):
    job_id = deferred_ai_job(runtime, run_next, invokers, make_client, make_form_response)
    payload = {"jobId": job_id, "status": "failed", "error": {"message": "model overloaded"}}

    first = runtime.webhooks.handle_ai_webhook(payload)
    second = runtime.webhooks.handle_ai_webhook(dict(reversed(list(payload.items()))))

    assert first.event_key == second.event_key
    assert second.duplicate is True


def test_ai_webhook_for_unknown_job_is_orphaned(runtime, test_db):
    ack = runtime.webhooks.handle_ai_webhook({"eventId": "ai-evt-3", "jobId": "nope", "status": "completed"})

    assert ack.orphaned is True
    assert test_db.get(WebhookEvent, "ai:ai-evt-3").outcome == "orphaned"


def test_ai_webhook_for_finished_job_is_ignored(runtime, test_db):
    job = runtime.queue_manager.enqueue(AI_PROCESSING, {"clientId": "c1", "formResponseId": "r1"})

    ack = runtime.webhooks.handle_ai_webhook({"eventId": "ai-evt-4", "jobId": job.job_id, "status": "completed"})

    assert ack.orphaned is False
    assert test_db.get(WebhookEvent, "ai:ai-evt-4").outcome == "ignored"


def test_ai_webhook_unknown_status_rejected(runtime):
    with pytest.raises(PayloadValidationError):
        runtime.webhooks.handle_ai_webhook({"jobId": "j1", "status": "cancelled"})


# Mail provider


@pytest.fixture
def sent_notification(test_db, make_client):
    client_id = make_client(WorkflowStatus.PROPOSAL_READY)
    notification = Notification(
        client_id=client_id,
        job_id="notify-job-1",
        notification_type="proposal_ready",
        recipient="ops@acme.example",
        subject="Commercial proposal ready",
        message="Ready",
        status="sent",
        provider_message_id="msg-77",
        delivery_response={"provider": "fake"},
    )
    test_db.add(notification)
    test_db.commit()
    return notification.id


def test_email_bounce_updates_notification(runtime, test_db, sent_notification):
    ack = runtime.webhooks.handle_email_webhook(
        {"messageId": "msg-77", "event": "bounced", "timestamp": "2026-03-02T10:00:00Z", "recipient": "ops@acme.example"}
    )

    assert ack.event_key == "email:msg-77:bounced"
    test_db.expire_all()
    notification = test_db.get(Notification, sent_notification)
    assert notification.status == "bounced"
    assert notification.delivery_response["provider"] == "fake"
    assert notification.delivery_response["lastEvent"]["event"] == "bounced"


def test_email_event_for_unknown_message_is_orphaned(runtime, sent_notification):
    ack = runtime.webhooks.handle_email_webhook({"messageId": "msg-404", "event": "delivered"})

    assert ack.orphaned is True


def test_unrecognized_email_event_is_ignored(runtime, test_db, sent_notification):
    runtime.webhooks.handle_email_webhook({"messageId": "msg-77", "event": "spam_report"})

    assert test_db.get(WebhookEvent, "email:msg-77:spam_report").outcome == "ignored"
    test_db.expire_all()
    assert test_db.get(Notification, sent_notification).status == "sent"


def test_email_payload_requires_message_id(runtime):
    with pytest.raises(PayloadValidationError):
        runtime.webhooks.handle_email_webhook({"event": "delivered"})
