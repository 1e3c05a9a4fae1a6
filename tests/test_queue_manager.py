"""Tests for the queue manager."""

from datetime import timedelta

import pytest

from orchestrator.config import NOTIFICATIONS, PDF_GENERATION, STAGES, QueuePolicy
from orchestrator.errors import (
    BusinessRuleError,
    NotFoundError,
    PayloadValidationError,
    TransientError,
    UnknownQueueError,
)
from orchestrator.models.job import Job
from orchestrator.processors.base import BaseProcessor, StageResult, Successor
from orchestrator.queue import QueueManager, admin_alert_hook
from orchestrator.workflow import WorkflowStateMachine


class ScriptedProcessor(BaseProcessor):
    """Processor whose outcomes are scripted per test."""

    effects = []

    def _run(self, payload, job):
        effect = self.effects.pop(0) if self.effects else {"ok": True}
        if isinstance(effect, BaseException):
            raise effect
        if effect == "defer":
            return StageResult(output={"waiting": True}, deferred=True, external_ref="remote-1")
        return StageResult(output=effect)

    def _resume(self, job, results):
        return StageResult(output=results)

    def successors(self, job, output):
        if "then" in job.payload:
            return [Successor(queue=job.payload["then"], payload={"from": job.job_id})]
        return []

    def _validate(self, output):
        return output.get("ok", True)


def small_policies(**overrides):
    base = dict(concurrency=2, max_attempts=3, backoff_base_seconds=30.0, keep_completed=10, keep_failed=10)
    base.update(overrides)
    return {stage: QueuePolicy(**base) for stage in STAGES}


@pytest.fixture
def manager(session_factory, test_settings, clock):
    ScriptedProcessor.effects = []
    return QueueManager(
        session_factory,
        {stage: ScriptedProcessor for stage in STAGES},
        invokers=None,
        workflow=WorkflowStateMachine(),
        policies=small_policies(),
        app_settings=test_settings,
        clock=clock,
    )


def claim_and_execute(manager, session_factory, queue_name=NOTIFICATIONS):
    db = session_factory()
    try:
        job = manager.claim_next(queue_name, db)
        assert job is not None
        job_id = job.job_id
    finally:
        db.close()
    return job_id, manager.execute(job_id)


def test_enqueue_rejects_unknown_queue(manager):
    """Test enqueue to a queue that is not a stage queue."""
    with pytest.raises(UnknownQueueError):
        manager.enqueue("reporting", {"clientId": "c1"})


@pytest.mark.parametrize(
    "options",
    [
        {"priority": "critical"},
        {"delay_ms": -1},
        {"max_attempts": 0},
    ],
)
def test_enqueue_rejects_invalid_options(manager, options):
    """Test enqueue option validation."""
    with pytest.raises(PayloadValidationError):
        manager.enqueue(NOTIFICATIONS, {"clientId": "c1"}, **options)


def test_enqueue_rejects_non_object_payload(manager):
    with pytest.raises(PayloadValidationError):
        manager.enqueue(NOTIFICATIONS, ["not", "an", "object"])


def test_enqueue_applies_queue_defaults(manager, clock):
    """Test a job picks up the queue's attempt limit and the payload's client."""
    job = manager.enqueue(NOTIFICATIONS, {"clientId": "c1"})

    assert job.status == "queued"
    assert job.client_id == "c1"
    assert job.max_attempts == 3
    assert job.attempt_count == 0
    assert job.next_run_at == clock.now
    assert job.error_history == []


def test_claim_orders_by_priority_then_creation(manager, test_db, clock):
    """Test urgent jobs run first and equal priorities run oldest first."""
    low = manager.enqueue(NOTIFICATIONS, {"n": 1}, priority="low")
    clock.advance(1)
    normal_first = manager.enqueue(NOTIFICATIONS, {"n": 2})
    clock.advance(1)
    normal_second = manager.enqueue(NOTIFICATIONS, {"n": 3})
    clock.advance(1)
    urgent = manager.enqueue(NOTIFICATIONS, {"n": 4}, priority="urgent")

    order = [manager.claim_next(NOTIFICATIONS, test_db).job_id for _ in range(4)]

    assert order == [urgent.job_id, normal_first.job_id, normal_second.job_id, low.job_id]
    assert manager.claim_next(NOTIFICATIONS, test_db) is None


def test_delayed_job_not_claimed_early(manager, test_db, clock):
    """Test a delayed job only becomes eligible once its delay passes."""
    job = manager.enqueue(NOTIFICATIONS, {"n": 1}, delay_ms=5000)

    assert manager.claim_next(NOTIFICATIONS, test_db) is None

    clock.advance(5)
    claimed = manager.claim_next(NOTIFICATIONS, test_db)
    assert claimed.job_id == job.job_id


def test_claim_is_exclusive_and_counts_attempt(manager, session_factory, clock):
    """Test a job claimed by one worker cannot be claimed by another."""
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})

    first_db = session_factory()
    second_db = session_factory()
    try:
        claimed = manager.claim_next(NOTIFICATIONS, first_db)
        assert claimed.job_id == job.job_id
        assert claimed.status == "running"
        assert claimed.attempt_count == 1
        assert claimed.started_at == clock.now

        assert manager.claim_next(NOTIFICATIONS, second_db) is None
    finally:
        first_db.close()
        second_db.close()


def test_claim_ignores_other_queues(manager, test_db):
    manager.enqueue(PDF_GENERATION, {"n": 1})

    assert manager.claim_next(NOTIFICATIONS, test_db) is None


def test_completion_stores_output_and_chains(manager, session_factory, load_job):
    """Test a completed job enqueues its successor with a parent link."""
    parent = manager.enqueue(NOTIFICATIONS, {"then": PDF_GENERATION})
    ScriptedProcessor.effects = [{"ok": True, "value": 42}]

    job_id, outcome = claim_and_execute(manager, session_factory)

    assert outcome == "completed"
    job = load_job(job_id)
    assert job.status == "completed"
    assert job.output == {"ok": True, "value": 42}
    assert job.completed_at is not None

    db = session_factory()
    try:
        child = db.query(Job).filter(Job.queue == PDF_GENERATION).one()
        assert child.parent_job_id == parent.job_id
        assert child.payload == {"from": parent.job_id}
        assert child.status == "queued"
    finally:
        db.close()


def test_retryable_failure_requeues_with_backoff(manager, session_factory, load_job, clock):
    """Test a transient failure re-queues the job with exponential backoff."""
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    ScriptedProcessor.effects = [TransientError("mail provider timeout")]

    _, outcome = claim_and_execute(manager, session_factory)

    assert outcome == "retrying"
    failed = load_job(job.job_id)
    assert failed.status == "queued"
    assert failed.attempt_count == 1
    assert failed.next_run_at == clock.now + timedelta(seconds=30 * 2)
    assert failed.last_error == "mail provider timeout"
    assert failed.error_class == "transient"
    assert len(failed.error_history) == 1
    assert failed.error_history[0]["attempt"] == 1
    assert failed.error_history[0]["classification"] == "retryable"

    # Not eligible until the backoff elapses
    db = session_factory()
    try:
        assert manager.claim_next(NOTIFICATIONS, db) is None
        clock.advance(60)
        assert manager.claim_next(NOTIFICATIONS, db).job_id == job.job_id
    finally:
        db.close()


def test_backoff_doubles_per_attempt(manager, session_factory, load_job, clock):
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    ScriptedProcessor.effects = [TransientError("first"), TransientError("second")]

    claim_and_execute(manager, session_factory)
    clock.advance(60)
    claim_and_execute(manager, session_factory)

    retried = load_job(job.job_id)
    assert retried.attempt_count == 2
    assert retried.next_run_at == clock.now + timedelta(seconds=30 * 4)
    assert [entry["error"] for entry in retried.error_history] == ["first", "second"]


def test_fatal_failure_fails_immediately(manager, session_factory, load_job):
    """Test non-retryable errors skip the remaining attempts and escalate."""
    escalated = []
    manager.escalation_hooks.append(escalated.append)
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    ScriptedProcessor.effects = [BusinessRuleError("SOPs not approved")]

    _, outcome = claim_and_execute(manager, session_factory)

    assert outcome == "failed"
    failed = load_job(job.job_id)
    assert failed.status == "failed"
    assert failed.attempt_count == 1
    assert failed.error_class == "business_rule"
    assert failed.escalated_at is not None
    assert [j.job_id for j in escalated] == [job.job_id]


def test_attempts_never_exceed_max(manager, session_factory, load_job, clock):
    """Test a job that keeps failing stops after max_attempts."""
    job = manager.enqueue(NOTIFICATIONS, {"n": 1}, max_attempts=2)
    ScriptedProcessor.effects = [TransientError("down"), TransientError("still down")]

    _, first = claim_and_execute(manager, session_factory)
    clock.advance(3600)
    _, second = claim_and_execute(manager, session_factory)

    assert (first, second) == ("retrying", "failed")
    failed = load_job(job.job_id)
    assert failed.status == "failed"
    assert failed.attempt_count == failed.max_attempts == 2
    assert len(failed.error_history) == 2

    db = session_factory()
    try:
        clock.advance(3600)
        assert manager.claim_next(NOTIFICATIONS, db) is None
    finally:
        db.close()


def test_unknown_exception_is_retried(manager, session_factory, load_job):
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    ScriptedProcessor.effects = [RuntimeError("boom")]

    _, outcome = claim_and_execute(manager, session_factory)

    assert outcome == "retrying"
    assert load_job(job.job_id).error_class == "internal"


def test_invalid_output_is_retryable(manager, session_factory, load_job):
    """Test a processor output that fails validation counts as a transient failure."""
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    ScriptedProcessor.effects = [{"ok": False}]

    _, outcome = claim_and_execute(manager, session_factory)

    assert outcome == "retrying"
    assert load_job(job.job_id).error_class == "transient"


def test_escalation_hook_errors_are_contained(manager, session_factory, load_job):
    def broken_hook(job):
        raise RuntimeError("pager down")

    manager.escalation_hooks.append(broken_hook)
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    ScriptedProcessor.effects = [BusinessRuleError("no")]

    _, outcome = claim_and_execute(manager, session_factory)

    assert outcome == "failed"
    assert load_job(job.job_id).status == "failed"


def test_execute_skips_job_that_is_not_running(manager):
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})

    assert manager.execute(job.job_id) == "skipped"
    assert manager.execute("missing-job") == "skipped"


def test_deferred_job_completes_on_resume(manager, session_factory, load_job, test_db):
    """Test a deferred job stays running without holding a slot until resumed."""
    job = manager.enqueue(NOTIFICATIONS, {"then": PDF_GENERATION})
    ScriptedProcessor.effects = ["defer"]

    _, outcome = claim_and_execute(manager, session_factory)

    assert outcome == "deferred"
    waiting = load_job(job.job_id)
    assert waiting.status == "running"
    assert waiting.awaiting_callback is True
    assert waiting.external_ref == "remote-1"
    assert manager.running_count(NOTIFICATIONS, test_db) == 0

    assert manager.resume(job.job_id, {"ok": True, "count": 3}) == "completed"
    done = load_job(job.job_id)
    assert done.status == "completed"
    assert done.output == {"ok": True, "count": 3}
    assert done.awaiting_callback is False

    # A second callback for the same job is ignored
    assert manager.resume(job.job_id, {"ok": True}) == "ignored"


def test_deferred_job_failure_goes_through_retry(manager, session_factory, load_job, clock):
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    ScriptedProcessor.effects = ["defer"]
    claim_and_execute(manager, session_factory)

    outcome = manager.fail(job.job_id, TransientError("remote analysis crashed"))

    assert outcome == "retrying"
    retried = load_job(job.job_id)
    assert retried.status == "queued"
    assert retried.awaiting_callback is False
    assert retried.next_run_at == clock.now + timedelta(seconds=60)


def test_resume_and_fail_unknown_or_idle_jobs(manager):
    queued = manager.enqueue(NOTIFICATIONS, {"n": 1})

    assert manager.resume("missing-job", {}) is None
    assert manager.fail("missing-job", TransientError("x")) is None
    assert manager.resume(queued.job_id, {}) == "ignored"
    assert manager.fail(queued.job_id, TransientError("x")) == "ignored"


def test_retry_job_creates_new_job(manager, session_factory, load_job):
    """Test a failed job can be re-enqueued manually."""
    job = manager.enqueue(NOTIFICATIONS, {"clientId": "c1", "n": 1}, priority="high")
    ScriptedProcessor.effects = [BusinessRuleError("no")]
    claim_and_execute(manager, session_factory)

    retried = manager.retry_job(job.job_id)

    assert retried.job_id != job.job_id
    assert retried.parent_job_id == job.job_id
    assert retried.status == "queued"
    assert retried.attempt_count == 0
    assert retried.priority == "high"
    assert retried.payload == {"clientId": "c1", "n": 1}
    assert load_job(job.job_id).status == "failed"


def test_retry_job_rejects_unfailed_and_missing(manager):
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})

    with pytest.raises(BusinessRuleError):
        manager.retry_job(job.job_id)
    with pytest.raises(NotFoundError):
        manager.retry_job("missing-job")


def test_reaper_requeues_stale_running_job(manager, session_factory, load_job, clock, test_settings):
    """Test a job whose worker vanished is reclaimed and its late result discarded."""
    job = manager.enqueue(NOTIFICATIONS, {"n": 1})
    db = session_factory()
    try:
        manager.claim_next(NOTIFICATIONS, db)
    finally:
        db.close()

    assert manager.reap_stale_jobs() == []

    clock.advance(test_settings.STALE_JOB_TIMEOUT_SECONDS + 1)
    assert manager.reap_stale_jobs() == [job.job_id]

    reaped = load_job(job.job_id)
    assert reaped.status == "queued"
    assert reaped.error_class == "transient"

    # The vanished worker's execution no longer applies
    assert manager.execute(job.job_id) == "skipped"


def test_reaper_times_out_missing_callback(manager, session_factory, load_job, clock, test_settings):
    job = manager.enqueue(NOTIFICATIONS, {"n": 1}, max_attempts=1)
    ScriptedProcessor.effects = ["defer"]
    claim_and_execute(manager, session_factory)

    clock.advance(test_settings.STALE_JOB_TIMEOUT_SECONDS + 1)
    assert manager.reap_stale_jobs() == []

    clock.advance(test_settings.CALLBACK_TIMEOUT_SECONDS)
    assert manager.reap_stale_jobs() == [job.job_id]
    assert load_job(job.job_id).status == "failed"


def test_prune_keeps_newest_finished_jobs(session_factory, test_settings, clock):
    """Test finished jobs beyond the keep count are deleted."""
    ScriptedProcessor.effects = []
    manager = QueueManager(
        session_factory,
        {stage: ScriptedProcessor for stage in STAGES},
        invokers=None,
        workflow=WorkflowStateMachine(),
        policies=small_policies(keep_completed=2),
        app_settings=test_settings,
        clock=clock,
    )
    for n in range(4):
        manager.enqueue(NOTIFICATIONS, {"n": n})
        claim_and_execute(manager, session_factory)
        clock.advance(1)
    pending = manager.enqueue(NOTIFICATIONS, {"n": 99})

    assert manager.prune_finished() == 2

    db = session_factory()
    try:
        remaining = db.query(Job).filter(Job.status == "completed").all()
        assert sorted(job.payload["n"] for job in remaining) == [2, 3]
        assert db.get(Job, pending.job_id) is not None
    finally:
        db.close()


def test_prune_removes_jobs_past_retention(manager, session_factory, clock, test_settings):
    manager.enqueue(NOTIFICATIONS, {"n": 1})
    claim_and_execute(manager, session_factory)

    assert manager.prune_finished() == 0

    clock.advance(test_settings.JOB_RETENTION_HOURS * 3600 + 1)
    assert manager.prune_finished() == 1


def test_queue_stats(manager, session_factory):
    """Test per-queue counts separate ready from delayed jobs."""
    manager.enqueue(NOTIFICATIONS, {"n": 1})
    manager.enqueue(NOTIFICATIONS, {"n": 2}, delay_ms=60000)
    manager.enqueue(PDF_GENERATION, {"n": 3})
    claim_and_execute(manager, session_factory, PDF_GENERATION)

    stats = manager.get_queue_stats()

    assert set(stats) == set(STAGES)
    assert stats[NOTIFICATIONS] == {"queued": 1, "delayed": 1, "running": 0, "completed": 0, "failed": 0}
    assert stats[PDF_GENERATION]["completed"] == 1


def test_queue_health_alerts(session_factory, clock):
    from orchestrator.config import Settings

    strict = Settings(_env_file=None, QUEUE_WAITING_ALERT=1, QUEUE_FAILED_ALERT=0)
    manager = QueueManager(
        session_factory,
        {stage: ScriptedProcessor for stage in STAGES},
        invokers=None,
        workflow=WorkflowStateMachine(),
        policies=small_policies(),
        app_settings=strict,
        clock=clock,
    )
    ScriptedProcessor.effects = [BusinessRuleError("no")]
    manager.enqueue(PDF_GENERATION, {"n": 0})
    claim_and_execute(manager, session_factory, PDF_GENERATION)
    manager.enqueue(NOTIFICATIONS, {"n": 1})
    manager.enqueue(NOTIFICATIONS, {"n": 2})

    alerts = manager.check_queue_health()

    assert f"Queue {NOTIFICATIONS} has 2 waiting jobs" in alerts
    assert f"Queue {PDF_GENERATION} has 1 failed jobs" in alerts


def test_admin_alert_hook_enqueues_urgent_notification(manager, session_factory):
    """Test the admin hook turns an escalation into an error_alert notification."""
    manager.escalation_hooks.append(admin_alert_hook(manager, "admin@example.com"))
    job = manager.enqueue(PDF_GENERATION, {"clientId": "c1"})
    ScriptedProcessor.effects = [BusinessRuleError("renderer rejected template")]

    claim_and_execute(manager, session_factory, PDF_GENERATION)

    db = session_factory()
    try:
        alert = db.query(Job).filter(Job.queue == NOTIFICATIONS).one()
        assert alert.priority == "urgent"
        assert alert.parent_job_id == job.job_id
        assert alert.payload["notificationType"] == "error_alert"
        assert alert.payload["recipient"] == "admin@example.com"
        assert "renderer rejected template" in alert.payload["detail"]
    finally:
        db.close()


def test_admin_alert_hook_skips_notification_jobs(manager, session_factory):
    manager.escalation_hooks.append(admin_alert_hook(manager, "admin@example.com"))
    manager.enqueue(NOTIFICATIONS, {"clientId": "c1"})
    ScriptedProcessor.effects = [BusinessRuleError("bad recipient")]

    claim_and_execute(manager, session_factory)

    db = session_factory()
    try:
        assert db.query(Job).filter(Job.queue == NOTIFICATIONS).count() == 1
    finally:
        db.close()
