"""Queue manager: durable stage queues with priority, backoff and chaining."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Type

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from orchestrator.config import NOTIFICATIONS, QueuePolicy, Settings, settings
from orchestrator.errors import (
    RETRYABLE,
    BusinessRuleError,
    NotFoundError,
    PayloadValidationError,
    TransientError,
    UnknownQueueError,
    classify_error,
    error_class_of,
)
from orchestrator.models.job import ACTIVE_STATUSES, PRIORITY_RANKS, Job, new_id
from orchestrator.processors.base import BaseProcessor, StageInvokers, StageResult
from orchestrator.workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)

EscalationHook = Callable[[Job], None]


class QueueManager:
    """Owns the five stage queues and every job status change.

    Jobs live in the `jobs` table. Claims and status changes are conditional
    UPDATEs so several workers can share the table without double-running a
    job or overwriting each other's outcome.
    """

    def __init__(
        self,
        session_factory,
        processors: Dict[str, Type[BaseProcessor]],
        invokers: StageInvokers,
        workflow: WorkflowStateMachine,
        policies: Optional[Dict[str, QueuePolicy]] = None,
        app_settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize queue manager."""
        self.session_factory = session_factory
        self.processors = processors
        self.invokers = invokers
        self.workflow = workflow
        self.settings = app_settings or settings
        self.policies = policies or self.settings.queue_policies()
        self.clock = clock or datetime.utcnow
        self.escalation_hooks: List[EscalationHook] = []

    # Submission

    def policy(self, queue_name: str) -> QueuePolicy:
        """Policy for a queue; unknown names are rejected."""
        if queue_name not in self.policies:
            raise UnknownQueueError(queue_name)
        return self.policies[queue_name]

    def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        priority: str = "normal",
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        client_id: Optional[str] = None,
        parent_job_id: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> Job:
        """
        Add a job to a stage queue.

        Args:
            queue_name: One of the five stage queues
            payload: Stage-specific job payload
            priority: urgent, high, normal or low
            delay_ms: Delay before the job becomes eligible
            max_attempts: Override of the queue's default attempt limit
            client_id: Owning client (defaults to payload["clientId"])
            parent_job_id: Job whose completion produced this one
            db: Join the caller's transaction instead of committing

        Returns:
            The queued Job

        Raises:
            UnknownQueueError: queue_name is not a stage queue
            PayloadValidationError: Invalid payload or options
        """
        policy = self.policy(queue_name)

        if not isinstance(payload, dict):
            raise PayloadValidationError("Job payload must be an object")
        if priority not in PRIORITY_RANKS:
            raise PayloadValidationError(f"Unknown priority: {priority}")
        if delay_ms is None:
            delay_ms = 0
        if delay_ms < 0:
            raise PayloadValidationError("delayMs must not be negative")
        if max_attempts is not None and max_attempts < 1:
            raise PayloadValidationError("maxAttempts must be at least 1")

        now = self.clock()
        job = Job(
            job_id=new_id(),
            queue=queue_name,
            client_id=client_id or payload.get("clientId"),
            payload=dict(payload),
            status="queued",
            priority=priority,
            priority_rank=PRIORITY_RANKS[priority],
            attempt_count=0,
            max_attempts=max_attempts or policy.max_attempts,
            next_run_at=now + timedelta(milliseconds=delay_ms),
            created_at=now,
            updated_at=now,
            error_history=[],
            parent_job_id=parent_job_id,
            awaiting_callback=False,
        )

        if db is not None:
            db.add(job)
            db.flush()
        else:
            db = self.session_factory()
            try:
                db.add(job)
                db.commit()
                db.refresh(job)
                db.expunge(job)
            finally:
                db.close()

        logger.info(
            f"{queue_name.replace('-', '_')}_queued: job {job.job_id} "
            f"(client: {job.client_id}, priority: {priority}, delay: {delay_ms}ms)"
        )
        return job

    def find_active_job(self, client_id: str, queue_name: str, db: Session) -> Optional[Job]:
        """Queued or running job for a (client, queue) pair."""
        return (
            db.query(Job)
            .filter(
                Job.client_id == client_id,
                Job.queue == queue_name,
                Job.status.in_(ACTIVE_STATUSES),
            )
            .first()
        )

    # Dispatch

    def running_count(self, queue_name: str, db: Session) -> int:
        """Running jobs holding a worker slot (callback waits hold none)."""
        return (
            db.query(func.count(Job.job_id))
            .filter(
                Job.queue == queue_name,
                Job.status == "running",
                Job.awaiting_callback.is_(False),
            )
            .scalar()
        )

    def claim_next(self, queue_name: str, db: Session) -> Optional[Job]:
        """
        Claim the highest-priority ready job of a queue.

        Ready means queued with next_run_at in the past. Ties on priority are
        broken by creation time. The claim is a compare-and-swap on the
        queued status, so a job is claimed by exactly one worker.
        """
        self.policy(queue_name)
        now = self.clock()

        candidate = (
            db.query(Job.job_id)
            .filter(
                Job.queue == queue_name,
                Job.status == "queued",
                Job.next_run_at <= now,
                Job.attempt_count < Job.max_attempts,
            )
            .order_by(Job.priority_rank.desc(), Job.created_at, Job.job_id)
            .with_for_update(skip_locked=True)
            .first()
        )
        if candidate is None:
            db.rollback()
            return None

        job_id = candidate[0]
        result = db.execute(
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == "queued",
                Job.attempt_count < Job.max_attempts,
            )
            .values(
                status="running",
                attempt_count=Job.attempt_count + 1,
                started_at=now,
                updated_at=now,
                awaiting_callback=False,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()

        if result.rowcount != 1:
            logger.info(f"Job {job_id} was claimed by another worker")
            return None

        job = db.get(Job, job_id, populate_existing=True)
        logger.info(f"Claimed {queue_name} job {job_id} (attempt {job.attempt_count}/{job.max_attempts})")
        return job

    def execute(self, job_id: str) -> str:
        """
        Run the stage processor for a claimed job.

        Never raises: processor errors are classified and routed to the
        retry decision.

        Returns:
            Outcome: completed, deferred, retrying, failed or skipped
        """
        db = self.session_factory()
        claimed_attempt = None
        try:
            job = db.get(Job, job_id)
            if job is None or job.status != "running" or job.awaiting_callback:
                logger.warning(f"Job {job_id} is not runnable, skipping")
                return "skipped"

            claimed_attempt = job.attempt_count
            processor = self._build_processor(job.queue, db)
            result = processor.execute(job)

            if result.deferred:
                return self._defer(db, job, result, claimed_attempt)
            return self._complete(db, job, processor, result.output, claimed_attempt)

        except Exception as e:
            db.rollback()
            logger.error(f"Job {job_id} failed: {e}", exc_info=True)
            try:
                return self._record_failure(db, job_id, e, claimed_attempt)
            except Exception as record_error:
                db.rollback()
                logger.error(f"Could not record failure of job {job_id}: {record_error}", exc_info=True)
                return "skipped"
        finally:
            db.close()

    # Outcomes

    def _complete(
        self,
        db: Session,
        job: Job,
        processor: BaseProcessor,
        output: Dict[str, Any],
        claimed_attempt: int,
    ) -> str:
        """Mark a job completed and enqueue its successors in one transaction."""
        now = self.clock()
        result = db.execute(
            update(Job)
            .where(
                Job.job_id == job.job_id,
                Job.status == "running",
                Job.attempt_count == claimed_attempt,
            )
            .values(
                status="completed",
                output=output,
                completed_at=now,
                updated_at=now,
                awaiting_callback=False,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            logger.warning(f"Job {job.job_id} changed while running, discarding its result")
            return "skipped"

        for successor in processor.successors(job, output):
            child = self.enqueue(
                successor.queue,
                successor.payload,
                priority=successor.priority,
                parent_job_id=job.job_id,
                db=db,
            )
            logger.info(f"job_chained: {job.queue} job {job.job_id} -> {child.queue} job {child.job_id}")

        db.commit()
        logger.info(f"Job {job.job_id} completed")
        return "completed"

    def _defer(self, db: Session, job: Job, result: StageResult, claimed_attempt: int) -> str:
        """Keep a job running while its remote work finishes asynchronously."""
        now = self.clock()
        update_result = db.execute(
            update(Job)
            .where(
                Job.job_id == job.job_id,
                Job.status == "running",
                Job.attempt_count == claimed_attempt,
            )
            .values(
                awaiting_callback=True,
                external_ref=result.external_ref,
                output=result.output,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if update_result.rowcount != 1:
            db.rollback()
            logger.warning(f"Job {job.job_id} changed while running, not deferring")
            return "skipped"

        db.commit()
        logger.info(f"Job {job.job_id} awaiting callback (remote ref: {result.external_ref})")
        return "deferred"

    def find_callback_job(self, reference: str, db: Session) -> Optional[Job]:
        """
        Resolve the job a remote callback refers to.

        Remote services report their own job id, stored as external_ref when
        the job was deferred; our job_id is accepted as well.
        """
        job = (
            db.query(Job)
            .filter(Job.external_ref == reference)
            .order_by(Job.awaiting_callback.desc(), Job.created_at.desc())
            .first()
        )
        if job is None:
            job = db.get(Job, reference)
        return job

    def resume(self, job_id: str, results: Dict[str, Any]) -> Optional[str]:
        """
        Complete a job that was waiting on an asynchronous callback.

        `job_id` is either the remote reference or our own job id.

        Returns:
            None if the job does not exist, 'ignored' if it is not awaiting a
            callback, otherwise the outcome of completing or failing it
        """
        db = self.session_factory()
        try:
            job = self.find_callback_job(job_id, db)
            if job is None:
                return None
            job_id = job.job_id
            if job.status != "running" or not job.awaiting_callback:
                logger.info(f"Job {job_id} is not awaiting a callback (status: {job.status})")
                return "ignored"

            claimed_attempt = job.attempt_count
            try:
                processor = self._build_processor(job.queue, db)
                result = processor.resume(job, results)
            except Exception as e:
                db.rollback()
                logger.error(f"Job {job_id} callback could not be applied: {e}", exc_info=True)
                return self._record_failure(db, job_id, e, claimed_attempt)

            return self._complete(db, job, processor, result.output, claimed_attempt)
        finally:
            db.close()

    def fail(self, job_id: str, error: Exception) -> Optional[str]:
        """
        Report a remote failure for a job awaiting a callback.

        The failure goes through the normal retry and backoff decision.
        """
        db = self.session_factory()
        try:
            job = self.find_callback_job(job_id, db)
            if job is None:
                return None
            if job.status != "running" or not job.awaiting_callback:
                logger.info(f"Job {job.job_id} is not awaiting a callback (status: {job.status})")
                return "ignored"
            return self._record_failure(db, job.job_id, error, job.attempt_count)
        finally:
            db.close()

    def _record_failure(
        self,
        db: Session,
        job_id: str,
        error: BaseException,
        expected_attempt: Optional[int],
    ) -> str:
        job = db.get(Job, job_id, populate_existing=True)
        if job is None or job.status != "running":
            return "skipped"
        if expected_attempt is not None and job.attempt_count != expected_attempt:
            return "skipped"

        outcome = self._apply_failure(db, job, error)
        db.commit()

        if outcome == "failed":
            self._escalate(db.get(Job, job_id, populate_existing=True))
        return outcome

    def _apply_failure(self, db: Session, job: Job, error: BaseException) -> str:
        """
        Decide retry or permanent failure for a running job.

        Retryable errors with attempts left re-queue the job with
        next_run_at = now + backoff_base * 2 ** attempt_count. Everything
        else marks it failed. Every failure is appended to error_history.
        The caller commits.
        """
        now = self.clock()
        policy = self.policy(job.queue)
        classification = classify_error(error)
        error_class = error_class_of(error)

        history = list(job.error_history or [])
        history.append(
            {
                "attempt": job.attempt_count,
                "error": str(error),
                "errorClass": error_class,
                "classification": classification,
                "at": now.isoformat(),
            }
        )

        values = {
            "last_error": str(error),
            "error_class": error_class,
            "error_history": history,
            "awaiting_callback": False,
            "updated_at": now,
        }

        if classification == RETRYABLE and job.attempt_count < job.max_attempts:
            delay = policy.backoff_base_seconds * 2 ** job.attempt_count
            values.update(status="queued", next_run_at=now + timedelta(seconds=delay))
            outcome = "retrying"
        else:
            values.update(status="failed", completed_at=now, escalated_at=now)
            outcome = "failed"

        result = db.execute(
            update(Job)
            .where(
                Job.job_id == job.job_id,
                Job.status == "running",
                Job.attempt_count == job.attempt_count,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return "skipped"

        if outcome == "retrying":
            logger.warning(
                f"Job {job.job_id} attempt {job.attempt_count}/{job.max_attempts} failed "
                f"({error_class}), retrying in {delay:.0f}s"
            )
        else:
            logger.critical(
                f"job_escalated: {job.queue} job {job.job_id} failed permanently after "
                f"{job.attempt_count}/{job.max_attempts} attempts ({error_class}, {classification}): {error}"
            )
        return outcome

    def _escalate(self, job: Job):
        """Run escalation hooks for a permanently failed job."""
        for hook in self.escalation_hooks:
            try:
                hook(job)
            except Exception as e:
                logger.error(f"Escalation hook {hook!r} failed for job {job.job_id}: {e}", exc_info=True)

    # Administration

    def retry_job(self, job_id: str) -> Job:
        """Re-enqueue a failed job as a new job with the same payload."""
        db = self.session_factory()
        try:
            job = self.get_job(job_id, db)
            if job.status != "failed":
                raise BusinessRuleError(f"Job {job_id} is {job.status}; only failed jobs can be retried")

            retried = self.enqueue(
                job.queue,
                dict(job.payload or {}),
                priority=job.priority,
                max_attempts=job.max_attempts,
                client_id=job.client_id,
                parent_job_id=job.job_id,
                db=db,
            )
            db.commit()
            db.refresh(retried)
            db.expunge(retried)
            logger.info(f"Job {job_id} manually retried as {retried.job_id}")
            return retried
        finally:
            db.close()

    def get_job(self, job_id: str, db: Session) -> Job:
        """Load a job or raise NotFoundError."""
        job = db.query(Job).filter(Job.job_id == job_id).first()
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    # Maintenance

    def reap_stale_jobs(self) -> List[str]:
        """
        Fail running jobs whose worker vanished or whose callback never came.

        Reaped jobs go through the normal retry decision as transient failures.

        Returns:
            Ids of reaped jobs
        """
        now = self.clock()
        stale_cutoff = now - timedelta(seconds=self.settings.STALE_JOB_TIMEOUT_SECONDS)
        callback_cutoff = now - timedelta(seconds=self.settings.CALLBACK_TIMEOUT_SECONDS)

        db = self.session_factory()
        try:
            stale_jobs = (
                db.query(Job)
                .filter(
                    Job.status == "running",
                    or_(
                        and_(Job.awaiting_callback.is_(False), Job.started_at < stale_cutoff),
                        and_(Job.awaiting_callback.is_(True), Job.started_at < callback_cutoff),
                    ),
                )
                .all()
            )

            reaped = []
            escalated = []
            for job in stale_jobs:
                if job.awaiting_callback:
                    error = TransientError(
                        f"No callback received within {self.settings.CALLBACK_TIMEOUT_SECONDS}s"
                    )
                else:
                    error = TransientError(
                        f"Job did not finish within {self.settings.STALE_JOB_TIMEOUT_SECONDS}s"
                    )

                outcome = self._apply_failure(db, job, error)
                db.commit()
                if outcome == "skipped":
                    continue
                reaped.append(job.job_id)
                if outcome == "failed":
                    escalated.append(job.job_id)

            for job_id in escalated:
                self._escalate(db.get(Job, job_id, populate_existing=True))

            if reaped:
                logger.warning(f"Reaped {len(reaped)} stale jobs")
            return reaped
        finally:
            db.close()

    def prune_finished(self) -> int:
        """
        Delete finished jobs beyond each queue's keep counts or retention age.

        Returns:
            Number of jobs deleted
        """
        now = self.clock()
        cutoff = now - timedelta(hours=self.settings.JOB_RETENTION_HOURS)

        db = self.session_factory()
        try:
            deleted = 0
            for queue_name, policy in self.policies.items():
                for status, keep in (("completed", policy.keep_completed), ("failed", policy.keep_failed)):
                    rows = (
                        db.query(Job.job_id, Job.completed_at)
                        .filter(Job.queue == queue_name, Job.status == status)
                        .order_by(Job.completed_at.desc(), Job.created_at.desc())
                        .all()
                    )
                    doomed = [
                        job_id
                        for index, (job_id, completed_at) in enumerate(rows)
                        if index >= keep or (completed_at is not None and completed_at < cutoff)
                    ]
                    if doomed:
                        deleted += (
                            db.query(Job)
                            .filter(Job.job_id.in_(doomed))
                            .delete(synchronize_session=False)
                        )
            db.commit()

            if deleted:
                logger.info(f"Pruned {deleted} finished jobs")
            return deleted
        finally:
            db.close()

    def get_queue_stats(self, db: Optional[Session] = None) -> Dict[str, Dict[str, int]]:
        """Per-queue job counts: queued (ready), delayed, running, completed, failed."""
        own_session = db is None
        if own_session:
            db = self.session_factory()
        try:
            now = self.clock()
            stats = {
                queue_name: {"queued": 0, "delayed": 0, "running": 0, "completed": 0, "failed": 0}
                for queue_name in self.policies
            }

            rows = (
                db.query(Job.queue, Job.status, func.count(Job.job_id))
                .group_by(Job.queue, Job.status)
                .all()
            )
            for queue_name, status, count in rows:
                if queue_name in stats and status in stats[queue_name]:
                    stats[queue_name][status] = count

            delayed_rows = (
                db.query(Job.queue, func.count(Job.job_id))
                .filter(Job.status == "queued", Job.next_run_at > now)
                .group_by(Job.queue)
                .all()
            )
            for queue_name, count in delayed_rows:
                if queue_name in stats:
                    stats[queue_name]["delayed"] = count
                    stats[queue_name]["queued"] -= count

            return stats
        finally:
            if own_session:
                db.close()

    def check_queue_health(self) -> List[str]:
        """Log and return alerts for queues with too many waiting or failed jobs."""
        alerts = []
        for queue_name, counts in self.get_queue_stats().items():
            waiting = counts["queued"] + counts["delayed"]
            if waiting > self.settings.QUEUE_WAITING_ALERT:
                alerts.append(f"Queue {queue_name} has {waiting} waiting jobs")
            if counts["failed"] > self.settings.QUEUE_FAILED_ALERT:
                alerts.append(f"Queue {queue_name} has {counts['failed']} failed jobs")

        for alert in alerts:
            logger.warning(alert)
        return alerts

    def _build_processor(self, queue_name: str, db: Session) -> BaseProcessor:
        if queue_name not in self.processors:
            raise UnknownQueueError(queue_name)
        processor_class = self.processors[queue_name]
        return processor_class(db, self.invokers, self.workflow, self.settings)


def admin_alert_hook(queue_manager: QueueManager, recipient: str) -> EscalationHook:
    """Escalation hook that emails an administrator about a failed job."""

    def notify_admin(job: Job):
        # A failing notification must not page about itself
        if job.queue == NOTIFICATIONS or not job.client_id:
            return
        queue_manager.enqueue(
            NOTIFICATIONS,
            {
                "clientId": job.client_id,
                "notificationType": "error_alert",
                "recipient": recipient,
                "detail": f"{job.queue} job {job.job_id}: {job.last_error}",
            },
            priority="urgent",
            parent_job_id=job.job_id,
        )

    return notify_admin

