"""Workflow state machine for client pipeline status."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from orchestrator.errors import IllegalTransitionError, NotFoundError, StaleStateError
from orchestrator.models.client import Client, WorkflowTransition

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class WorkflowStatus(str, Enum):
    """Client position in the pipeline, in canonical order."""

    CREATED = "created"
    FORM_SENT = "form_sent"
    RESPONSES_RECEIVED = "responses_received"
    PROCESSING_AI = "processing_ai"
    SOPS_GENERATED = "sops_generated"
    PROPOSAL_READY = "proposal_ready"
    PROPOSAL_SENT = "proposal_sent"
    CLOSED = "closed"


CANONICAL_SEQUENCE: List[WorkflowStatus] = list(WorkflowStatus)


def _build_allowed_transitions() -> Dict[WorkflowStatus, frozenset]:
    allowed = {}
    for index, status in enumerate(CANONICAL_SEQUENCE):
        if status is WorkflowStatus.CLOSED:
            allowed[status] = frozenset()
            continue
        targets = {CANONICAL_SEQUENCE[index + 1], WorkflowStatus.CLOSED}
        allowed[status] = frozenset(targets)
    return allowed


# One step forward, or straight to closed; closed is terminal
ALLOWED_TRANSITIONS = _build_allowed_transitions()


def position(status) -> int:
    """Index of a status in the canonical sequence."""
    return CANONICAL_SEQUENCE.index(WorkflowStatus(status))


def previous_status(status) -> Optional[WorkflowStatus]:
    """Status immediately before `status` in the canonical sequence."""
    index = position(status)
    if index == 0:
        return None
    return CANONICAL_SEQUENCE[index - 1]


def is_allowed(from_status, to_status) -> bool:
    """Whether the allowed-transitions table permits the change."""
    return WorkflowStatus(to_status) in ALLOWED_TRANSITIONS[WorkflowStatus(from_status)]


class WorkflowStateMachine:
    """Authoritative writer of client status and its transition log.

    Status changes are compare-and-swap updates conditioned on the status the
    caller expects, so concurrent workers on different processes cannot apply
    transitions out of order. The transition row is written in the same
    transaction; callers own the commit.
    """

    def request_transition(
        self,
        db: Session,
        client_id: str,
        expected_current,
        new_status,
        trigger_event: str,
        actor: str = SYSTEM_ACTOR,
        context: Optional[Dict[str, Any]] = None,
        administrative: bool = False,
    ) -> WorkflowTransition:
        """
        Move a client from `expected_current` to `new_status`.

        Args:
            db: Session whose transaction the change joins
            client_id: Client to update
            expected_current: Status the caller read before deciding
            new_status: Target status
            trigger_event: Event that caused the change
            actor: 'system' or the id of the user acting
            context: Free-form data stored with the transition
            administrative: Bypass the allowed-transitions table (user actors only;
                closed stays terminal)

        Returns:
            The appended WorkflowTransition

        Raises:
            IllegalTransitionError: Transition not allowed and not administrative
            StaleStateError: Persisted status differs from expected_current
            NotFoundError: Client does not exist
        """
        expected = WorkflowStatus(expected_current)
        target = WorkflowStatus(new_status)

        if expected is WorkflowStatus.CLOSED:
            raise IllegalTransitionError(expected.value, target.value)

        bypass = administrative and actor != SYSTEM_ACTOR
        if not bypass and not is_allowed(expected, target):
            raise IllegalTransitionError(expected.value, target.value)

        result = db.execute(
            update(Client)
            .where(Client.id == client_id, Client.current_status == expected.value)
            .values(
                current_status=target.value,
                status_version=Client.status_version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )

        if result.rowcount != 1:
            actual = db.query(Client.current_status).filter(Client.id == client_id).scalar()
            if actual is None:
                raise NotFoundError("Client", client_id)
            raise StaleStateError(client_id, expected.value, actual)

        version = db.query(Client.status_version).filter(Client.id == client_id).scalar()
        transition = WorkflowTransition(
            client_id=client_id,
            sequence=version,
            from_status=expected.value,
            to_status=target.value,
            trigger_event=trigger_event,
            actor=actor,
            context=context or {},
        )
        db.add(transition)
        db.flush()

        logger.info(
            f"Client {client_id} status {expected.value} -> {target.value} "
            f"(event: {trigger_event}, actor: {actor})"
        )
        return transition

    def advance(
        self,
        db: Session,
        client_id: str,
        new_status,
        trigger_event: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[WorkflowTransition]:
        """
        Advance a client one canonical step to `new_status`.

        No-op when the client is already at or past `new_status`, which keeps
        retried stages idempotent and never reverts a client.

        Raises:
            IllegalTransitionError: Client is more than one step behind `new_status`
        """
        target = WorkflowStatus(new_status)
        current = self.current_status(db, client_id)

        if position(current) >= position(target):
            logger.info(
                f"Client {client_id} already at {current.value}, skipping advance to {target.value}"
            )
            return None

        expected = previous_status(target)
        if current is not expected:
            raise IllegalTransitionError(current.value, target.value)

        return self.request_transition(
            db,
            client_id,
            expected,
            target,
            trigger_event,
            context=context,
        )

    def current_status(self, db: Session, client_id: str) -> WorkflowStatus:
        """Read the persisted status, bypassing the session identity map."""
        status = db.query(Client.current_status).filter(Client.id == client_id).scalar()
        if status is None:
            raise NotFoundError("Client", client_id)
        return WorkflowStatus(status)

    def history(self, db: Session, client_id: str) -> List[WorkflowTransition]:
        """Transitions for a client in the order they were applied."""
        return (
            db.query(WorkflowTransition)
            .filter(WorkflowTransition.client_id == client_id)
            .order_by(WorkflowTransition.sequence)
            .all()
        )


def replay(transitions: List[WorkflowTransition], initial=WorkflowStatus.CREATED) -> List[str]:
    """Status sequence reconstructed from a transition log."""
    statuses = [WorkflowStatus(initial).value]
    for transition in transitions:
        statuses.append(transition.to_status)
    return statuses


def verify_history(db: Session, client_id: str) -> bool:
    """Check the log is contiguous and ends at the client's current status."""
    client = db.query(Client).filter(Client.id == client_id).first()
    if client is None:
        raise NotFoundError("Client", client_id)

    transitions = WorkflowStateMachine().history(db, client_id)
    status = WorkflowStatus.CREATED.value
    for expected_sequence, transition in enumerate(transitions, start=1):
        if transition.sequence != expected_sequence or transition.from_status != status:
            return False
        status = transition.to_status
    return status == client.current_status
