"""Client workflow routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from orchestrator.errors import NotFoundError
from orchestrator.models.client import Client
from orchestrator.routes.deps import get_db, get_runtime
from orchestrator.runtime import Runtime
from orchestrator.schemas.workflow import TransitionRequest, TransitionResponse, WorkflowResponse
from orchestrator.workflow import verify_history

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clients", tags=["clients"])


def _workflow_response(runtime: Runtime, db: Session, client_id: str) -> WorkflowResponse:
    client = db.query(Client).filter(Client.id == client_id).first()
    if client is None:
        raise NotFoundError("Client", client_id)

    transitions = runtime.workflow.history(db, client_id)
    return WorkflowResponse(
        client_id=client.id,
        current_status=client.current_status,
        status_version=client.status_version,
        history_consistent=verify_history(db, client_id),
        transitions=[TransitionResponse.model_validate(t) for t in transitions],
    )


@router.get("/{client_id}/workflow", response_model=WorkflowResponse)
def get_workflow(
    client_id: str,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Get a client's current status and transition history."""
    return _workflow_response(runtime, db, client_id)


@router.post("/{client_id}/transitions", response_model=WorkflowResponse, status_code=201)
def request_transition(
    client_id: str,
    data: TransitionRequest,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Apply a manual status change, e.g. proposal sent or client closed."""
    runtime.workflow.request_transition(
        db,
        client_id,
        data.expected_status,
        data.to_status,
        data.trigger_event,
        actor=data.actor,
        context=data.context,
        administrative=data.administrative,
    )
    db.commit()

    logger.info(f"Manual transition for client {client_id} to {data.to_status.value} by {data.actor}")
    return _workflow_response(runtime, db, client_id)
