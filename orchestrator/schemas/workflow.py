"""Workflow-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from orchestrator.workflow import WorkflowStatus


class TransitionResponse(BaseModel):
    """One entry of a client's transition log."""

    model_config = ConfigDict(from_attributes=True)

    sequence: int
    from_status: Optional[str] = None
    to_status: str
    trigger_event: str
    actor: str
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class WorkflowResponse(BaseModel):
    """Client status with its full transition history."""

    client_id: str
    current_status: str
    status_version: int
    history_consistent: bool
    transitions: List[TransitionResponse]


class TransitionRequest(BaseModel):
    """Manual status change requested by a user."""

    model_config = ConfigDict(populate_by_name=True)

    expected_status: WorkflowStatus = Field(alias="expectedStatus")
    to_status: WorkflowStatus = Field(alias="toStatus")
    actor: str = Field(min_length=1)  # User id; 'system' cannot bypass the transition table
    trigger_event: str = Field(default="manual_transition", alias="triggerEvent")
    context: Dict[str, Any] = Field(default_factory=dict)
    administrative: bool = False
