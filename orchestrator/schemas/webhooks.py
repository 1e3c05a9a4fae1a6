"""Inbound webhook payload schemas."""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter


class WebhookPayload(BaseModel):
    """Base for webhook bodies; wire names are camelCase."""

    model_config = ConfigDict(populate_by_name=True)


def _field_value(value: Any, alias: str, name: str):
    if isinstance(value, dict):
        return value.get(alias, value.get(name))
    return getattr(value, name, None)


# Forms vendor
class FormAnswer(WebhookPayload):
    question_id: Optional[str] = Field(default=None, alias="questionId")
    question: Optional[str] = None
    answer: Any = None


class FormEventMetadata(WebhookPayload):
    completion_time: int = Field(
        default=0, validation_alias=AliasChoices("completionTimeMinutes", "completionTime", "completion_time")
    )
    submitted_at: Optional[datetime] = Field(default=None, alias="submittedAt")
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


class FormEventData(WebhookPayload):
    responses: List[FormAnswer] = Field(default_factory=list)
    metadata: FormEventMetadata = Field(default_factory=FormEventMetadata)


class FormEventBase(WebhookPayload):
    event_id: str = Field(alias="eventId", min_length=1)
    form_id: str = Field(alias="formId", min_length=1)
    data: FormEventData = Field(default_factory=FormEventData)


class FormStartedEvent(FormEventBase):
    """Respondent opened the form."""

    event_type: Literal["form.started"] = Field(alias="eventType")


class FormUpdatedEvent(FormEventBase):
    """Respondent saved partial answers."""

    event_type: Literal["form.updated"] = Field(alias="eventType")


class FormCompletedEvent(FormEventBase):
    """Respondent submitted the form."""

    event_type: Literal["form.completed"] = Field(alias="eventType")
    submission_id: str = Field(alias="submissionId", min_length=1)


def _form_event_type(value: Any):
    return _field_value(value, "eventType", "event_type")


FormEvent = Annotated[
    Union[
        Annotated[FormStartedEvent, Tag("form.started")],
        Annotated[FormUpdatedEvent, Tag("form.updated")],
        Annotated[FormCompletedEvent, Tag("form.completed")],
    ],
    Discriminator(_form_event_type),
]


# AI service callbacks
class AIError(WebhookPayload):
    message: str = "AI processing failed"
    details: Dict[str, Any] = Field(default_factory=dict)


class AIEventBase(WebhookPayload):
    event_id: Optional[str] = Field(default=None, alias="eventId")
    job_id: str = Field(alias="jobId", min_length=1)


class AICompletedEvent(AIEventBase):
    """Asynchronous analysis finished with results."""

    status: Literal["completed"]
    results: Dict[str, Any] = Field(default_factory=dict)


class AIFailedEvent(AIEventBase):
    """Asynchronous analysis failed remotely."""

    status: Literal["failed"]
    error: AIError = Field(default_factory=AIError)


def _ai_event_status(value: Any):
    return _field_value(value, "status", "status")


AIEvent = Annotated[
    Union[
        Annotated[AICompletedEvent, Tag("completed")],
        Annotated[AIFailedEvent, Tag("failed")],
    ],
    Discriminator(_ai_event_status),
]


# Mail provider
class EmailDeliveryEvent(WebhookPayload):
    """Delivery status reported by the mail provider."""

    message_id: str = Field(alias="messageId", min_length=1)
    event: str = Field(min_length=1)
    timestamp: Optional[str] = None
    recipient: Optional[str] = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook senders."""

    success: bool = True
    message: str
    event_key: str
    duplicate: bool = False
    orphaned: bool = False


FORM_EVENT_ADAPTER = TypeAdapter(FormEvent)
AI_EVENT_ADAPTER = TypeAdapter(AIEvent)


def union_members(annotated_union) -> List[type]:
    """Model classes of an Annotated discriminated union."""
    union = get_args(annotated_union)[0]
    return [get_args(member)[0] for member in get_args(union)]
