"""SQLAlchemy ORM models."""

from orchestrator.models.artifacts import CommercialProposal, GeneratedSOP, RenderedDocument
from orchestrator.models.client import Client, WorkflowTransition
from orchestrator.models.form import FormResponse, GeneratedForm
from orchestrator.models.job import Job
from orchestrator.models.notification import Notification
from orchestrator.models.process import IdentifiedProcess
from orchestrator.models.webhook_event import WebhookEvent

__all__ = [
    "Client",
    "WorkflowTransition",
    "GeneratedForm",
    "FormResponse",
    "Job",
    "IdentifiedProcess",
    "GeneratedSOP",
    "CommercialProposal",
    "RenderedDocument",
    "Notification",
    "WebhookEvent",
]
