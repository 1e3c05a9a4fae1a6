"""Wiring of the engine's long-lived services."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from orchestrator.config import Settings, settings
from orchestrator.database import SessionLocal
from orchestrator.processors.base import StageInvokers
from orchestrator.processors.registry import PROCESSORS
from orchestrator.queue import QueueManager, admin_alert_hook
from orchestrator.webhooks import WebhookIngestionAdapter
from orchestrator.workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Services shared by the HTTP app and the worker."""

    session_factory: Callable
    settings: Settings
    workflow: WorkflowStateMachine
    queue_manager: QueueManager
    webhooks: WebhookIngestionAdapter


def build_runtime(
    session_factory=None,
    invokers: Optional[StageInvokers] = None,
    app_settings: Optional[Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Runtime:
    """
    Build the runtime once per process.

    Args:
        session_factory: Session factory (defaults to SessionLocal)
        invokers: External service clients (defaults to the HTTP clients)
        app_settings: Settings (defaults to the global settings)
        clock: Source of naive UTC time (defaults to datetime.utcnow)

    Returns:
        Runtime
    """
    app_settings = app_settings or settings
    session_factory = session_factory or SessionLocal
    invokers = invokers or StageInvokers.from_settings()

    workflow = WorkflowStateMachine()
    queue_manager = QueueManager(
        session_factory,
        PROCESSORS,
        invokers,
        workflow,
        app_settings=app_settings,
        clock=clock,
    )

    if app_settings.ADMIN_ALERT_EMAIL:
        queue_manager.escalation_hooks.append(admin_alert_hook(queue_manager, app_settings.ADMIN_ALERT_EMAIL))
        logger.info(f"Escalations will be emailed to {app_settings.ADMIN_ALERT_EMAIL}")

    webhooks = WebhookIngestionAdapter(
        session_factory,
        queue_manager,
        workflow,
        app_settings=app_settings,
        clock=clock,
    )

    return Runtime(
        session_factory=session_factory,
        settings=app_settings,
        workflow=workflow,
        queue_manager=queue_manager,
        webhooks=webhooks,
    )
