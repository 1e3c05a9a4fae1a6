"""Webhook receiver routes."""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from orchestrator.routes.deps import get_runtime
from orchestrator.runtime import Runtime
from orchestrator.schemas.webhooks import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/forms", response_model=WebhookAck)
def forms_webhook(
    payload: Dict[str, Any] = Body(...),
    runtime: Runtime = Depends(get_runtime),
):
    """Receive forms vendor events (started, updated, completed)."""
    return runtime.webhooks.handle_form_webhook(payload)


@router.post("/ai", response_model=WebhookAck)
def ai_webhook(
    payload: Dict[str, Any] = Body(...),
    runtime: Runtime = Depends(get_runtime),
):
    """Receive AI service completion and failure callbacks."""
    return runtime.webhooks.handle_ai_webhook(payload)


@router.post("/email", response_model=WebhookAck)
def email_webhook(
    payload: Dict[str, Any] = Body(...),
    runtime: Runtime = Depends(get_runtime),
):
    """Receive mail provider delivery events."""
    return runtime.webhooks.handle_email_webhook(payload)
