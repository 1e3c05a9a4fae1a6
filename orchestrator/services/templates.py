"""Notification subjects and message bodies."""

from typing import Optional

NOTIFICATION_TYPES = (
    "form_sent",
    "form_reminder",
    "form_completed",
    "processing_started",
    "sops_ready",
    "proposal_ready",
    "report_ready",
    "error_alert",
    "system_alert",
)

SUBJECTS = {
    "form_sent": "Your diagnostic form is ready - {client_name}",
    "form_reminder": "Reminder: complete your process diagnostic - {client_name}",
    "form_completed": "Diagnostic form completed - {client_name}",
    "processing_started": "Analysis in progress - {client_name}",
    "sops_ready": "SOPs generated and ready for review - {client_name}",
    "proposal_ready": "Commercial proposal ready - {client_name}",
    "report_ready": "Report ready - {client_name}",
    "error_alert": "Pipeline needs attention - {client_name}",
}

BODIES = {
    "form_sent": "Dear {client_name},\n\nYour diagnostic form is ready. Please complete it at your earliest convenience.",
    "form_reminder": "Dear {client_name},\n\nYou have not completed your process diagnostic yet.",
    "form_completed": "{client_name} completed the diagnostic form. The AI analysis has been queued.",
    "sops_ready": "Dear {client_name},\n\nYour standard operating procedures are ready for review.",
    "proposal_ready": "Dear {client_name},\n\nYour commercial proposal is ready for review.",
    "report_ready": "Dear {client_name},\n\nYour report is ready.",
    "error_alert": "A pipeline job for {client_name} failed permanently and needs manual intervention.",
}


def render_subject(notification_type: str, client_name: str) -> str:
    """Subject line for a notification type."""
    template = SUBJECTS.get(notification_type, "Notification - {client_name}")
    return template.format(client_name=client_name)


def render_body(
    notification_type: str,
    client_name: str,
    document_path: Optional[str] = None,
    detail: Optional[str] = None,
) -> str:
    """Message body for a notification type, with the document link and detail when given."""
    template = BODIES.get(notification_type, "Notification for {client_name}")
    body = template.format(client_name=client_name)
    if document_path:
        body += f"\n\nDocument: {document_path}"
    if detail:
        body += f"\n\nDetails: {detail}"
    return body
