"""Notification sender client."""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from orchestrator.config import settings
from orchestrator.errors import TransientError
from orchestrator.services.ai_client import raise_for_remote_status

logger = logging.getLogger(__name__)


class NotificationSender:
    """Sends email or SMS notifications through the delivery provider."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize the sender."""
        self.base_url = (base_url or settings.MAILER_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.MAILER_API_KEY
        self.sender = settings.MAILER_FROM
        self.timeout = timeout or settings.NOTIFY_TIMEOUT_SECONDS

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(settings.HTTP_CALL_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def send(self, recipient: str, subject: str, message: str, method: str = "email") -> Dict[str, Any]:
        """
        Deliver one message.

        Returns:
            Provider response with messageId, provider and success
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/messages",
                    headers=headers,
                    json={
                        "from": self.sender,
                        "to": recipient,
                        "subject": subject,
                        "body": message,
                        "channel": method,
                    },
                )
        except httpx.TimeoutException as e:
            raise TransientError(f"Notification to {recipient} timed out") from e

        raise_for_remote_status(response, "Mail provider")
        result = response.json()
        logger.info(f"Notification delivered to {recipient}, message id {result.get('messageId')}")
        return result
