"""Client for the remote multi-agent AI analysis service."""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from orchestrator.config import settings
from orchestrator.errors import RETRYABLE_STATUS_CODES, ExternalServiceError, TransientError

logger = logging.getLogger(__name__)


def _hash_text(text: str) -> str:
    """Hash text using SHA256."""
    return hashlib.sha256(text.encode()).hexdigest()


def raise_for_remote_status(response: httpx.Response, service: str) -> None:
    """Translate an error response into the job error taxonomy."""
    if response.status_code < 400:
        return
    if response.status_code in RETRYABLE_STATUS_CODES:
        logger.warning(f"Retryable error {response.status_code} from {service}")
        raise TransientError(f"{service} returned {response.status_code}")
    raise ExternalServiceError(f"{service} rejected request: {response.status_code} {response.text[:200]}")


class AIServiceClient:
    """Client for the AI analysis service with timeouts and connection retries."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize the AI service client."""
        self.base_url = (base_url or settings.AI_SERVICE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AI_SERVICE_API_KEY
        self.timeout = timeout or settings.AI_CALL_TIMEOUT_SECONDS

    def _build_headers(self) -> Dict[str, str]:
        """Build HTTP headers for the AI service."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(settings.HTTP_CALL_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a JSON body to the service.

        Args:
            path: Endpoint path below the base URL
            body: JSON payload

        Returns:
            Decoded JSON response

        Raises:
            TransientError: On timeout, 429 or 5xx
            ExternalServiceError: On other 4xx responses
            httpx.TransportError: When the connection keeps failing
        """
        request_hash = _hash_text(json.dumps(body, sort_keys=True, default=str))
        logger.info(f"AI service request {path}, hash: {request_hash[:16]}")

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}{path}",
                    headers=self._build_headers(),
                    json=body,
                )
        except httpx.TimeoutException as e:
            raise TransientError(f"AI service call {path} timed out after {self.timeout}s") from e

        raise_for_remote_status(response, "AI service")
        return response.json()

    def analyze_responses(
        self,
        client: Dict[str, Any],
        form_response: Dict[str, Any],
        callback_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Submit form responses for process identification.

        `callback_id` is our job id; the AI webhook may report it as `jobId`
        in place of the remote job id.

        Returns either completed results
        ``{"status": "completed", "identifiedProcesses": [...], "confidenceScores": {...}, "qualityScore": 0.9}``
        or an accepted asynchronous job ``{"status": "accepted", "jobId": "..."}`` whose
        outcome arrives through the AI webhook.
        """
        body = {"client": client, "formResponse": form_response}
        if callback_id:
            body["callbackId"] = callback_id
        return self._post("/analyses", body)

    def draft_sop(self, process: Dict[str, Any], client: Dict[str, Any]) -> Dict[str, Any]:
        """Draft an SOP for one identified process."""
        return self._post("/sops", {"process": process, "client": client})

    def draft_proposal(self, client: Dict[str, Any], sops: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Draft a commercial proposal from approved SOPs."""
        return self._post("/proposals", {"client": client, "sops": sops})
