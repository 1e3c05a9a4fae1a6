"""Document renderer client."""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from orchestrator.config import settings
from orchestrator.errors import TransientError
from orchestrator.services.ai_client import raise_for_remote_status

logger = logging.getLogger(__name__)


class DocumentRenderer:
    """Renders SOPs, proposals and reports to PDF through the rendering service."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize the renderer client."""
        self.base_url = (base_url or settings.RENDERER_URL).rstrip("/")
        self.timeout = timeout or settings.RENDER_TIMEOUT_SECONDS

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(settings.HTTP_CALL_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def render(
        self,
        artifact_type: str,
        artifact_id: str,
        context: Dict[str, Any],
        template_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Render an artifact.

        Args:
            artifact_type: 'sop', 'proposal' or 'report'
            artifact_id: Id of the artifact row
            context: Artifact content passed to the template
            template_id: Optional template override

        Returns:
            Dict with filePath, fileSize and pageCount
        """
        logger.info(f"Rendering {artifact_type} {artifact_id}")
        body = {
            "type": artifact_type,
            "entityId": artifact_id,
            "templateId": template_id,
            "context": context,
        }

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(f"{self.base_url}/render", json=body)
        except httpx.TimeoutException as e:
            raise TransientError(f"Render of {artifact_type} {artifact_id} timed out") from e

        raise_for_remote_status(response, "Renderer")
        return response.json()
