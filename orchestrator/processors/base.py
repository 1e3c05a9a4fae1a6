"""Base stage processor and the values processors exchange with the queue manager."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from orchestrator.config import Settings
from orchestrator.errors import BusinessRuleError, NotFoundError, TransientError
from orchestrator.models.client import Client
from orchestrator.models.job import Job
from orchestrator.services.ai_client import AIServiceClient
from orchestrator.services.notifier import NotificationSender
from orchestrator.services.renderer import DocumentRenderer
from orchestrator.workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)


@dataclass
class StageInvokers:
    """External collaborators the stage processors call."""

    ai: Any
    renderer: Any
    notifier: Any

    @classmethod
    def from_settings(cls) -> "StageInvokers":
        """Build the HTTP-backed invokers from configuration."""
        return cls(
            ai=AIServiceClient(),
            renderer=DocumentRenderer(),
            notifier=NotificationSender(),
        )


@dataclass
class StageResult:
    """Outcome of a processor run.

    A deferred result means the remote work continues asynchronously and the
    job completes when its callback arrives.
    """

    output: Dict[str, Any]
    deferred: bool = False
    external_ref: Optional[str] = None


@dataclass(frozen=True)
class Successor:
    """Next-stage job to enqueue when a job completes."""

    queue: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: str = "normal"


class BaseProcessor:
    """Base class for all stage processors."""

    queue_name: str = ""

    def __init__(
        self,
        db: Session,
        invokers: StageInvokers,
        workflow: WorkflowStateMachine,
        settings: Settings,
    ):
        """Initialize base processor."""
        self.db = db
        self.invokers = invokers
        self.workflow = workflow
        self.settings = settings

    def execute(self, job: Job) -> StageResult:
        """
        Run the stage for one job.

        Args:
            job: Claimed job in 'running' status

        Returns:
            StageResult with the stage output

        Raises:
            Exception: Any failure; the queue manager classifies it
        """
        logger.info(
            f"Processor {self.__class__.__name__} running job {job.job_id} "
            f"(attempt {job.attempt_count}/{job.max_attempts})"
        )

        # Refresh database session to see recently committed data
        self.db.expire_all()

        result = self._run(dict(job.payload or {}), job)

        if not result.deferred and not self._validate(result.output):
            raise TransientError(f"{self.__class__.__name__} produced invalid output")

        logger.info(f"Processor {self.__class__.__name__} succeeded for job {job.job_id}")
        return result

    def resume(self, job: Job, results: Dict[str, Any]) -> StageResult:
        """Finish a deferred job from its callback results."""
        self.db.expire_all()

        result = self._resume(job, results)

        if not self._validate(result.output):
            raise TransientError(f"{self.__class__.__name__} produced invalid output")

        logger.info(f"Processor {self.__class__.__name__} resumed job {job.job_id}")
        return result

    def _resume(self, job: Job, results: Dict[str, Any]) -> StageResult:
        """Apply callback results (only for stages that defer)."""
        raise BusinessRuleError(f"{self.__class__.__name__} does not accept callbacks")

    def successors(self, job: Job, output: Dict[str, Any]) -> List[Successor]:
        """Jobs to enqueue after this one completes."""
        return []

    def _run(self, payload: Dict[str, Any], job: Job) -> StageResult:
        """
        Run the stage logic (to be implemented by subclasses).

        Args:
            payload: Job payload
            job: The job being executed

        Returns:
            StageResult
        """
        raise NotImplementedError

    def _validate(self, output: Dict[str, Any]) -> bool:
        """
        Validate the stage output (to be overridden by subclasses).

        Args:
            output: Stage output

        Returns:
            True if valid, False otherwise
        """
        return True

    def _get_client(self, client_id: str) -> Client:
        client = self.db.query(Client).filter(Client.id == client_id).first()
        if client is None:
            raise NotFoundError("Client", client_id)
        return client


def client_summary(client: Client) -> Dict[str, Any]:
    """Client fields sent to remote services."""
    return {
        "id": client.id,
        "name": client.name,
        "contactEmail": client.contact_email,
        "status": client.current_status,
    }
