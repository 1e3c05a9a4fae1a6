"""Application configuration using Pydantic Settings."""

from dataclasses import dataclass
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict

AI_PROCESSING = "ai-processing"
SOP_GENERATION = "sop-generation"
NOTIFICATIONS = "notifications"
PROPOSAL_GENERATION = "proposal-generation"
PDF_GENERATION = "pdf-generation"

STAGES = (AI_PROCESSING, SOP_GENERATION, NOTIFICATIONS, PROPOSAL_GENERATION, PDF_GENERATION)


@dataclass(frozen=True)
class QueuePolicy:
    """Scheduling and failure policy for one stage queue."""

    concurrency: int
    max_attempts: int
    backoff_base_seconds: float
    keep_completed: int
    keep_failed: int


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./orchestrator.db"

    # Queue concurrency
    QUEUE_AI_PROCESSING_CONCURRENCY: int = 2  # Rate-limited remote service
    QUEUE_SOP_GENERATION_CONCURRENCY: int = 3
    QUEUE_NOTIFICATIONS_CONCURRENCY: int = 5
    QUEUE_PROPOSAL_GENERATION_CONCURRENCY: int = 2
    QUEUE_PDF_GENERATION_CONCURRENCY: int = 3

    # Queue attempts
    QUEUE_AI_PROCESSING_ATTEMPTS: int = 3
    QUEUE_SOP_GENERATION_ATTEMPTS: int = 2
    QUEUE_NOTIFICATIONS_ATTEMPTS: int = 5
    QUEUE_PROPOSAL_GENERATION_ATTEMPTS: int = 2
    QUEUE_PDF_GENERATION_ATTEMPTS: int = 3

    # Queue backoff base (seconds, doubled per attempt)
    QUEUE_AI_PROCESSING_BACKOFF: float = 30.0
    QUEUE_SOP_GENERATION_BACKOFF: float = 60.0
    QUEUE_NOTIFICATIONS_BACKOFF: float = 10.0
    QUEUE_PROPOSAL_GENERATION_BACKOFF: float = 30.0
    QUEUE_PDF_GENERATION_BACKOFF: float = 15.0

    # Retention of finished jobs
    QUEUE_AI_PROCESSING_KEEP_COMPLETED: int = 50
    QUEUE_AI_PROCESSING_KEEP_FAILED: int = 20
    QUEUE_SOP_GENERATION_KEEP_COMPLETED: int = 50
    QUEUE_SOP_GENERATION_KEEP_FAILED: int = 20
    QUEUE_NOTIFICATIONS_KEEP_COMPLETED: int = 100
    QUEUE_NOTIFICATIONS_KEEP_FAILED: int = 50
    QUEUE_PROPOSAL_GENERATION_KEEP_COMPLETED: int = 25
    QUEUE_PROPOSAL_GENERATION_KEEP_FAILED: int = 10
    QUEUE_PDF_GENERATION_KEEP_COMPLETED: int = 30
    QUEUE_PDF_GENERATION_KEEP_FAILED: int = 15
    JOB_RETENTION_HOURS: int = 168

    # Business rules
    MIN_PROCESSES_TO_ADVANCE: int = 5

    # AI analysis service
    AI_SERVICE_URL: str = "http://localhost:8100"
    AI_SERVICE_API_KEY: str = ""
    AI_CALL_TIMEOUT_SECONDS: float = 120.0

    # Document renderer
    RENDERER_URL: str = "http://localhost:8200"
    RENDER_TIMEOUT_SECONDS: float = 60.0

    # Mail sender
    MAILER_URL: str = "http://localhost:8300"
    MAILER_API_KEY: str = ""
    MAILER_FROM: str = "no-reply@example.com"
    NOTIFY_TIMEOUT_SECONDS: float = 30.0
    CONSULTANT_EMAIL: str = ""  # Receives form completion notices
    ADMIN_ALERT_EMAIL: str = ""  # Receives escalations; empty disables the alert

    # Connection-level retries for outbound HTTP calls
    HTTP_CALL_RETRIES: int = 3

    # Worker
    WORKER_POLL_INTERVAL: int = 5
    STALE_JOB_TIMEOUT_SECONDS: int = 900
    CALLBACK_TIMEOUT_SECONDS: int = 3600
    MONITOR_INTERVAL_SECONDS: int = 30
    QUEUE_WAITING_ALERT: int = 100
    QUEUE_FAILED_ALERT: int = 50

    # Webhooks
    STALE_STATE_RETRIES: int = 3

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    def queue_policies(self) -> Dict[str, QueuePolicy]:
        """Build the per-queue policy table from the flat settings."""
        policies = {}
        for stage in STAGES:
            prefix = "QUEUE_" + stage.upper().replace("-", "_")
            policies[stage] = QueuePolicy(
                concurrency=getattr(self, f"{prefix}_CONCURRENCY"),
                max_attempts=getattr(self, f"{prefix}_ATTEMPTS"),
                backoff_base_seconds=getattr(self, f"{prefix}_BACKOFF"),
                keep_completed=getattr(self, f"{prefix}_KEEP_COMPLETED"),
                keep_failed=getattr(self, f"{prefix}_KEEP_FAILED"),
            )
        return policies


# Global settings instance
settings = Settings()
