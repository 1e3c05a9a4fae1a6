"""AI analysis stage: identify business processes from form responses."""

import logging
from typing import Any, Dict, List

from orchestrator.config import AI_PROCESSING, SOP_GENERATION
from orchestrator.errors import NotFoundError
from orchestrator.models.form import FormResponse
from orchestrator.models.job import Job
from orchestrator.models.process import IdentifiedProcess
from orchestrator.processors.base import BaseProcessor, StageResult, Successor, client_summary
from orchestrator.schemas.stages import AIAnalysisResults, AIProcessingInput
from orchestrator.workflow import WorkflowStatus

logger = logging.getLogger(__name__)


class AIProcessingProcessor(BaseProcessor):
    """Sends a form response to the AI service and persists identified processes."""

    queue_name = AI_PROCESSING

    def _run(self, payload: Dict[str, Any], job: Job) -> StageResult:
        """Submit the form response for analysis."""
        input_data = AIProcessingInput(**payload)

        form_response = (
            self.db.query(FormResponse)
            .filter(FormResponse.id == input_data.form_response_id)
            .first()
        )
        if form_response is None:
            raise NotFoundError("Form response", input_data.form_response_id)

        client = self._get_client(input_data.client_id)

        self.workflow.advance(
            self.db,
            client.id,
            WorkflowStatus.PROCESSING_AI,
            "ai_processing_started",
            context={"jobId": job.job_id, "formResponseId": form_response.id},
        )
        # Status stays processing_ai while the remote call is retried
        self.db.commit()

        response = self.invokers.ai.analyze_responses(
            client_summary(client),
            {
                "id": form_response.id,
                "submissionId": form_response.submission_id,
                "responses": form_response.processed_responses,
                "validationScore": form_response.validation_score,
            },
            callback_id=job.job_id,
        )

        if response.get("status") == "accepted":
            external_ref = response.get("jobId")
            logger.info(f"AI analysis for job {job.job_id} accepted asynchronously (remote job {external_ref})")
            return StageResult(
                output={"clientId": client.id, "aiJobId": job.job_id, "remoteJobId": external_ref},
                deferred=True,
                external_ref=external_ref,
            )

        return self.apply_results(job, response)

    def _resume(self, job: Job, results: Dict[str, Any]) -> StageResult:
        """Apply results delivered by the AI completion webhook."""
        return self.apply_results(job, results)

    def apply_results(self, job: Job, results: Dict[str, Any]) -> StageResult:
        """
        Persist identified processes for a job.

        Re-applying the same results does not duplicate processes: rows are
        unique per (job, process name).
        """
        analysis = AIAnalysisResults(**results)
        client_id = job.payload["clientId"]

        existing = {
            name
            for (name,) in self.db.query(IdentifiedProcess.name)
            .filter(IdentifiedProcess.ai_job_id == job.job_id)
            .all()
        }

        created = 0
        for process in analysis.identified_processes:
            if process.name in existing:
                continue
            existing.add(process.name)
            self.db.add(
                IdentifiedProcess(
                    client_id=client_id,
                    ai_job_id=job.job_id,
                    name=process.name,
                    category=process.category,
                    description=process.description,
                    is_explicit=process.is_explicit,
                    frequency_per_month=process.frequency,
                    manual_steps_count=process.manual_steps,
                    error_rate_percentage=process.error_rate,
                    automation_score=process.automation_score,
                    estimated_roi_percentage=process.estimated_roi,
                    implementation_complexity=process.complexity,
                    systems_involved=process.systems_involved,
                    integration_complexity=process.integration_complexity,
                    process_metadata=process.metadata,
                )
            )
            created += 1
        self.db.flush()

        process_count = (
            self.db.query(IdentifiedProcess)
            .filter(IdentifiedProcess.ai_job_id == job.job_id)
            .count()
        )
        minimum = self.settings.MIN_PROCESSES_TO_ADVANCE
        requires_review = process_count < minimum

        logger.info(f"AI job {job.job_id} identified {process_count} processes ({created} new)")
        if requires_review:
            logger.warning(
                f"Client {client_id}: only {process_count} processes identified "
                f"(minimum {minimum}); manual follow-up required"
            )

        return StageResult(
            output={
                "clientId": client_id,
                "aiJobId": job.job_id,
                "processCount": process_count,
                "qualityScore": analysis.quality_score,
                "confidenceScores": analysis.confidence_scores,
                "requiresManualReview": requires_review,
            }
        )

    def successors(self, job: Job, output: Dict[str, Any]) -> List[Successor]:
        """Chain SOP generation only when enough processes were found."""
        if output.get("processCount", 0) < self.settings.MIN_PROCESSES_TO_ADVANCE:
            return []
        return [
            Successor(
                queue=SOP_GENERATION,
                payload={"clientId": output["clientId"], "aiJobId": output["aiJobId"]},
            )
        ]

    def _validate(self, output: Dict[str, Any]) -> bool:
        """Validate the output carries a process count."""
        return "processCount" in output
