"""SOP generation stage."""

import logging
from typing import Any, Dict

from orchestrator.config import SOP_GENERATION
from orchestrator.errors import InsufficientProcessesError
from orchestrator.models.artifacts import GeneratedSOP
from orchestrator.models.job import Job
from orchestrator.models.process import IdentifiedProcess
from orchestrator.processors.base import BaseProcessor, StageResult, client_summary
from orchestrator.schemas.stages import SOPDraft, SOPGenerationInput
from orchestrator.workflow import WorkflowStatus

logger = logging.getLogger(__name__)


def process_summary(process: IdentifiedProcess) -> Dict[str, Any]:
    """Process fields sent to the AI service."""
    return {
        "id": process.id,
        "name": process.name,
        "category": process.category,
        "description": process.description,
        "systemsInvolved": process.systems_involved or [],
        "complexity": process.implementation_complexity,
    }


class SOPGenerationProcessor(BaseProcessor):
    """Generates one SOP per identified process and advances the client."""

    queue_name = SOP_GENERATION

    def _run(self, payload: Dict[str, Any], job: Job) -> StageResult:
        """Generate SOPs for every process of an AI job."""
        input_data = SOPGenerationInput(**payload)
        client = self._get_client(input_data.client_id)

        processes = (
            self.db.query(IdentifiedProcess)
            .filter(IdentifiedProcess.ai_job_id == input_data.ai_job_id)
            .order_by(IdentifiedProcess.created_at, IdentifiedProcess.name)
            .all()
        )

        minimum = self.settings.MIN_PROCESSES_TO_ADVANCE
        if len(processes) < minimum:
            raise InsufficientProcessesError(len(processes), minimum)

        process_ids = [p.id for p in processes]
        already_generated = {
            process_id
            for (process_id,) in self.db.query(GeneratedSOP.process_id)
            .filter(GeneratedSOP.process_id.in_(process_ids))
            .all()
        }

        for process in processes:
            if process.id in already_generated:
                continue

            draft = SOPDraft(**self.invokers.ai.draft_sop(process_summary(process), client_summary(client)))
            self.db.add(
                GeneratedSOP(
                    client_id=client.id,
                    process_id=process.id,
                    job_id=job.job_id,
                    objective=draft.objective,
                    responsible_roles=draft.responsible_roles,
                    inputs=draft.inputs,
                    steps=draft.steps,
                    outputs=draft.outputs,
                    estimated_duration_minutes=draft.estimated_duration_minutes,
                    complexity_level=draft.complexity_level,
                    generation_metadata=draft.metadata,
                )
            )
            # Keep finished SOPs if a later remote call fails
            self.db.commit()

        sop_ids = [
            sop_id
            for (sop_id,) in self.db.query(GeneratedSOP.id)
            .filter(GeneratedSOP.process_id.in_(process_ids))
            .order_by(GeneratedSOP.created_at)
            .all()
        ]

        self.workflow.advance(
            self.db,
            client.id,
            WorkflowStatus.SOPS_GENERATED,
            "sop_generation_completed",
            context={"aiJobId": input_data.ai_job_id, "sopCount": len(sop_ids), "jobId": job.job_id},
        )

        logger.info(f"Generated {len(sop_ids)} SOPs for client {client.id} (AI job {input_data.ai_job_id})")

        return StageResult(
            output={
                "clientId": client.id,
                "aiJobId": input_data.ai_job_id,
                "sopIds": sop_ids,
                "sopCount": len(sop_ids),
            }
        )

    def _validate(self, output: Dict[str, Any]) -> bool:
        """Validate at least one SOP exists."""
        return output.get("sopCount", 0) > 0
