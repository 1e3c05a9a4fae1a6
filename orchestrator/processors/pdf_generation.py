"""Document rendering stage."""

import logging
from datetime import datetime
from typing import Any, Dict, List

from orchestrator.config import NOTIFICATIONS, PDF_GENERATION
from orchestrator.errors import NotFoundError
from orchestrator.models.artifacts import CommercialProposal, GeneratedSOP, RenderedDocument
from orchestrator.models.job import Job
from orchestrator.models.process import IdentifiedProcess
from orchestrator.processors.base import BaseProcessor, StageResult, Successor
from orchestrator.schemas.stages import PDFGenerationInput, RenderResult

logger = logging.getLogger(__name__)

NOTIFICATION_BY_ARTIFACT = {
    "proposal": "proposal_ready",
    "sop": "sops_ready",
    "report": "report_ready",
}


class PDFGenerationProcessor(BaseProcessor):
    """Renders an artifact and records the document reference."""

    queue_name = PDF_GENERATION

    def _run(self, payload: Dict[str, Any], job: Job) -> StageResult:
        """Render the artifact named in the payload."""
        input_data = PDFGenerationInput(**payload)

        document = self.db.query(RenderedDocument).filter(RenderedDocument.job_id == job.job_id).first()
        if document is None:
            context = self._artifact_context(input_data)
            rendered = RenderResult(
                **self.invokers.renderer.render(
                    input_data.artifact_type,
                    input_data.artifact_id,
                    context,
                    input_data.template_id,
                )
            )
            document = RenderedDocument(
                client_id=input_data.client_id,
                job_id=job.job_id,
                artifact_type=input_data.artifact_type,
                artifact_id=input_data.artifact_id,
                template_id=input_data.template_id,
                file_path=rendered.file_path,
                file_size_bytes=rendered.file_size,
                page_count=rendered.page_count,
            )
            self.db.add(document)
            self.db.flush()

        if input_data.artifact_type == "proposal":
            proposal = self.db.query(CommercialProposal).filter(CommercialProposal.id == input_data.artifact_id).first()
            if proposal is None:
                raise NotFoundError("Proposal", input_data.artifact_id)
            proposal.pdf_file_path = document.file_path
            proposal.pdf_file_size_bytes = document.file_size_bytes
            proposal.pdf_generated_at = datetime.utcnow()

        logger.info(f"Rendered {input_data.artifact_type} {input_data.artifact_id} to {document.file_path}")

        return StageResult(
            output={
                "clientId": input_data.client_id,
                "documentId": document.id,
                "artifactType": input_data.artifact_type,
                "artifactId": input_data.artifact_id,
                "filePath": document.file_path,
            }
        )

    def _artifact_context(self, input_data: PDFGenerationInput) -> Dict[str, Any]:
        """Load the artifact content passed to the renderer."""
        if input_data.artifact_type == "sop":
            sop = self.db.query(GeneratedSOP).filter(GeneratedSOP.id == input_data.artifact_id).first()
            if sop is None:
                raise NotFoundError("SOP", input_data.artifact_id)
            return {
                "objective": sop.objective,
                "responsibleRoles": sop.responsible_roles or [],
                "inputs": sop.inputs or [],
                "steps": sop.steps or [],
                "outputs": sop.outputs or [],
            }

        if input_data.artifact_type == "proposal":
            proposal = (
                self.db.query(CommercialProposal)
                .filter(CommercialProposal.id == input_data.artifact_id)
                .first()
            )
            if proposal is None:
                raise NotFoundError("Proposal", input_data.artifact_id)
            return {
                "executiveSummary": proposal.executive_summary,
                "opportunities": proposal.opportunities or [],
                "roadmap": proposal.roadmap or [],
                "investmentBreakdown": proposal.investment_breakdown or {},
                "totalValue": proposal.total_value,
                "estimatedROI": proposal.estimated_roi,
            }

        # Reports summarize the processes identified by one AI job
        ai_job = self.db.query(Job).filter(Job.job_id == input_data.artifact_id).first()
        if ai_job is None:
            raise NotFoundError("AI job", input_data.artifact_id)
        processes = (
            self.db.query(IdentifiedProcess)
            .filter(IdentifiedProcess.ai_job_id == ai_job.job_id)
            .all()
        )
        return {
            "analysis": ai_job.output or {},
            "processes": [
                {"name": p.name, "category": p.category, "automationScore": p.automation_score}
                for p in processes
            ],
        }

    def successors(self, job: Job, output: Dict[str, Any]) -> List[Successor]:
        """Notify the client that the document is ready."""
        return [
            Successor(
                queue=NOTIFICATIONS,
                payload={
                    "clientId": output["clientId"],
                    "notificationType": NOTIFICATION_BY_ARTIFACT[output["artifactType"]],
                    "documentId": output["documentId"],
                },
            )
        ]

    def _validate(self, output: Dict[str, Any]) -> bool:
        """Validate the document has a path."""
        return bool(output.get("filePath"))
