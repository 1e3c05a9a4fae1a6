"""Commercial proposal generation stage."""

import logging
from typing import Any, Dict, List

from orchestrator.config import PDF_GENERATION, PROPOSAL_GENERATION
from orchestrator.errors import NotFoundError, UnapprovedSOPError
from orchestrator.models.artifacts import CommercialProposal, GeneratedSOP
from orchestrator.models.job import Job
from orchestrator.processors.base import BaseProcessor, StageResult, Successor, client_summary
from orchestrator.schemas.stages import ProposalDraft, ProposalGenerationInput
from orchestrator.workflow import WorkflowStatus

logger = logging.getLogger(__name__)


class ProposalGenerationProcessor(BaseProcessor):
    """Builds a proposal from approved SOPs and advances the client to proposal_ready."""

    queue_name = PROPOSAL_GENERATION

    def _run(self, payload: Dict[str, Any], job: Job) -> StageResult:
        """Draft and persist the proposal."""
        input_data = ProposalGenerationInput(**payload)
        client = self._get_client(input_data.client_id)

        sops = (
            self.db.query(GeneratedSOP)
            .filter(
                GeneratedSOP.id.in_(input_data.sop_ids),
                GeneratedSOP.client_id == client.id,
            )
            .all()
        )
        missing = set(input_data.sop_ids) - {sop.id for sop in sops}
        if missing:
            raise NotFoundError("SOP", ", ".join(sorted(missing)))

        unapproved = [sop.id for sop in sops if not sop.is_approved]
        if unapproved:
            raise UnapprovedSOPError(unapproved)

        proposal = self.db.query(CommercialProposal).filter(CommercialProposal.job_id == job.job_id).first()
        if proposal is None:
            draft = ProposalDraft(
                **self.invokers.ai.draft_proposal(
                    client_summary(client),
                    [
                        {"id": sop.id, "objective": sop.objective, "steps": sop.steps or []}
                        for sop in sops
                    ],
                )
            )
            proposal = CommercialProposal(
                client_id=client.id,
                job_id=job.job_id,
                analysis_id=input_data.analysis_id,
                sop_ids=list(input_data.sop_ids),
                executive_summary=draft.executive_summary,
                opportunities=draft.opportunities,
                roadmap=draft.roadmap,
                investment_breakdown=draft.investment_breakdown,
                total_value=draft.total_value,
                estimated_roi=draft.estimated_roi,
                implementation_weeks=draft.implementation_weeks,
                status="ready",
            )
            self.db.add(proposal)
            self.db.flush()

        self.workflow.advance(
            self.db,
            client.id,
            WorkflowStatus.PROPOSAL_READY,
            "proposal_generated",
            context={"proposalId": proposal.id, "sopCount": len(sops), "jobId": job.job_id},
        )

        logger.info(f"Proposal {proposal.id} generated for client {client.id} (value {proposal.total_value})")

        return StageResult(
            output={
                "clientId": client.id,
                "proposalId": proposal.id,
                "totalValue": proposal.total_value,
                "estimatedROI": proposal.estimated_roi,
                "sopCount": len(sops),
            }
        )

    def successors(self, job: Job, output: Dict[str, Any]) -> List[Successor]:
        """Render the proposal once it is persisted."""
        return [
            Successor(
                queue=PDF_GENERATION,
                payload={
                    "artifactType": "proposal",
                    "artifactId": output["proposalId"],
                    "clientId": output["clientId"],
                },
            )
        ]

    def _validate(self, output: Dict[str, Any]) -> bool:
        """Validate a proposal id is present."""
        return bool(output.get("proposalId"))
