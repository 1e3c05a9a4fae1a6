"""Queue name to stage processor mapping."""

from typing import Dict, Type

from orchestrator.config import AI_PROCESSING, NOTIFICATIONS, PDF_GENERATION, PROPOSAL_GENERATION, SOP_GENERATION
from orchestrator.processors.ai_processing import AIProcessingProcessor
from orchestrator.processors.base import BaseProcessor
from orchestrator.processors.notifications import NotificationProcessor
from orchestrator.processors.pdf_generation import PDFGenerationProcessor
from orchestrator.processors.proposal_generation import ProposalGenerationProcessor
from orchestrator.processors.sop_generation import SOPGenerationProcessor

PROCESSORS: Dict[str, Type[BaseProcessor]] = {
    AI_PROCESSING: AIProcessingProcessor,
    SOP_GENERATION: SOPGenerationProcessor,
    PROPOSAL_GENERATION: ProposalGenerationProcessor,
    PDF_GENERATION: PDFGenerationProcessor,
    NOTIFICATIONS: NotificationProcessor,
}
