"""Stage processor input and remote-result schemas."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class StagePayload(BaseModel):
    """Base for job payloads; wire names are camelCase."""

    model_config = ConfigDict(populate_by_name=True)


# AI processing
class AIProcessingInput(StagePayload):
    """Input for the ai-processing stage."""

    client_id: str = Field(alias="clientId")
    form_response_id: str = Field(alias="formResponseId")


class IdentifiedProcessSchema(StagePayload):
    """One process as returned by the AI service."""

    name: str = Field(min_length=1)
    category: str = "primary"
    description: Optional[str] = None
    is_explicit: bool = Field(default=True, alias="isExplicit")
    frequency: int = 0
    manual_steps: int = Field(default=0, alias="manualSteps")
    error_rate: float = Field(default=0.0, alias="errorRate")
    automation_score: float = Field(default=0.5, alias="automationScore")
    estimated_roi: int = Field(default=0, alias="estimatedROI")
    complexity: str = "medium"
    systems_involved: List[str] = Field(default_factory=list, alias="systemsInvolved")
    integration_complexity: str = Field(default="medium", alias="integrationComplexity")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AIAnalysisResults(StagePayload):
    """Completed analysis results."""

    identified_processes: List[IdentifiedProcessSchema] = Field(default_factory=list, alias="identifiedProcesses")
    confidence_scores: Dict[str, Any] = Field(default_factory=dict, alias="confidenceScores")
    quality_score: Optional[float] = Field(default=None, alias="qualityScore")


# SOP generation
class SOPGenerationInput(StagePayload):
    """Input for the sop-generation stage."""

    client_id: str = Field(alias="clientId")
    ai_job_id: str = Field(alias="aiJobId")


class SOPDraft(StagePayload):
    """SOP content drafted by the AI service."""

    objective: str = Field(min_length=1)
    responsible_roles: List[str] = Field(default_factory=list, alias="responsibleRoles")
    inputs: List[str] = Field(default_factory=list)
    steps: List[str] = Field(default_factory=list)
    outputs: List[str] = Field(default_factory=list)
    estimated_duration_minutes: int = Field(default=0, alias="estimatedDurationMinutes")
    complexity_level: str = Field(default="medium", alias="complexityLevel")
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Proposal generation
class ProposalGenerationInput(StagePayload):
    """Input for the proposal-generation stage."""

    client_id: str = Field(alias="clientId")
    sop_ids: List[str] = Field(alias="sopIds", min_length=1)
    analysis_id: Optional[str] = Field(default=None, alias="analysisId")


class ProposalDraft(StagePayload):
    """Proposal content drafted by the AI service."""

    executive_summary: str = Field(default="", alias="executiveSummary")
    opportunities: List[Dict[str, Any]] = Field(default_factory=list)
    roadmap: List[Dict[str, Any]] = Field(default_factory=list)
    investment_breakdown: Dict[str, Any] = Field(default_factory=dict, alias="investmentBreakdown")
    total_value: float = Field(alias="totalValue", ge=0)
    estimated_roi: float = Field(default=0.0, alias="estimatedROI")
    implementation_weeks: int = Field(default=0, alias="implementationWeeks")


# PDF generation
class PDFGenerationInput(StagePayload):
    """Input for the pdf-generation stage."""

    artifact_type: Literal["sop", "proposal", "report"] = Field(alias="artifactType")
    artifact_id: str = Field(alias="artifactId")
    client_id: str = Field(alias="clientId")
    template_id: Optional[str] = Field(default=None, alias="templateId")


class RenderResult(StagePayload):
    """Renderer response."""

    file_path: str = Field(alias="filePath")
    file_size: Optional[int] = Field(default=None, alias="fileSize")
    page_count: Optional[int] = Field(default=None, alias="pageCount")


# Notifications
class NotificationInput(StagePayload):
    """Input for the notifications stage."""

    client_id: str = Field(alias="clientId")
    notification_type: str = Field(alias="notificationType")
    method: Literal["email", "sms"] = "email"
    recipient: Optional[str] = None
    form_id: Optional[str] = Field(default=None, alias="formId")
    document_id: Optional[str] = Field(default=None, alias="documentId")
    detail: Optional[str] = None
