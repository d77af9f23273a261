from datetime import datetime
from typing import Optional, Any, Dict, Literal, List
from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID


DifficultyLevel = Literal[
    "Pre-K",
    "Elementary",
    "Middle School",
    "High School",
    "Undergraduate",
    "Graduate",
    "Professional",
]
DesignStatus = Literal["draft", "published", "locked"]
ReviewStatus = Literal["unreviewed", "under_review", "reviewed", "flagged"]
ForkType = Literal["iteration", "adaptation", "replication"]
VariableType = Literal["continuous", "discrete", "categorical"]
DataType = Literal["numeric", "categorical", "image", "text", "other"]
Criticality = Literal["required", "recommended", "optional"]
RiskLevel = Literal["none", "low", "moderate", "high"]
ExecutionStatus = Literal["in_progress", "completed", "cancelled"]
ReadinessSignal = Literal["ready", "almost_ready", "needs_revision"]
SuggestionType = Literal["suggestion", "issue", "question", "safety_concern"]
ReviewDocStatus = Literal["active", "resolved", "superseded", "locked"]
SuggestionStatus = Literal["open", "accepted", "closed", "superseded", "locked"]


class UserOut(BaseModel):
    id: UUID
    email: str
    full_name: Optional[str] = None
    is_admin: bool = False
    model_config = ConfigDict(from_attributes=True)


# ----- Design content -----

class DesignStep(BaseModel):
    step_number: int
    instruction: str
    duration_minutes: Optional[int] = None
    safety_notes: Optional[str] = None


class DesignMaterial(BaseModel):
    material_id: str
    quantity: str
    alternatives_allowed: bool = False
    criticality: Criticality = "required"
    usage_notes: Optional[str] = None
    estimated_cost_usd: Optional[float] = None


class ResearchQuestion(BaseModel):
    # stable id referenced by executions; assigned server-side when absent
    id: Optional[str] = None
    question: str
    expected_data_type: DataType = "other"
    measurement_unit: Optional[str] = None
    success_criteria: Optional[str] = None


class Variable(BaseModel):
    name: str
    type: VariableType
    values_or_range: str = ""
    units: Optional[str] = None


class DesignReference(BaseModel):
    citation: str
    url: Optional[str] = None
    doi: Optional[str] = None
    relevance_note: Optional[str] = None


class SafetyRequirements(BaseModel):
    risk_level: RiskLevel = "none"
    ppe_required: List[str] = []
    supervision_required: bool = False
    hazards: Optional[str] = None


class EstimatedDuration(BaseModel):
    setup_minutes: Optional[int] = None
    execution_minutes: Optional[int] = None
    analysis_minutes: Optional[int] = None
    total_days: Optional[float] = None


class DesignContent(BaseModel):
    """Author-editable body shared by create, update, drafts and snapshots."""

    title: Optional[str] = None
    summary: Optional[str] = None
    hypothesis: Optional[str] = None
    discipline_tags: Optional[List[str]] = None
    difficulty_level: Optional[DifficultyLevel] = None
    steps: Optional[List[DesignStep]] = None
    materials: Optional[List[DesignMaterial]] = None
    research_questions: Optional[List[ResearchQuestion]] = None
    independent_variables: Optional[List[Variable]] = None
    dependent_variables: Optional[List[Variable]] = None
    controlled_variables: Optional[List[Variable]] = None
    safety_considerations: Optional[str] = None
    reference_experiment_ids: Optional[List[str]] = None
    references: Optional[List[DesignReference]] = None
    sample_size: Optional[int] = None
    repetitions: Optional[int] = None
    statistical_methods: Optional[List[str]] = None
    analysis_plan: Optional[str] = None
    estimated_duration: Optional[EstimatedDuration] = None
    estimated_budget_usd: Optional[float] = None
    safety_requirements: Optional[SafetyRequirements] = None
    ethical_considerations: Optional[str] = None
    disclaimers: Optional[str] = None
    seeking_collaborators: Optional[bool] = None
    collaboration_notes: Optional[str] = None
    cover_image_url: Optional[str] = None


class DesignCreate(DesignContent):
    pass


class DesignUpdate(DesignContent):
    # kept on the draft and used as the changelog of the next publish
    pending_changelog: Optional[str] = None


class DesignPublish(BaseModel):
    changelog: Optional[str] = None


class DesignFork(BaseModel):
    fork_type: Optional[ForkType] = None
    fork_rationale: Optional[str] = None


class ForkMetadata(BaseModel):
    parent_design_id: UUID
    fork_generation: int
    fork_type: ForkType
    fork_rationale: str


class DesignOut(BaseModel):
    id: UUID
    title: str
    summary: Optional[str] = None
    hypothesis: Optional[str] = None
    discipline_tags: List[str] = []
    difficulty_level: Optional[str] = None
    steps: List[DesignStep] = []
    materials: List[DesignMaterial] = []
    research_questions: List[ResearchQuestion] = []
    independent_variables: List[Variable] = []
    dependent_variables: List[Variable] = []
    controlled_variables: List[Variable] = []
    safety_considerations: Optional[str] = None
    reference_experiment_ids: List[str] = []
    references: List[DesignReference] = []
    sample_size: Optional[int] = None
    repetitions: Optional[int] = None
    statistical_methods: List[str] = []
    analysis_plan: Optional[str] = None
    estimated_duration: Optional[EstimatedDuration] = None
    estimated_budget_usd: Optional[float] = None
    safety_requirements: Optional[SafetyRequirements] = None
    ethical_considerations: Optional[str] = None
    disclaimers: Optional[str] = None
    seeking_collaborators: bool = False
    collaboration_notes: Optional[str] = None
    cover_image_url: Optional[str] = None
    pending_changelog: Optional[str] = None

    status: DesignStatus
    is_public: bool
    version: int
    published_version: int
    has_draft_changes: bool
    owner_id: UUID
    author_ids: List[UUID]
    review_status: ReviewStatus
    review_count: int
    execution_count: int
    derived_design_count: int
    fork_metadata: Optional[ForkMetadata] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class DesignPage(BaseModel):
    items: List[DesignOut]
    count: int
    next_cursor: Optional[UUID] = None


class DesignVersionSummary(BaseModel):
    version_number: int
    published_at: datetime
    published_by: UUID
    changelog: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class DesignVersionOut(DesignVersionSummary):
    data: Dict[str, Any]


# ----- Executions -----

class ExecutionUpdate(BaseModel):
    co_experimenter_ids: Optional[List[UUID]] = None
    start_date: Optional[datetime] = None
    methodology_deviations: Optional[str] = None


class ExecutionOut(BaseModel):
    id: UUID
    design_id: UUID
    design_version: int
    design_title: str
    experimenter_id: UUID
    co_experimenter_ids: List[UUID] = []
    start_date: Optional[datetime] = None
    methodology_deviations: Optional[str] = None
    status: ExecutionStatus
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ----- Reviews -----

class SuggestionCreate(BaseModel):
    field_ref: Optional[str] = None
    new_field_name: Optional[str] = None
    proposed_text: Optional[str] = None
    comment: Optional[str] = None
    suggestion_type: Optional[SuggestionType] = None


class ReviewCreate(BaseModel):
    general_comment: Optional[str] = None
    readiness_signal: Optional[ReadinessSignal] = None
    endorsement: bool = False
    suggestions: List[SuggestionCreate] = Field(default_factory=list)


class EndorsementCreate(BaseModel):
    comment: Optional[str] = None


class SuggestionReply(BaseModel):
    reply: Optional[str] = None


class SuggestionOut(BaseModel):
    id: UUID
    review_id: UUID
    design_id: UUID
    version_number: int
    field_ref: Optional[str] = None
    new_field_name: Optional[str] = None
    proposed_text: Optional[str] = None
    comment: Optional[str] = None
    suggestion_type: Optional[SuggestionType] = None
    status: SuggestionStatus
    owner_reply: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ReviewOut(BaseModel):
    id: UUID
    design_id: UUID
    version_number: int
    reviewer_id: UUID
    general_comment: Optional[str] = None
    readiness_signal: Optional[ReadinessSignal] = None
    endorsement: bool
    status: ReviewDocStatus
    created_at: datetime
    updated_at: datetime
    suggestions: List[SuggestionOut] = []
    model_config = ConfigDict(from_attributes=True)


class EndorsementOut(BaseModel):
    review_id: UUID
    reviewer_id: UUID
    comment: Optional[str] = None
    version_number: int
    created_at: datetime


class SuggestionAcceptOut(BaseModel):
    suggestion: SuggestionOut
    draft_created: bool


class ReviewSummaryOut(BaseModel):
    endorsement_count: int
    review_count: int
    version_number: int
    is_locked: bool
    reviewable: bool
    user_has_reviewed: Optional[bool] = None


# ----- Notifications -----

class NotificationOut(BaseModel):
    id: UUID
    user_id: UUID
    type: str
    message: str
    link: Optional[str] = None
    is_read: bool
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)
