import uuid
import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Float,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Methodology fields frozen on the public document once any execution exists.
LOCKED_FIELDS = (
    "hypothesis",
    "steps",
    "materials",
    "research_questions",
    "independent_variables",
    "dependent_variables",
    "controlled_variables",
)

# Author-editable body of a design. Drafts, forks and version snapshots copy exactly these.
CONTENT_FIELDS = (
    "title",
    "summary",
    "hypothesis",
    "discipline_tags",
    "difficulty_level",
    "steps",
    "materials",
    "research_questions",
    "independent_variables",
    "dependent_variables",
    "controlled_variables",
    "safety_considerations",
    "reference_experiment_ids",
    "references",
    "sample_size",
    "repetitions",
    "statistical_methods",
    "analysis_plan",
    "estimated_duration",
    "estimated_budget_usd",
    "safety_requirements",
    "ethical_considerations",
    "disclaimers",
    "seeking_collaborators",
    "collaboration_notes",
    "cover_image_url",
)

# Managed by the engines, never taken from a draft or a patch.
SYSTEM_FIELDS = (
    "id",
    "status",
    "is_public",
    "version",
    "published_version",
    "has_draft_changes",
    "owner_id",
    "author_ids",
    "review_status",
    "review_count",
    "execution_count",
    "derived_design_count",
    "fork_metadata",
    "created_at",
    "updated_at",
)


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String)
    is_admin = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    notifications = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )


class Design(Base):
    __tablename__ = "designs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    title = Column(String(200), nullable=False)
    summary = Column(Text, default="")
    hypothesis = Column(Text)
    discipline_tags = Column(JSON, default=list)
    difficulty_level = Column(String, nullable=False)
    steps = Column(JSON, default=list)
    materials = Column(JSON, default=list)
    research_questions = Column(JSON, default=list)
    independent_variables = Column(JSON, default=list)
    dependent_variables = Column(JSON, default=list)
    controlled_variables = Column(JSON, default=list)
    safety_considerations = Column(Text)
    reference_experiment_ids = Column(JSON, default=list)
    references = Column(JSON, default=list)
    sample_size = Column(Integer)
    repetitions = Column(Integer)
    statistical_methods = Column(JSON, default=list)
    analysis_plan = Column(Text)
    estimated_duration = Column(JSON)
    estimated_budget_usd = Column(Float)
    safety_requirements = Column(JSON)
    ethical_considerations = Column(Text)
    disclaimers = Column(Text)
    seeking_collaborators = Column(Boolean, default=False)
    collaboration_notes = Column(Text)
    cover_image_url = Column(String)

    # status: draft | published | locked
    status = Column(String, nullable=False, default="draft")
    is_public = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    published_version = Column(Integer, nullable=False, default=0)
    has_draft_changes = Column(Boolean, nullable=False, default=False)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    # ordered uid strings, owner first; drives every authorship check
    author_ids = Column(JSON, nullable=False, default=list)
    # review_status: unreviewed | under_review | reviewed | flagged
    review_status = Column(String, nullable=False, default="unreviewed")
    review_count = Column(Integer, nullable=False, default=0)
    execution_count = Column(Integer, nullable=False, default=0)
    derived_design_count = Column(Integer, nullable=False, default=0)
    # {parent_design_id, fork_generation, fork_type, fork_rationale}
    fork_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    draft = relationship(
        "DesignDraft",
        back_populates="design",
        uselist=False,
        cascade="all, delete-orphan",
    )
    versions = relationship(
        "DesignVersion",
        back_populates="design",
        order_by="DesignVersion.version_number",
    )

    def is_author(self, user_id) -> bool:
        return str(user_id) in {str(uid) for uid in (self.author_ids or [])}

    def content(self) -> dict:
        return {field: getattr(self, field) for field in CONTENT_FIELDS}


class DesignDraft(Base):
    __tablename__ = "design_drafts"
    design_id = Column(
        UUID(as_uuid=True),
        ForeignKey("designs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    data = Column(JSON, nullable=False, default=dict)
    pending_changelog = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    design = relationship("Design", back_populates="draft")


class DesignVersion(Base):
    __tablename__ = "design_versions"
    __table_args__ = (
        sa.UniqueConstraint("design_id", "version_number", name="uq_design_versions_number"),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    design_id = Column(UUID(as_uuid=True), ForeignKey("designs.id"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    published_at = Column(DateTime(timezone=True), default=_utcnow)
    published_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    changelog = Column(Text, nullable=True)
    data = Column(JSON, nullable=False, default=dict)

    design = relationship("Design", back_populates="versions")


class DesignExecution(Base):
    __tablename__ = "design_executions"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    design_id = Column(UUID(as_uuid=True), ForeignKey("designs.id"), nullable=False, index=True)
    design_version = Column(Integer, nullable=False)
    # denormalised for display, not re-synced on later publishes
    design_title = Column(String, nullable=False)
    experimenter_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    co_experimenter_ids = Column(JSON, default=list)
    start_date = Column(DateTime(timezone=True), default=_utcnow)
    methodology_deviations = Column(Text, default="")
    # status: in_progress | completed | cancelled
    status = Column(String, nullable=False, default="in_progress")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class DesignReview(Base):
    __tablename__ = "design_reviews"
    __table_args__ = (
        sa.UniqueConstraint(
            "reviewer_id", "design_id", "version_number", name="uq_design_reviews_reviewer_version"
        ),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    design_id = Column(UUID(as_uuid=True), ForeignKey("designs.id"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    reviewer_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    general_comment = Column(Text, nullable=True)
    # readiness_signal: ready | almost_ready | needs_revision
    readiness_signal = Column(String, nullable=True)
    endorsement = Column(Boolean, nullable=False, default=False)
    # status: active | resolved | superseded | locked
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    suggestions = relationship(
        "ReviewSuggestion",
        back_populates="review",
        cascade="all, delete-orphan",
        order_by="ReviewSuggestion.created_at",
    )


class ReviewSuggestion(Base):
    __tablename__ = "review_suggestions"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    review_id = Column(
        UUID(as_uuid=True),
        ForeignKey("design_reviews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    design_id = Column(UUID(as_uuid=True), ForeignKey("designs.id"), nullable=False)
    version_number = Column(Integer, nullable=False)
    field_ref = Column(String, nullable=True)
    new_field_name = Column(String, nullable=True)
    proposed_text = Column(Text, nullable=True)
    comment = Column(Text, nullable=True)
    # suggestion_type: suggestion | issue | question | safety_concern
    suggestion_type = Column(String, nullable=True)
    # status: open | accepted | closed | superseded | locked
    status = Column(String, nullable=False, default="open")
    owner_reply = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    review = relationship("DesignReview", back_populates="suggestions")


class LedgerEntry(Base):
    __tablename__ = "contribution_ledger"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    design_id = Column(UUID(as_uuid=True), nullable=True)
    design_version = Column(Integer, nullable=True)
    review_id = Column(UUID(as_uuid=True), nullable=True)
    suggestion_id = Column(UUID(as_uuid=True), nullable=True)
    referencing_design_id = Column(UUID(as_uuid=True), nullable=True)
    fork_design_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    type = Column(String, nullable=False)
    message = Column(String, nullable=False)
    link = Column(String, nullable=True)
    is_read = Column(Boolean, default=False)
    meta = Column(JSON, default=dict)  # actor, design, review and execution references
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    user = relationship("User", back_populates="notifications")
