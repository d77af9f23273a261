"""Create experiment design lifecycle, review and ledger tables."""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261017_01"
down_revision: str | Sequence[str] | None = None
branch_labels = None
depends_on = None


def _uuid(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), **kwargs)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create design, draft, version, execution, review, ledger and notification tables."""

    op.create_table(
        "users",
        _uuid("id", primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "designs",
        _uuid("id", primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("hypothesis", sa.Text(), nullable=True),
        sa.Column("discipline_tags", sa.JSON(), nullable=True),
        sa.Column("difficulty_level", sa.String(), nullable=False),
        sa.Column("steps", sa.JSON(), nullable=True),
        sa.Column("materials", sa.JSON(), nullable=True),
        sa.Column("research_questions", sa.JSON(), nullable=True),
        sa.Column("independent_variables", sa.JSON(), nullable=True),
        sa.Column("dependent_variables", sa.JSON(), nullable=True),
        sa.Column("controlled_variables", sa.JSON(), nullable=True),
        sa.Column("safety_considerations", sa.Text(), nullable=True),
        sa.Column("reference_experiment_ids", sa.JSON(), nullable=True),
        sa.Column("references", sa.JSON(), nullable=True),
        sa.Column("sample_size", sa.Integer(), nullable=True),
        sa.Column("repetitions", sa.Integer(), nullable=True),
        sa.Column("statistical_methods", sa.JSON(), nullable=True),
        sa.Column("analysis_plan", sa.Text(), nullable=True),
        sa.Column("estimated_duration", sa.JSON(), nullable=True),
        sa.Column("estimated_budget_usd", sa.Float(), nullable=True),
        sa.Column("safety_requirements", sa.JSON(), nullable=True),
        sa.Column("ethical_considerations", sa.Text(), nullable=True),
        sa.Column("disclaimers", sa.Text(), nullable=True),
        sa.Column("seeking_collaborators", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("collaboration_notes", sa.Text(), nullable=True),
        sa.Column("cover_image_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("published_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("has_draft_changes", sa.Boolean(), nullable=False, server_default=sa.false()),
        _uuid("owner_id", sa.ForeignKey("users.id"), nullable=False),
        sa.Column("author_ids", sa.JSON(), nullable=False),
        sa.Column("review_status", sa.String(), nullable=False, server_default="unreviewed"),
        sa.Column("review_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("derived_design_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fork_metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('draft', 'published', 'locked')",
            name="ck_designs_status",
        ),
        sa.CheckConstraint("execution_count >= 0", name="ck_designs_execution_count"),
    )
    op.create_index("ix_designs_owner_id", "designs", ["owner_id"])
    op.create_index("ix_designs_public_created", "designs", ["is_public", "created_at"])

    op.create_table(
        "design_drafts",
        _uuid("design_id", sa.ForeignKey("designs.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("pending_changelog", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "design_versions",
        _uuid("id", primary_key=True),
        _uuid("design_id", sa.ForeignKey("designs.id"), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        _uuid("published_by", sa.ForeignKey("users.id"), nullable=False),
        sa.Column("changelog", sa.Text(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.UniqueConstraint("design_id", "version_number", name="uq_design_versions_number"),
    )
    op.create_index("ix_design_versions_design_id", "design_versions", ["design_id"])

    op.create_table(
        "design_executions",
        _uuid("id", primary_key=True),
        _uuid("design_id", sa.ForeignKey("designs.id"), nullable=False),
        sa.Column("design_version", sa.Integer(), nullable=False),
        sa.Column("design_title", sa.String(), nullable=False),
        _uuid("experimenter_id", sa.ForeignKey("users.id"), nullable=False),
        sa.Column("co_experimenter_ids", sa.JSON(), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("methodology_deviations", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="in_progress"),
        *_timestamps(),
    )
    op.create_index("ix_design_executions_design_id", "design_executions", ["design_id"])

    op.create_table(
        "design_reviews",
        _uuid("id", primary_key=True),
        _uuid("design_id", sa.ForeignKey("designs.id"), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        _uuid("reviewer_id", sa.ForeignKey("users.id"), nullable=False),
        sa.Column("general_comment", sa.Text(), nullable=True),
        sa.Column("readiness_signal", sa.String(), nullable=True),
        sa.Column("endorsement", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        *_timestamps(),
        sa.UniqueConstraint(
            "reviewer_id", "design_id", "version_number", name="uq_design_reviews_reviewer_version"
        ),
    )
    op.create_index("ix_design_reviews_design_id", "design_reviews", ["design_id"])

    op.create_table(
        "review_suggestions",
        _uuid("id", primary_key=True),
        _uuid("review_id", sa.ForeignKey("design_reviews.id", ondelete="CASCADE"), nullable=False),
        _uuid("design_id", sa.ForeignKey("designs.id"), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("field_ref", sa.String(), nullable=True),
        sa.Column("new_field_name", sa.String(), nullable=True),
        sa.Column("proposed_text", sa.Text(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("suggestion_type", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("owner_reply", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_review_suggestions_review_id", "review_suggestions", ["review_id"])

    op.create_table(
        "contribution_ledger",
        _uuid("id", primary_key=True),
        _uuid("user_id", nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        _uuid("design_id", nullable=True),
        sa.Column("design_version", sa.Integer(), nullable=True),
        _uuid("review_id", nullable=True),
        _uuid("suggestion_id", nullable=True),
        _uuid("referencing_design_id", nullable=True),
        _uuid("fork_design_id", nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_contribution_ledger_user_id", "contribution_ledger", ["user_id"])

    op.create_table(
        "notifications",
        _uuid("id", primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("link", sa.String(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    """Drop experiment design tables."""

    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_contribution_ledger_user_id", table_name="contribution_ledger")
    op.drop_table("contribution_ledger")
    op.drop_index("ix_review_suggestions_review_id", table_name="review_suggestions")
    op.drop_table("review_suggestions")
    op.drop_index("ix_design_reviews_design_id", table_name="design_reviews")
    op.drop_table("design_reviews")
    op.drop_index("ix_design_executions_design_id", table_name="design_executions")
    op.drop_table("design_executions")
    op.drop_index("ix_design_versions_design_id", table_name="design_versions")
    op.drop_table("design_versions")
    op.drop_table("design_drafts")
    op.drop_index("ix_designs_public_created", table_name="designs")
    op.drop_index("ix_designs_owner_id", table_name="designs")
    op.drop_table("designs")
    op.drop_table("users")
