"""Design lifecycle engine: create, edit, publish, fork and delete designs."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, get_args
from uuid import UUID

from sqlalchemy.orm import Session

from .. import ledger, models, notify, schemas
from ..errors import Forbidden, NotFound, ValidationError

# purpose: enforce the design state machine and the public/draft two-slot document
# status: active
# depends_on: openbench.models (Design, DesignDraft, DesignVersion), openbench.ledger

logger = logging.getLogger(__name__)

DIFFICULTY_LEVELS: tuple[str, ...] = get_args(schemas.DifficultyLevel)
FORK_TYPES: tuple[str, ...] = get_args(schemas.ForkType)
MAX_TITLE_LENGTH = 200
MAX_DISCIPLINE_TAGS = 5
FORK_TITLE_PREFIX = "Fork of: "

_LIST_FIELDS = {
    "discipline_tags",
    "steps",
    "materials",
    "research_questions",
    "independent_variables",
    "dependent_variables",
    "controlled_variables",
    "reference_experiment_ids",
    "references",
    "statistical_methods",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----- validation -----

def _title_error(title: Any) -> str | None:
    if not isinstance(title, str) or not title.strip():
        return "title is required"
    if len(title) > MAX_TITLE_LENGTH:
        return f"title must be {MAX_TITLE_LENGTH} characters or fewer"
    return None


def _tags_error(tags: Any) -> str | None:
    if not isinstance(tags, list) or len(tags) == 0:
        return "at least one discipline_tag is required"
    if len(tags) > MAX_DISCIPLINE_TAGS:
        return f"discipline_tags cannot exceed {MAX_DISCIPLINE_TAGS}"
    return None


def _difficulty_error(level: Any) -> str | None:
    if level not in DIFFICULTY_LEVELS:
        return f"difficulty_level must be one of: {', '.join(DIFFICULTY_LEVELS)}"
    return None


def validate_content(content: dict[str, Any]) -> str | None:
    """Return the first violated creation rule, or None when publishable."""

    for error in (
        _title_error(content.get("title")),
        _tags_error(content.get("discipline_tags")),
        _difficulty_error(content.get("difficulty_level")),
    ):
        if error:
            return error
    for field, label in (
        ("steps", "step"),
        ("materials", "material"),
        ("research_questions", "research_question"),
    ):
        value = content.get(field)
        if not isinstance(value, list) or len(value) == 0:
            return f"at least one {label} is required"
    return None


def _stamp_question_ids(questions: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    if questions is None:
        return None
    return [{**q, "id": q.get("id") or str(uuid.uuid4())} for q in questions]


# ----- reads and views -----

def can_view_draft(design: models.Design, user: models.User | None) -> bool:
    if user is None:
        return False
    return design.is_author(user.id) or bool(user.is_admin)


def get_design(db: Session, design_id: UUID) -> models.Design:
    design = db.get(models.Design, design_id)
    if not design:
        raise NotFound("Design not found")
    return design


def get_visible_design(db: Session, design_id: UUID, user: models.User | None) -> models.Design:
    """Load a design, answering NotFound for drafts the caller may not see."""

    design = get_design(db, design_id)
    if design.status == "draft" and not can_view_draft(design, user):
        raise NotFound("Design not found")
    return design


def lock_design(db: Session, design_id: UUID) -> models.Design:
    """Load a design holding its row lock until the surrounding transaction ends."""

    design = (
        db.query(models.Design)
        .filter(models.Design.id == design_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not design:
        raise NotFound("Design not found")
    return design


def design_view(design: models.Design, *, include_draft: bool = False) -> dict[str, Any]:
    """Public document, or the draft merged over it for authors.

    System fields always come from the design row so a draft can never
    override status, counters, authorship or lineage.
    """

    view: dict[str, Any] = {field: getattr(design, field) for field in models.CONTENT_FIELDS}
    for field in models.SYSTEM_FIELDS:
        view[field] = getattr(design, field)
    for field in _LIST_FIELDS:
        if view[field] is None:
            view[field] = []
    view["pending_changelog"] = None
    if include_draft and design.has_draft_changes and design.draft is not None:
        draft_data = design.draft.data or {}
        for field in models.CONTENT_FIELDS:
            if field in draft_data:
                view[field] = draft_data[field]
        view["pending_changelog"] = design.draft.pending_changelog
    return view


def view_for(design: models.Design, user: models.User | None) -> dict[str, Any]:
    return design_view(design, include_draft=can_view_draft(design, user))


def _public_snapshot(design: models.Design) -> dict[str, Any]:
    return schemas.DesignOut.model_validate(design_view(design)).model_dump(mode="json")


def list_public_designs(
    db: Session,
    *,
    discipline: str | None = None,
    difficulty: str | None = None,
    limit: int = 20,
    after: UUID | None = None,
) -> tuple[list[models.Design], UUID | None]:
    """Return one page of public designs, newest first, and the next cursor."""

    limit = max(1, min(limit, 100))
    query = db.query(models.Design).filter(models.Design.is_public == True)
    if difficulty and difficulty in DIFFICULTY_LEVELS:
        query = query.filter(models.Design.difficulty_level == difficulty)
    if after is not None:
        cursor = db.get(models.Design, after)
        if cursor is None or not cursor.is_public:
            raise ValidationError("Invalid cursor")
        query = query.filter(
            (models.Design.created_at < cursor.created_at)
            | ((models.Design.created_at == cursor.created_at) & (models.Design.id < cursor.id))
        )
    query = query.order_by(models.Design.created_at.desc(), models.Design.id.desc())

    page: list[models.Design] = []
    # discipline tags live in a JSON list, so the tag filter runs in memory
    for design in query.yield_per(100):
        if discipline and discipline not in (design.discipline_tags or []):
            continue
        page.append(design)
        if len(page) > limit:
            break
    next_cursor = page[limit - 1].id if len(page) > limit else None
    return page[:limit], next_cursor


def list_my_designs(db: Session, user: models.User) -> list[models.Design]:
    # author_ids is a JSON list, so membership is checked in memory
    query = db.query(models.Design).order_by(models.Design.updated_at.desc())
    return [design for design in query.yield_per(100) if design.is_author(user.id)]


def list_versions(db: Session, design_id: UUID, user: models.User | None) -> list[models.DesignVersion]:
    get_visible_design(db, design_id, user)
    return (
        db.query(models.DesignVersion)
        .filter(models.DesignVersion.design_id == design_id)
        .order_by(models.DesignVersion.version_number.asc())
        .all()
    )


def get_version(
    db: Session, design_id: UUID, version_number: int, user: models.User | None
) -> models.DesignVersion:
    get_visible_design(db, design_id, user)
    snapshot = (
        db.query(models.DesignVersion)
        .filter(
            models.DesignVersion.design_id == design_id,
            models.DesignVersion.version_number == version_number,
        )
        .first()
    )
    if not snapshot:
        raise NotFound("Version not found")
    return snapshot


# ----- writes -----

def create_design(db: Session, payload: schemas.DesignCreate, *, author: models.User) -> models.Design:
    content = payload.model_dump(mode="json")
    error = validate_content(content)
    if error:
        raise ValidationError(error)
    content["title"] = content["title"].strip()
    content["research_questions"] = _stamp_question_ids(content["research_questions"])
    for field in _LIST_FIELDS:
        if content.get(field) is None:
            content[field] = []
    if content.get("seeking_collaborators") is None:
        content["seeking_collaborators"] = False

    design = models.Design(
        **content,
        status="draft",
        is_public=False,
        version=1,
        published_version=0,
        has_draft_changes=False,
        owner_id=author.id,
        author_ids=[str(author.id)],
        review_status="unreviewed",
        review_count=0,
        execution_count=0,
        derived_design_count=0,
    )
    db.add(design)
    db.commit()
    db.refresh(design)
    logger.info("Design %s created by %s", design.id, author.id)
    return design


def _validate_patch(design: models.Design, patch: dict[str, Any]) -> None:
    if design.execution_count >= 1:
        attempted = [field for field in models.LOCKED_FIELDS if field in patch]
        if attempted:
            raise Forbidden(
                "Design is locked after execution. Cannot change: "
                f"{', '.join(attempted)}. Fork this design to modify methodology."
            )
    if "title" in patch:
        title = patch["title"]
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("title cannot be empty")
        error = _title_error(title)
        if error:
            raise ValidationError(error)
    if "discipline_tags" in patch:
        error = _tags_error(patch["discipline_tags"])
        if error:
            raise ValidationError(error)
    if "difficulty_level" in patch:
        error = _difficulty_error(patch["difficulty_level"])
        if error:
            raise ValidationError(error)


def seed_draft(design: models.Design, patch: dict[str, Any] | None = None) -> bool:
    """Create or extend the shadow draft of a published design.

    Returns True when a new draft was seeded from the current public content.
    """

    patch = dict(patch or {})
    changelog = patch.pop("pending_changelog", None)
    created = False
    if design.draft is None:
        design.draft = models.DesignDraft(
            data={**design.content(), **patch},
            pending_changelog=changelog,
        )
        created = True
    else:
        design.draft.data = {**(design.draft.data or {}), **patch}
        if changelog is not None:
            design.draft.pending_changelog = changelog
        design.draft.updated_at = _now()
    design.has_draft_changes = True
    return created


def update_design(
    db: Session, design_id: UUID, payload: schemas.DesignUpdate, *, user: models.User
) -> models.Design:
    design = lock_design(db, design_id)
    if design.status == "draft" and not can_view_draft(design, user):
        raise NotFound("Design not found")
    if not design.is_author(user.id):
        raise Forbidden("Not an author")

    patch = payload.model_dump(mode="json", exclude_unset=True)
    _validate_patch(design, patch)
    if "title" in patch:
        patch["title"] = patch["title"].strip()
    if "research_questions" in patch:
        patch["research_questions"] = _stamp_question_ids(patch["research_questions"]) or []
    for field in _LIST_FIELDS & set(patch):
        if patch[field] is None:
            patch[field] = []

    if design.status == "draft":
        patch.pop("pending_changelog", None)
        for field, value in patch.items():
            setattr(design, field, value)
    else:
        seed_draft(design, patch)

    design.version = models.Design.version + 1
    design.updated_at = _now()
    db.commit()
    db.refresh(design)
    return design


def _supersede_reviews(db: Session, design: models.Design, version_number: int) -> None:
    db.query(models.DesignReview).filter(
        models.DesignReview.design_id == design.id,
        models.DesignReview.version_number == version_number,
        models.DesignReview.status == "active",
    ).update({"status": "superseded", "updated_at": _now()}, synchronize_session=False)
    db.query(models.ReviewSuggestion).filter(
        models.ReviewSuggestion.design_id == design.id,
        models.ReviewSuggestion.version_number == version_number,
        models.ReviewSuggestion.status == "open",
    ).update({"status": "superseded", "updated_at": _now()}, synchronize_session=False)


def _reviewers_with_accepted_suggestions(db: Session, design_id: UUID, version_number: int) -> list[str]:
    rows = (
        db.query(models.DesignReview.reviewer_id)
        .join(models.ReviewSuggestion, models.ReviewSuggestion.review_id == models.DesignReview.id)
        .filter(
            models.DesignReview.design_id == design_id,
            models.DesignReview.version_number == version_number,
            models.ReviewSuggestion.status == "accepted",
        )
        .distinct()
        .all()
    )
    return [str(row[0]) for row in rows]


def _referenced_designs(db: Session, design: models.Design, previous: list[str]) -> list[models.Design]:
    referenced: list[models.Design] = []
    for raw in design.reference_experiment_ids or []:
        if raw in previous:
            continue
        try:
            ref_id = UUID(str(raw))
        except ValueError:
            continue
        if ref_id == design.id:
            continue
        ref = db.get(models.Design, ref_id)
        if ref is not None and ref.is_public:
            referenced.append(ref)
    return referenced


def publish_design(
    db: Session,
    design_id: UUID,
    payload: schemas.DesignPublish | None,
    *,
    user: models.User,
) -> models.Design:
    design = lock_design(db, design_id)
    if design.status == "draft" and not can_view_draft(design, user):
        raise NotFound("Design not found")
    if not design.is_author(user.id):
        raise Forbidden("Not an author")

    requested_changelog = (payload.changelog or "").strip() if payload else ""
    previous_version = design.published_version
    previous_references: list[str] = []
    accepted_reviewers: list[str] = []

    if design.status == "draft":
        error = validate_content(design.content())
        if error:
            raise ValidationError(f"Cannot publish: {error}")
        changelog = requested_changelog or None
        design.status = "published"
        design.is_public = True
        design.published_version = 1
        design.has_draft_changes = False
    elif design.status in ("published", "locked"):
        if not design.has_draft_changes or design.draft is None:
            raise ValidationError("No unpublished changes to publish")
        draft = design.draft
        draft_content = {field: draft.data.get(field, getattr(design, field)) for field in models.CONTENT_FIELDS}
        error = validate_content(draft_content)
        if error:
            raise ValidationError(f"Cannot publish: {error}")
        if design.execution_count >= 1:
            changed = [
                field
                for field in models.LOCKED_FIELDS
                if draft_content.get(field) != getattr(design, field)
            ]
            if changed:
                raise Forbidden(
                    f"Design is locked after execution. Cannot change: {', '.join(changed)}. "
                    "Fork this design to modify methodology."
                )
        changelog = requested_changelog or (draft.pending_changelog or "").strip() or None
        previous_references = list(design.reference_experiment_ids or [])
        accepted_reviewers = _reviewers_with_accepted_suggestions(db, design.id, previous_version)
        for field, value in draft_content.items():
            setattr(design, field, value)
        design.published_version = models.Design.published_version + 1
        design.has_draft_changes = False
        design.draft = None
        _supersede_reviews(db, design, previous_version)
    else:
        raise ValidationError("Design cannot be published in its current state")

    design.updated_at = _now()
    db.flush()
    db.refresh(design)
    snapshot = models.DesignVersion(
        design_id=design.id,
        version_number=design.published_version,
        published_at=_now(),
        published_by=user.id,
        changelog=changelog,
        data=_public_snapshot(design),
    )
    db.add(snapshot)
    referenced = _referenced_designs(db, design, previous_references)
    db.commit()
    db.refresh(design)
    logger.info("Design %s published as version %s", design.id, design.published_version)

    ledger.record_many(
        design.author_ids,
        ledger.DESIGN_PUBLISHED,
        design_id=design.id,
        design_version=design.published_version,
    )
    for ref in referenced:
        ledger.record_many(
            ref.author_ids,
            ledger.DESIGN_REFERENCED_BY_DESIGN,
            design_id=ref.id,
            referencing_design_id=design.id,
        )
    if accepted_reviewers:
        ledger.record_many(
            accepted_reviewers,
            ledger.DESIGN_VERSION_PUBLISHED_WITH_ACCEPTED_SUGGESTION,
            design_id=design.id,
            design_version=design.published_version,
        )
    if design.published_version > 1:
        coauthors = [uid for uid in design.author_ids if uid != str(user.id)]
        if coauthors:
            publisher = notify.display_name(db, user.id)
            notify.notify_users(
                coauthors,
                {
                    "type": "experiment_new_version_coauthor",
                    "message": f'{publisher} published version {design.published_version} of "{design.title}"',
                    "link": f"/designs/{design.id}",
                    "actor_id": str(user.id),
                    "actor_name": publisher,
                    "design_id": str(design.id),
                    "design_title": design.title,
                },
            )
    return design


def fork_design(
    db: Session, design_id: UUID, payload: schemas.DesignFork, *, user: models.User
) -> models.Design:
    rationale = (payload.fork_rationale or "").strip()
    if not payload.fork_type or not rationale:
        raise ValidationError("fork_type and fork_rationale are required")

    source = get_design(db, design_id)
    if source.status == "draft":
        raise Forbidden("Cannot fork a draft. The design must be published first")

    parent_generation = (source.fork_metadata or {}).get("fork_generation", 0)
    content = copy.deepcopy(source.content())
    content["title"] = f"{FORK_TITLE_PREFIX}{source.title}"[:MAX_TITLE_LENGTH]
    forked = models.Design(
        **content,
        id=uuid.uuid4(),
        status="draft",
        is_public=False,
        version=1,
        published_version=0,
        has_draft_changes=False,
        owner_id=user.id,
        author_ids=[str(user.id)],
        review_status="unreviewed",
        review_count=0,
        execution_count=0,
        derived_design_count=0,
        fork_metadata={
            "parent_design_id": str(source.id),
            "fork_generation": parent_generation + 1,
            "fork_type": payload.fork_type,
            "fork_rationale": rationale,
        },
    )
    db.add(forked)
    db.query(models.Design).filter(models.Design.id == source.id).update(
        {models.Design.derived_design_count: models.Design.derived_design_count + 1},
        synchronize_session=False,
    )
    db.commit()
    db.refresh(forked)

    ledger.record_many(
        source.author_ids,
        ledger.DESIGN_DERIVED_CREATED,
        design_id=source.id,
        fork_design_id=forked.id,
    )
    return forked


def delete_design(db: Session, design_id: UUID, *, user: models.User) -> None:
    design = get_visible_design(db, design_id, user)
    if not design.is_author(user.id) and not user.is_admin:
        raise Forbidden("Not an author")
    if design.status != "draft":
        raise Forbidden("Only drafts can be deleted")
    db.delete(design)
    db.commit()
