"""Peer review, endorsement and suggestion handling for published designs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .. import ledger, models, notify, schemas
from ..errors import Conflict, Forbidden, NotFound, ValidationError
from .designs import get_design, get_visible_design, lock_design, seed_draft

# purpose: one review per reviewer per published version, owner-side suggestion triage
# status: active
# depends_on: openbench.services.designs (seed_draft), openbench.ledger

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require_reviewable(db: Session, design_id: UUID, user: models.User) -> models.Design:
    design = get_design(db, design_id)
    if design.status != "published":
        if design.status == "locked":
            raise Forbidden("This design is locked because executions have begun.")
        raise Forbidden("This design is not published and cannot be reviewed.")
    if design.execution_count > 0:
        raise Forbidden("This design is locked because executions have begun.")
    if design.is_author(user.id):
        raise Forbidden("You cannot review your own design.")
    return design


def _validate_suggestions(suggestions: list[schemas.SuggestionCreate]) -> None:
    for index, suggestion in enumerate(suggestions):
        if not _clean(suggestion.proposed_text) and not _clean(suggestion.comment):
            raise ValidationError(
                f"suggestions[{index}]: at least one of proposed_text or comment is required."
            )
        field_ref = _clean(suggestion.field_ref)
        new_field_name = _clean(suggestion.new_field_name)
        if field_ref and new_field_name:
            raise ValidationError(
                f"suggestions[{index}]: field_ref and new_field_name are mutually exclusive."
            )
        if not field_ref and not new_field_name:
            raise ValidationError(
                f"suggestions[{index}]: one of field_ref or new_field_name is required."
            )


def _build_suggestions(
    design: models.Design, suggestions: list[schemas.SuggestionCreate]
) -> list[models.ReviewSuggestion]:
    now = _now()
    return [
        models.ReviewSuggestion(
            design_id=design.id,
            version_number=design.published_version,
            field_ref=_clean(s.field_ref),
            new_field_name=_clean(s.new_field_name),
            proposed_text=_clean(s.proposed_text),
            comment=_clean(s.comment),
            suggestion_type=s.suggestion_type,
            status="open",
            created_at=now,
            updated_at=now,
        )
        for s in suggestions
    ]


def _find_review(db: Session, design: models.Design, reviewer_id: UUID) -> models.DesignReview | None:
    return (
        db.query(models.DesignReview)
        .filter(
            models.DesignReview.design_id == design.id,
            models.DesignReview.reviewer_id == reviewer_id,
            models.DesignReview.version_number == design.published_version,
        )
        .first()
    )


def _count_first_review(db: Session, design: models.Design) -> None:
    db.execute(
        sa.update(models.Design)
        .where(models.Design.id == design.id)
        .values(
            review_count=models.Design.review_count + 1,
            review_status=sa.case(
                (models.Design.review_status == "unreviewed", "under_review"),
                else_=models.Design.review_status,
            ),
        )
        .execution_options(synchronize_session=False)
    )


def _commit_new_review(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("A review for this version was submitted concurrently; resubmit to update it.") from exc


def _announce_new_review(db: Session, design: models.Design, review: models.DesignReview, reviewer: models.User) -> None:
    authors = [uid for uid in design.author_ids if uid != str(reviewer.id)]
    if authors:
        reviewer_name = notify.display_name(db, reviewer.id)
        notify.notify_users(
            authors,
            {
                "type": "experiment_review_received",
                "message": f'{reviewer_name} submitted a review on "{design.title}"',
                "link": f"/designs/{design.id}",
                "actor_id": str(reviewer.id),
                "actor_name": reviewer_name,
                "design_id": str(design.id),
                "design_title": design.title,
                "review_id": str(review.id),
            },
        )
    ledger.record(
        reviewer.id,
        ledger.DESIGN_REVIEW_SUBMITTED,
        design_id=design.id,
        design_version=review.version_number,
        review_id=review.id,
    )


def _award_endorsement(design: models.Design, review: models.DesignReview) -> None:
    ledger.record_many(
        design.author_ids,
        ledger.DESIGN_ENDORSED,
        design_id=design.id,
        design_version=review.version_number,
        review_id=review.id,
    )


def submit_review(
    db: Session, design_id: UUID, payload: schemas.ReviewCreate, *, user: models.User
) -> tuple[models.DesignReview, bool]:
    """Create the caller's review for the current version, or replace it in place.

    Returns the review and whether it was newly created.
    """

    design = _require_reviewable(db, design_id, user)
    general_comment = _clean(payload.general_comment)
    suggestions = list(payload.suggestions or [])

    if not general_comment and not suggestions and not payload.endorsement:
        raise ValidationError(
            "A review must include at least one of: general_comment, suggestions, or endorsement."
        )
    if payload.endorsement and not general_comment:
        raise ValidationError("general_comment is required when endorsement is true.")
    _validate_suggestions(suggestions)

    review = _find_review(db, design, user.id)
    created = review is None
    if created:
        review = models.DesignReview(
            design_id=design.id,
            version_number=design.published_version,
            reviewer_id=user.id,
            status="active",
        )
        db.add(review)
        _count_first_review(db, design)
    review.general_comment = general_comment
    review.readiness_signal = payload.readiness_signal
    review.endorsement = payload.endorsement
    review.status = "active"
    review.updated_at = _now()
    review.suggestions = _build_suggestions(design, suggestions)

    if created:
        _commit_new_review(db)
    else:
        db.commit()
    db.refresh(review)

    if created:
        _announce_new_review(db, design, review, user)
        if review.endorsement:
            _award_endorsement(design, review)
    return review, created


def endorse_design(
    db: Session, design_id: UUID, payload: schemas.EndorsementCreate, *, user: models.User
) -> tuple[models.DesignReview, bool]:
    design = _require_reviewable(db, design_id, user)
    comment = _clean(payload.comment)
    if not comment:
        raise ValidationError("comment is required for an endorsement.")

    review = _find_review(db, design, user.id)
    if review is not None and review.endorsement:
        return review, False

    created = review is None
    if created:
        review = models.DesignReview(
            design_id=design.id,
            version_number=design.published_version,
            reviewer_id=user.id,
            general_comment=comment,
            readiness_signal=None,
            status="active",
        )
        db.add(review)
        _count_first_review(db, design)
    elif not review.general_comment:
        review.general_comment = comment
    review.endorsement = True
    review.updated_at = _now()

    if created:
        _commit_new_review(db)
    else:
        db.commit()
    db.refresh(review)

    if created:
        _announce_new_review(db, design, review, user)
    _award_endorsement(design, review)
    return review, created


def list_reviews(
    db: Session, design_id: UUID, user: models.User | None, *, version: int | None = None
) -> list[models.DesignReview]:
    get_visible_design(db, design_id, user)
    query = (
        db.query(models.DesignReview)
        .options(selectinload(models.DesignReview.suggestions))
        .filter(models.DesignReview.design_id == design_id)
    )
    if version is not None:
        query = query.filter(models.DesignReview.version_number == version)
    return query.order_by(models.DesignReview.created_at.desc()).all()


def get_review(db: Session, design_id: UUID, review_id: UUID, user: models.User | None) -> models.DesignReview:
    get_visible_design(db, design_id, user)
    review = db.get(models.DesignReview, review_id)
    if not review or review.design_id != design_id:
        raise NotFound("Review not found")
    return review


def list_endorsements(db: Session, design_id: UUID, user: models.User | None) -> list[models.DesignReview]:
    get_visible_design(db, design_id, user)
    return (
        db.query(models.DesignReview)
        .filter(
            models.DesignReview.design_id == design_id,
            models.DesignReview.endorsement == True,
        )
        .order_by(models.DesignReview.created_at.desc())
        .all()
    )


def review_summary(db: Session, design_id: UUID, user: models.User | None) -> schemas.ReviewSummaryOut:
    design = get_visible_design(db, design_id, user)
    reviews = (
        db.query(models.DesignReview)
        .filter(
            models.DesignReview.design_id == design.id,
            models.DesignReview.version_number == design.published_version,
        )
        .all()
    )
    endorsement_count = sum(1 for r in reviews if r.endorsement)
    is_locked = design.status == "locked" or design.execution_count > 0
    user_has_reviewed = None
    if user is not None:
        user_has_reviewed = any(r.reviewer_id == user.id for r in reviews)
    return schemas.ReviewSummaryOut(
        endorsement_count=endorsement_count,
        review_count=len(reviews) - endorsement_count,
        version_number=design.published_version,
        is_locked=is_locked,
        reviewable=design.status == "published" and not is_locked,
        user_has_reviewed=user_has_reviewed,
    )


# ----- owner-side suggestion management -----

def _owner_suggestion(
    db: Session,
    design_id: UUID,
    review_id: UUID,
    suggestion_id: UUID,
    user: models.User,
) -> tuple[models.Design, models.ReviewSuggestion]:
    """Lock the design and re-read the suggestion inside the same transaction."""

    design = lock_design(db, design_id)
    if not design.is_author(user.id):
        raise Forbidden("Only the design owner can manage suggestions.")
    suggestion = (
        db.query(models.ReviewSuggestion)
        .filter(models.ReviewSuggestion.id == suggestion_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not suggestion or suggestion.review_id != review_id or suggestion.design_id != design_id:
        raise NotFound("Suggestion not found")
    return design, suggestion


def _resolve_open(db: Session, suggestion: models.ReviewSuggestion, status: str, verb: str) -> None:
    if suggestion.status != "open":
        db.rollback()
        raise ValidationError(f"Only open suggestions can be {verb}.")
    # conditional write so only one resolution of an open suggestion wins
    result = db.execute(
        sa.update(models.ReviewSuggestion)
        .where(
            models.ReviewSuggestion.id == suggestion.id,
            models.ReviewSuggestion.status == "open",
        )
        .values(status=status, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ValidationError(f"Only open suggestions can be {verb}.")


def _notify_reviewer(
    db: Session,
    design: models.Design,
    suggestion: models.ReviewSuggestion,
    actor: models.User,
    action: str,
    message: str,
) -> None:
    reviewer_id = suggestion.review.reviewer_id
    if reviewer_id == actor.id:
        return
    notify.notify_users(
        [reviewer_id],
        {
            "type": "review_interaction",
            "review_action": action,
            "message": message,
            "link": f"/designs/{design.id}",
            "actor_id": str(actor.id),
            "design_id": str(design.id),
            "design_title": design.title,
            "review_id": str(suggestion.review_id),
        },
    )


def accept_suggestion(
    db: Session,
    design_id: UUID,
    review_id: UUID,
    suggestion_id: UUID,
    *,
    user: models.User,
) -> tuple[models.ReviewSuggestion, bool]:
    """Accept an open suggestion, seeding a draft so the owner can work it in."""

    design, suggestion = _owner_suggestion(db, design_id, review_id, suggestion_id, user)
    _resolve_open(db, suggestion, "accepted", "accepted")
    draft_created = False
    if design.draft is None:
        draft_created = seed_draft(design)
        design.version = models.Design.version + 1
        design.updated_at = _now()
    db.commit()
    db.refresh(suggestion)
    db.refresh(design)

    _notify_reviewer(
        db,
        design,
        suggestion,
        user,
        "accepted",
        f'Your suggestion on "{design.title}" was accepted',
    )
    reviewer_id = suggestion.review.reviewer_id
    context = dict(
        design_id=design.id,
        design_version=suggestion.version_number,
        review_id=suggestion.review_id,
        suggestion_id=suggestion.id,
    )
    ledger.record(reviewer_id, ledger.REVIEW_SUGGESTION_ACCEPTED_ON_DESIGN, **context)
    if suggestion.suggestion_type == "safety_concern":
        ledger.record(reviewer_id, ledger.SAFETY_SUGGESTION_ACCEPTED, **context)
    return suggestion, draft_created


def close_suggestion(
    db: Session,
    design_id: UUID,
    review_id: UUID,
    suggestion_id: UUID,
    *,
    user: models.User,
) -> models.ReviewSuggestion:
    design, suggestion = _owner_suggestion(db, design_id, review_id, suggestion_id, user)
    _resolve_open(db, suggestion, "closed", "closed")
    db.commit()
    db.refresh(suggestion)

    _notify_reviewer(
        db,
        design,
        suggestion,
        user,
        "closed",
        f'Your suggestion on "{design.title}" was closed',
    )
    return suggestion


def reply_suggestion(
    db: Session,
    design_id: UUID,
    review_id: UUID,
    suggestion_id: UUID,
    payload: schemas.SuggestionReply,
    *,
    user: models.User,
) -> models.ReviewSuggestion:
    design, suggestion = _owner_suggestion(db, design_id, review_id, suggestion_id, user)
    reply = _clean(payload.reply)
    if not reply:
        raise ValidationError("Reply text is required.")
    if suggestion.owner_reply is not None:
        raise Conflict("A reply has already been sent for this suggestion.")

    # conditional write keeps the reply set-once under concurrent attempts
    result = db.execute(
        sa.update(models.ReviewSuggestion)
        .where(
            models.ReviewSuggestion.id == suggestion.id,
            models.ReviewSuggestion.owner_reply.is_(None),
        )
        .values(owner_reply=reply, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("A reply has already been sent for this suggestion.")
    db.commit()
    db.refresh(suggestion)

    _notify_reviewer(
        db,
        design,
        suggestion,
        user,
        "replied",
        f'The author of "{design.title}" replied to your suggestion',
    )
    return suggestion
