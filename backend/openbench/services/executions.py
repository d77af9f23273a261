"""Execution lock controller.

Starting the first execution of a published design locks its methodology;
cancelling the last one unlocks it again. Start relies on a single conditional
UPDATE for the counter and the status flip. Cancel re-reads the design under a
row lock and decides the unlock inside the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models, notify, schemas
from ..errors import Forbidden, NotFound, ValidationError
from .designs import get_design, get_visible_design, lock_design

# status: active
# depends_on: openbench.services.designs (lock_design), openbench.models.DesignExecution

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_execution(db: Session, execution_id: UUID) -> models.DesignExecution:
    execution = db.get(models.DesignExecution, execution_id)
    if not execution:
        raise NotFound("Execution not found")
    return execution


def list_executions(db: Session, design_id: UUID, user: models.User | None) -> list[models.DesignExecution]:
    get_visible_design(db, design_id, user)
    return (
        db.query(models.DesignExecution)
        .filter(models.DesignExecution.design_id == design_id)
        .order_by(models.DesignExecution.created_at.desc())
        .all()
    )


def _lock_open_reviews(db: Session, design_id: UUID, version_number: int) -> None:
    db.query(models.DesignReview).filter(
        models.DesignReview.design_id == design_id,
        models.DesignReview.version_number == version_number,
        models.DesignReview.status == "active",
    ).update({"status": "locked", "updated_at": _now()}, synchronize_session=False)
    db.query(models.ReviewSuggestion).filter(
        models.ReviewSuggestion.design_id == design_id,
        models.ReviewSuggestion.version_number == version_number,
        models.ReviewSuggestion.status == "open",
    ).update({"status": "locked", "updated_at": _now()}, synchronize_session=False)


def start_execution(db: Session, design_id: UUID, *, user: models.User) -> models.DesignExecution:
    design = get_design(db, design_id)
    if design.status == "draft":
        raise ValidationError("Only published designs can be executed")
    if design.status == "published" and design.has_draft_changes:
        raise ValidationError("The author of this experiment is working on a new draft version")

    execution = models.DesignExecution(
        design_id=design.id,
        design_version=design.published_version,
        design_title=design.title,
        experimenter_id=user.id,
        co_experimenter_ids=[],
        start_date=_now(),
        methodology_deviations="",
        status="in_progress",
    )
    db.add(execution)

    # counter and lock flip in one statement; the guard re-checks the draft rule
    result = db.execute(
        sa.update(models.Design)
        .where(
            models.Design.id == design.id,
            models.Design.status != "draft",
            sa.not_(
                sa.and_(
                    models.Design.status == "published",
                    models.Design.has_draft_changes == True,
                )
            ),
        )
        .values(
            execution_count=models.Design.execution_count + 1,
            status=sa.case(
                (models.Design.status == "published", "locked"),
                else_=models.Design.status,
            ),
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ValidationError("The author of this experiment is working on a new draft version")

    _lock_open_reviews(db, design.id, design.published_version)
    db.commit()
    db.refresh(execution)
    db.refresh(design)
    logger.info("Execution %s started on design %s", execution.id, design.id)

    authors = [uid for uid in design.author_ids if uid != str(user.id)]
    if authors:
        experimenter = notify.display_name(db, user.id)
        notify.notify_users(
            authors,
            {
                "type": "experiment_started",
                "message": f'{experimenter} started running your experiment "{design.title}"',
                "link": f"/executions/{execution.id}",
                "actor_id": str(user.id),
                "actor_name": experimenter,
                "design_id": str(design.id),
                "design_title": design.title,
                "execution_id": str(execution.id),
            },
        )
    return execution


def _require_lead_in_progress(execution: models.DesignExecution, user: models.User, action: str) -> None:
    if execution.experimenter_id != user.id:
        raise Forbidden(f"Only the lead experimenter can {action} this execution")
    if execution.status != "in_progress":
        if action == "cancel":
            raise ValidationError("Only in-progress executions can be cancelled")
        raise ValidationError("Cannot update a completed or cancelled execution")


def update_execution(
    db: Session,
    execution_id: UUID,
    payload: schemas.ExecutionUpdate,
    *,
    user: models.User,
) -> models.DesignExecution:
    execution = get_execution(db, execution_id)
    _require_lead_in_progress(execution, user, "update")

    previous = {str(uid) for uid in (execution.co_experimenter_ids or [])}
    changes = payload.model_dump(exclude_unset=True)
    if "co_experimenter_ids" in changes:
        # order preserved, duplicates dropped
        execution.co_experimenter_ids = list(
            dict.fromkeys(str(uid) for uid in (changes["co_experimenter_ids"] or []))
        )
    if changes.get("start_date") is not None:
        execution.start_date = changes["start_date"]
    if "methodology_deviations" in changes:
        execution.methodology_deviations = changes["methodology_deviations"] or ""
    execution.updated_at = _now()
    db.commit()
    db.refresh(execution)

    if "co_experimenter_ids" in changes:
        current = set(execution.co_experimenter_ids or [])
        actor = str(user.id)
        added = [uid for uid in execution.co_experimenter_ids if uid not in previous and uid != actor]
        removed = sorted(uid for uid in previous - current if uid != actor)
        if added or removed:
            actor_name = notify.display_name(db, user.id)
            context = {
                "link": f"/executions/{execution.id}",
                "actor_id": actor,
                "actor_name": actor_name,
                "design_id": str(execution.design_id),
                "design_title": execution.design_title,
                "execution_id": str(execution.id),
            }
            notify.notify_users(
                added,
                {
                    "type": "added_as_co_experimenter",
                    "message": f'{actor_name} added you as a co-experimenter on "{execution.design_title}"',
                    **context,
                },
            )
            notify.notify_users(
                removed,
                {
                    "type": "removed_as_co_experimenter",
                    "message": f'{actor_name} removed you from the experiment run of "{execution.design_title}"',
                    **context,
                },
            )
    return execution


def cancel_execution(db: Session, execution_id: UUID, *, user: models.User) -> models.Design:
    """Delete an in-progress execution and unlock the design when it was the last one."""

    execution = get_execution(db, execution_id)
    _require_lead_in_progress(execution, user, "cancel")

    try:
        design = lock_design(db, execution.design_id)
        # a concurrent cancel may have removed the row after the first read
        execution = (
            db.query(models.DesignExecution)
            .filter_by(id=execution_id, status="in_progress")
            .populate_existing()
            .with_for_update()
            .first()
        )
        if execution is None:
            raise NotFound("Execution not found")
        db.delete(execution)
        if design.execution_count > 0:
            design.execution_count = models.Design.execution_count - 1
        design.updated_at = _now()
        db.flush()
        db.refresh(design)
        if design.execution_count <= 0 and design.status == "locked":
            design.status = "published"
        db.commit()
    except NotFound:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.exception("Cancelling execution %s failed", execution_id)
        raise
    db.refresh(design)
    logger.info("Execution %s cancelled; design %s now %s", execution_id, design.id, design.status)
    return design
