from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user, get_optional_user
from ..services import reviews as review_service
from .. import models, schemas

router = APIRouter(prefix="/api/designs", tags=["reviews"])


def _endorsement_out(review: models.DesignReview) -> schemas.EndorsementOut:
    return schemas.EndorsementOut(
        review_id=review.id,
        reviewer_id=review.reviewer_id,
        comment=review.general_comment,
        version_number=review.version_number,
        created_at=review.created_at,
    )


@router.post("/{design_id}/reviews", response_model=schemas.ReviewOut, status_code=201)
async def submit_review(
    design_id: UUID,
    payload: schemas.ReviewCreate,
    response: Response,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    review, created = review_service.submit_review(db, design_id, payload, user=user)
    if not created:
        response.status_code = 200
    return review


@router.get("/{design_id}/reviews", response_model=list[schemas.ReviewOut])
async def list_reviews(
    design_id: UUID,
    version: Optional[int] = Query(None, ge=1, description="Only reviews of this published version"),
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    return review_service.list_reviews(db, design_id, user, version=version)


@router.get("/{design_id}/reviews/{review_id}", response_model=schemas.ReviewOut)
async def get_review(
    design_id: UUID,
    review_id: UUID,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    return review_service.get_review(db, design_id, review_id, user)


@router.post("/{design_id}/endorsements", response_model=schemas.EndorsementOut, status_code=201)
async def endorse_design(
    design_id: UUID,
    payload: schemas.EndorsementCreate,
    response: Response,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    review, created = review_service.endorse_design(db, design_id, payload, user=user)
    if not created:
        response.status_code = 200
    return _endorsement_out(review)


@router.get("/{design_id}/endorsements", response_model=list[schemas.EndorsementOut])
async def list_endorsements(
    design_id: UUID,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    return [_endorsement_out(r) for r in review_service.list_endorsements(db, design_id, user)]


@router.get("/{design_id}/review-summary", response_model=schemas.ReviewSummaryOut)
async def review_summary(
    design_id: UUID,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    return review_service.review_summary(db, design_id, user)


@router.post(
    "/{design_id}/reviews/{review_id}/suggestions/{suggestion_id}/accept",
    response_model=schemas.SuggestionAcceptOut,
)
async def accept_suggestion(
    design_id: UUID,
    review_id: UUID,
    suggestion_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    suggestion, draft_created = review_service.accept_suggestion(
        db, design_id, review_id, suggestion_id, user=user
    )
    return {"suggestion": suggestion, "draft_created": draft_created}


@router.post(
    "/{design_id}/reviews/{review_id}/suggestions/{suggestion_id}/close",
    response_model=schemas.SuggestionOut,
)
async def close_suggestion(
    design_id: UUID,
    review_id: UUID,
    suggestion_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return review_service.close_suggestion(db, design_id, review_id, suggestion_id, user=user)


@router.post(
    "/{design_id}/reviews/{review_id}/suggestions/{suggestion_id}/reply",
    response_model=schemas.SuggestionOut,
)
async def reply_suggestion(
    design_id: UUID,
    review_id: UUID,
    suggestion_id: UUID,
    payload: schemas.SuggestionReply,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return review_service.reply_suggestion(
        db, design_id, review_id, suggestion_id, payload, user=user
    )
