from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user, get_optional_user
from ..services import designs as design_service
from .. import models, schemas

router = APIRouter(prefix="/api/designs", tags=["designs"])


@router.post("", response_model=schemas.DesignOut, status_code=201)
async def create_design(
    payload: schemas.DesignCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    design = design_service.create_design(db, payload, author=user)
    return design_service.view_for(design, user)


@router.get("", response_model=schemas.DesignPage)
async def list_designs(
    discipline: Optional[str] = Query(None, description="Only designs tagged with this discipline"),
    difficulty: Optional[str] = Query(None, description="Only designs at this difficulty level"),
    limit: int = Query(20, ge=1, le=100),
    after: Optional[UUID] = Query(None, description="Cursor returned as next_cursor"),
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    page, next_cursor = design_service.list_public_designs(
        db, discipline=discipline, difficulty=difficulty, limit=limit, after=after
    )
    items = [design_service.view_for(design, user) for design in page]
    return {"items": items, "count": len(items), "next_cursor": next_cursor}


@router.get("/mine", response_model=list[schemas.DesignOut])
async def list_my_designs(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return [
        design_service.design_view(design, include_draft=True)
        for design in design_service.list_my_designs(db, user)
    ]


@router.get("/{design_id}", response_model=schemas.DesignOut)
async def get_design(
    design_id: UUID,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    design = design_service.get_visible_design(db, design_id, user)
    return design_service.view_for(design, user)


@router.patch("/{design_id}", response_model=schemas.DesignOut)
async def update_design(
    design_id: UUID,
    payload: schemas.DesignUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    design = design_service.update_design(db, design_id, payload, user=user)
    return design_service.design_view(design, include_draft=True)


@router.delete("/{design_id}")
async def delete_design(
    design_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    design_service.delete_design(db, design_id, user=user)
    return {"message": "Design deleted"}


@router.post("/{design_id}/publish", response_model=schemas.DesignOut)
async def publish_design(
    design_id: UUID,
    payload: Optional[schemas.DesignPublish] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    design = design_service.publish_design(db, design_id, payload, user=user)
    return design_service.design_view(design, include_draft=True)


@router.post("/{design_id}/fork", response_model=schemas.DesignOut, status_code=201)
async def fork_design(
    design_id: UUID,
    payload: schemas.DesignFork,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    forked = design_service.fork_design(db, design_id, payload, user=user)
    return design_service.design_view(forked, include_draft=True)


@router.get("/{design_id}/versions", response_model=list[schemas.DesignVersionSummary])
async def list_versions(
    design_id: UUID,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    return design_service.list_versions(db, design_id, user)


@router.get("/{design_id}/versions/{version_number}", response_model=schemas.DesignVersionOut)
async def get_version(
    design_id: UUID,
    version_number: int,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    return design_service.get_version(db, design_id, version_number, user)
