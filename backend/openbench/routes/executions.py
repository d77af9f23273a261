from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user, get_optional_user
from ..services import executions as execution_service
from ..services.designs import get_visible_design
from .. import models, schemas

router = APIRouter(prefix="/api", tags=["executions"])


@router.post("/designs/{design_id}/executions", response_model=schemas.ExecutionOut, status_code=201)
async def start_execution(
    design_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return execution_service.start_execution(db, design_id, user=user)


@router.get("/designs/{design_id}/executions", response_model=list[schemas.ExecutionOut])
async def list_executions(
    design_id: UUID,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    return execution_service.list_executions(db, design_id, user)


@router.get("/executions/{execution_id}", response_model=schemas.ExecutionOut)
async def get_execution(
    execution_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    execution = execution_service.get_execution(db, execution_id)
    get_visible_design(db, execution.design_id, user)
    return execution


@router.patch("/executions/{execution_id}", response_model=schemas.ExecutionOut)
async def update_execution(
    execution_id: UUID,
    payload: schemas.ExecutionUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return execution_service.update_execution(db, execution_id, payload, user=user)


@router.delete("/executions/{execution_id}")
async def cancel_execution(
    execution_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    design = execution_service.cancel_execution(db, execution_id, user=user)
    return {
        "message": "Execution cancelled",
        "design_id": str(design.id),
        "design_status": design.status,
        "execution_count": design.execution_count,
    }
