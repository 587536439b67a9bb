import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app import schemas
from app.core.database import get_db, get_serializable_db
from app.core.exceptions import (
    ScheduleEngineError,
    concurrent_booking_detail,
    error_detail,
    is_serialization_failure,
    status_code_for,
)
from app.services import lifecycle

router = APIRouter(prefix="/sessions", tags=["sessions"])
logger = logging.getLogger(__name__)


@router.patch("/{session_id}/status", response_model=schemas.SessionResponse)
def change_session_status(session_id: int, update: schemas.SessionStatusUpdate, db: Session = Depends(get_db)):
    try:
        return lifecycle.change_session_status(db, session_id, update)
    except ScheduleEngineError as e:
        logger.warning("Session %s status change failed: %s", session_id, e)
        raise HTTPException(status_code=status_code_for(e), detail=error_detail(e))


@router.post(
    "/{session_id}/makeup",
    response_model=schemas.MakeupSessionResponse,
    status_code=201,
    summary="Move a session to another date, keeping the original for history",
)
def create_makeup_session(
    session_id: int,
    request: schemas.MakeupSessionRequest,
    db: Session = Depends(get_serializable_db),
):
    try:
        original, makeup = lifecycle.create_makeup_session(db, session_id, request)
    except ScheduleEngineError as e:
        db.rollback()
        logger.warning("Makeup for session %s failed: %s", session_id, e)
        raise HTTPException(status_code=status_code_for(e), detail=error_detail(e))
    except OperationalError as e:
        db.rollback()
        if not is_serialization_failure(e):
            raise
        logger.warning("Makeup for session %s aborted by a concurrent transaction", session_id)
        raise HTTPException(status_code=409, detail=concurrent_booking_detail("Makeup session"))
    return schemas.MakeupSessionResponse(
        original_session=schemas.SessionResponse.model_validate(original),
        makeup_session=schemas.SessionResponse.model_validate(makeup),
    )
