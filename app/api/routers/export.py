import logging
from io import BytesIO

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import ScheduleEngineError, error_detail, status_code_for
from app.services.exporter import export_sessions_xlsx

router = APIRouter(prefix="/schedules", tags=["export"])
logger = logging.getLogger(__name__)


@router.get("/{schedule_id}/export", summary="Export the sessions of a schedule as xlsx")
def export_schedule(schedule_id: int, db: Session = Depends(get_db)):
    try:
        buf: BytesIO = export_sessions_xlsx(db, schedule_id)
    except ScheduleEngineError as e:
        raise HTTPException(status_code=status_code_for(e), detail=error_detail(e))
    filename = f"Schedule_{schedule_id}_sessions.xlsx"
    logger.info("Exported sessions of schedule %s", schedule_id)
    return StreamingResponse(
        buf,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
