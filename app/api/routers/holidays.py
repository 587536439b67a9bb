import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app import schemas
from app.core.exceptions import HolidayFetchFailed
from app.services.holiday_calendar import HolidayCalendar, get_holiday_calendar

router = APIRouter(prefix="/holidays", tags=["holidays"])
logger = logging.getLogger(__name__)

MAX_YEAR_SPAN = 5


@router.get("", response_model=schemas.HolidayListResponse, summary="Public holidays for a range of years")
def list_holidays(
    start_year: int = Query(..., ge=1900, le=2200),
    end_year: Optional[int] = Query(None, ge=1900, le=2200),
    calendar: HolidayCalendar = Depends(get_holiday_calendar),
):
    end_year = start_year if end_year is None else end_year
    if end_year < start_year:
        raise HTTPException(status_code=400, detail="end_year must not be before start_year")
    if end_year - start_year >= MAX_YEAR_SPAN:
        raise HTTPException(status_code=400, detail=f"at most {MAX_YEAR_SPAN} years per request")
    try:
        holidays = calendar.fetch_holidays(start_year, end_year)
    except HolidayFetchFailed as e:
        logger.warning("Holiday listing failed: %s", e)
        raise HTTPException(status_code=502, detail={"code": e.code, "message": str(e), "errors": e.errors})
    return schemas.HolidayListResponse(
        start_year=start_year,
        end_year=end_year,
        holidays=[schemas.HolidayEntry(date=d, name=name or "Holiday") for d, name in holidays.items()],
    )
