from io import BytesIO

import pandas as pd
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from sqlalchemy.orm import Session

from app import models
from app.services.helpers import WEEKDAY_NAMES, format_hhmm, sunday_weekday
from app.services.lifecycle import get_schedule

SESSION_COLUMNS = [
    "session_number", "week_number", "date", "day", "start_time", "end_time", "status",
    "room", "teacher_id", "is_makeup", "makeup_for_session_id", "cancelling_reason", "notes",
]
SUMMARY_COLUMNS = ["status", "sessions", "hours"]
SUMMARY_SHEET = "Summary"

STATUS_FILLS = {
    "completed": "C6EFCE",  # green
    "confirmed": "DDEBF7",  # blue
    "cancelled": "FFC7CE",  # red
    "no-show": "FFC7CE",
    "rescheduled": "FFEB9C",  # yellow
}


def _safe_sheet_name(base: str) -> str:
    name = base.replace(":", "-").replace("/", "-")[:31]
    if not name:
        return "Sheet"
    # Excel compares sheet names case-insensitively
    if name.lower() == SUMMARY_SHEET.lower():
        return f"{name} sessions"
    return name


def _format_sessions_sheet(ws):
    headers = {ws.cell(row=1, column=c).value: c for c in range(1, ws.max_column + 1)}
    ws.freeze_panes = "A2"
    ws.auto_filter.ref = ws.dimensions
    for h, c in headers.items():
        width = 12
        if h in ("room", "cancelling_reason"):
            width = 20
        if h == "notes":
            width = 40
        ws.column_dimensions[get_column_letter(c)].width = width
    col_status = headers.get("status")
    col_makeup = headers.get("is_makeup")
    bold_font = Font(bold=True)
    for r in range(2, ws.max_row + 1):
        color = STATUS_FILLS.get(ws.cell(row=r, column=col_status).value) if col_status else None
        if color:
            ws.cell(row=r, column=col_status).fill = PatternFill(start_color=color, end_color=color, fill_type="solid")
        if col_makeup and ws.cell(row=r, column=col_makeup).value:
            for c in range(1, ws.max_column + 1):
                ws.cell(row=r, column=c).font = bold_font


def export_sessions_xlsx(db: Session, schedule_id: int) -> BytesIO:
    """Workbook with one row per session of the schedule plus a per-status summary."""
    schedule = get_schedule(db, schedule_id)
    room_names = {r.id: r.name for r in db.query(models.Room).all()}
    hours_per_session = schedule.hours_per_session

    rows = []
    for s in schedule.sessions:
        rows.append(
            {
                "session_number": s.session_number,
                "week_number": s.week_number,
                "date": s.session_date.isoformat(),
                "day": WEEKDAY_NAMES[sunday_weekday(s.session_date)],
                "start_time": format_hhmm(s.start_time),
                "end_time": format_hhmm(s.end_time),
                "status": s.status,
                "room": room_names.get(s.room_id, s.room_id),
                "teacher_id": s.assigned_teacher_id,
                "is_makeup": bool(s.is_makeup),
                "makeup_for_session_id": s.makeup_for_session_id,
                "cancelling_reason": s.cancelling_reason,
                "notes": s.notes,
            }
        )
    df = pd.DataFrame(rows, columns=SESSION_COLUMNS)
    if df.empty:
        df_sum = pd.DataFrame(columns=SUMMARY_COLUMNS)
    else:
        df_sum = df.groupby("status").size().reset_index(name="sessions")
        df_sum["hours"] = df_sum["sessions"] * hours_per_session

    sheet = _safe_sheet_name(schedule.schedule_name)
    buf = BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name=sheet)
        df_sum.to_excel(writer, index=False, sheet_name=SUMMARY_SHEET)
        ws = writer.sheets.get(sheet)
        if ws is not None:
            _format_sessions_sheet(ws)
        ws2 = writer.sheets.get(SUMMARY_SHEET)
        if ws2 is not None:
            ws2.freeze_panes = "A2"
            for c in range(1, ws2.max_column + 1):
                ws2.column_dimensions[get_column_letter(c)].width = 16
    buf.seek(0)
    return buf
