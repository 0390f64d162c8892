import asyncio
import json
import sqlite3
from datetime import date as date_type, datetime
from typing import cast

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from backend.config import Settings
from backend.deps import get_broker, get_conn, get_service, get_settings
from backend.security import require_session
from backend.services.attendance import AttendanceService
from backend.services.notifications import NotificationBroker
from database.db import (
    ALL_STATUSES,
    Direction,
    day_bounds,
    localize,
    delete_attendance_log,
    get_attendance_logs,
    get_attendance_logs_total,
    get_daily_summary,
)

router = APIRouter(dependencies=[Depends(require_session)])

STREAM_POLL_SECONDS = 0.25
STREAM_KEEPALIVE_SECONDS = 15.0


class ManualEntry(BaseModel):
    uid: str | None = None
    timestamp: datetime | None = None


def _day_range(day: str | None, settings: Settings, now: datetime) -> tuple[str, datetime, datetime]:
    if day:
        try:
            parsed = date_type.fromisoformat(day)
        except ValueError:
            raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD.")
        anchor = localize(datetime(parsed.year, parsed.month, parsed.day, 12), settings.timezone)
    else:
        anchor = now
    start, end = day_bounds(anchor, settings.timezone)
    return start.date().isoformat(), start, end


@router.post("/attendance/manual")
def manual_entry(payload: ManualEntry, service: AttendanceService = Depends(get_service)):
    result = service.record_manual_entry(uid=payload.uid, timestamp=payload.timestamp)
    return result.to_response()


@router.get("/attendance")
def attendance_logs(
    date: str | None = None,
    uid: str | None = None,
    status: str | None = None,
    scan_type: str | None = Query(default=None, alias="type"),
    manual_entry: bool | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    conn: sqlite3.Connection = Depends(get_conn),
    settings: Settings = Depends(get_settings),
    service: AttendanceService = Depends(get_service),
):
    clean_status = status.strip() if status else None
    if clean_status and clean_status not in ALL_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status filter.")
    clean_type = scan_type.strip().upper() if scan_type else None
    if clean_type and clean_type not in ("IN", "OUT"):
        raise HTTPException(status_code=400, detail="Invalid type filter.")

    since = until = None
    if date:
        _, since, until = _day_range(date, settings, service.now())

    filters = {
        "since": since,
        "until": until,
        "uid": uid.strip() if uid else None,
        "status": clean_status,
        "direction": cast(Direction | None, clean_type),
        "manual_entry": manual_entry,
    }
    rows = get_attendance_logs(conn, limit=limit, offset=offset, **filters)
    total = get_attendance_logs_total(conn, **filters)
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/attendance/summary")
def summary(
    date: str | None = None,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: Settings = Depends(get_settings),
    service: AttendanceService = Depends(get_service),
):
    day, since, until = _day_range(date, settings, service.now())
    return {"date": day, **get_daily_summary(conn, since=since, until=until)}


@router.delete("/attendance/{log_id}")
def delete_attendance(log_id: int, conn: sqlite3.Connection = Depends(get_conn)):
    ok = delete_attendance_log(conn, log_id)
    if not ok:
        raise HTTPException(status_code=404, detail="Log entry not found.")
    return {"ok": True}


@router.get("/attendance/stream")
async def attendance_stream(request: Request, broker: NotificationBroker = Depends(get_broker)):
    """Server-sent events for the live feed. Starts with a resync event."""
    sub = broker.subscribe()

    async def gen():
        idle = 0.0
        try:
            while not await request.is_disconnected():
                message = sub.get(timeout=0)
                if message is None:
                    if sub.closed:
                        break
                    await asyncio.sleep(STREAM_POLL_SECONDS)
                    idle += STREAM_POLL_SECONDS
                    if idle >= STREAM_KEEPALIVE_SECONDS:
                        idle = 0.0
                        yield ": keepalive\n\n"
                    continue
                idle = 0.0
                payload = json.dumps(message, separators=(",", ":"))
                yield f"event: {message['type']}\ndata: {payload}\n\n"
        finally:
            sub.close()

    return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})
