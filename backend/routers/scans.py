import sqlite3
import time

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as BodyValidationError

from backend.deps import get_conn, get_service
from backend.errors import ValidationError
from backend.services.attendance import AttendanceService
from database.db import get_all_students

router = APIRouter()


class ScanSubmit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uid: str | None = None
    device_id: str | None = None
    scan_type: str | None = Field(default=None, alias="type")


async def raw_body(request: Request) -> bytes:
    return await request.body()


def _body_reader(raw: bytes):
    # Called by the service once the device gate has passed.
    def _read() -> dict:
        try:
            payload = ScanSubmit.model_validate_json(raw.strip() or b"{}")
        except BodyValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            raise ValidationError(f"Invalid request body: {first.get('msg', 'unreadable')}") from exc
        return payload.model_dump(by_alias=True)

    return _read


def _latency_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


@router.post("/log-attendance")
def log_attendance(
    raw: bytes = Depends(raw_body),
    service: AttendanceService = Depends(get_service),
    x_device_secret: str | None = Header(default=None),
):
    result = service.submit_scan(device_secret=x_device_secret, read_body=_body_reader(raw))
    return result.to_response()


@router.get("/log-attendance")
def roster_for_devices(conn: sqlite3.Connection = Depends(get_conn)):
    # Reduced projection scanners cache locally.
    return {
        "data": [
            {
                "uid": s.uid,
                "name": s.name,
                "roll_no": s.roll_no,
                "branch": s.branch,
                "parent_phone": s.parent_phone,
            }
            for s in get_all_students(conn)
        ]
    }


@router.get("/data")
def roster_snapshot(
    conn: sqlite3.Connection = Depends(get_conn),
    service: AttendanceService = Depends(get_service),
):
    started = time.perf_counter()
    students = [s.to_dict() for s in get_all_students(conn)]
    return {
        "success": True,
        "data": students,
        "latency": _latency_ms(started),
        "timestamp": service.now().isoformat(),
    }


@router.post("/data")
def log_attendance_legacy(
    raw: bytes = Depends(raw_body),
    service: AttendanceService = Depends(get_service),
    x_device_secret: str | None = Header(default=None),
):
    """Older scanner firmware: same pipeline, simpler response shape."""
    started = time.perf_counter()
    result = service.submit_scan(device_secret=x_device_secret, read_body=_body_reader(raw))
    body = result.to_legacy_response()
    body["latency"] = _latency_ms(started)
    body["timestamp"] = result.log.timestamp.isoformat()
    return body
