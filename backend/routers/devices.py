import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.config import Settings
from backend.deps import get_conn, get_service, get_settings
from backend.security import generate_device_secret, mask_secret, require_session
from backend.services.attendance import AttendanceService
from database.db import (
    Device,
    create_device,
    delete_device,
    get_all_devices,
    get_device,
    get_heartbeats,
    parse_storage_timestamp,
    set_device_active,
    upsert_heartbeat,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SECRET_ATTEMPTS = 3


class DeviceCreate(BaseModel):
    device_name: str


class DeviceUpdate(BaseModel):
    is_active: bool | None = None


class Heartbeat(BaseModel):
    device_id: str | None = None
    device_name: str | None = None
    ip_address: str | None = None
    cache_size: int | None = None
    uptime_seconds: int | None = None


def _device_out(device: Device, *, reveal: bool = False) -> dict:
    return {
        "id": device.id,
        "device_name": device.device_name,
        "api_secret": device.api_secret if reveal else mask_secret(device.api_secret),
        "is_active": device.is_active,
        "last_seen": device.last_seen,
        "created_at": device.created_at,
    }


@router.post("/devices")
def register_device(
    payload: DeviceCreate,
    _session: dict = Depends(require_session),
    conn: sqlite3.Connection = Depends(get_conn),
):
    device_name = payload.device_name.strip()
    if not device_name:
        raise HTTPException(status_code=400, detail="Device name is required.")

    for _ in range(SECRET_ATTEMPTS):
        try:
            device = create_device(conn, device_name, generate_device_secret())
        except sqlite3.IntegrityError:
            continue
        # The only response that carries the full secret.
        return _device_out(device, reveal=True)
    raise HTTPException(status_code=500, detail="Could not generate a unique device secret.")


@router.get("/devices")
def devices(
    _session: dict = Depends(require_session),
    conn: sqlite3.Connection = Depends(get_conn),
):
    return [_device_out(d) for d in get_all_devices(conn)]


@router.get("/devices/heartbeats")
def heartbeats(
    _session: dict = Depends(require_session),
    conn: sqlite3.Connection = Depends(get_conn),
    settings: Settings = Depends(get_settings),
    service: AttendanceService = Depends(get_service),
):
    now = service.now()
    rows = get_heartbeats(conn)
    for row in rows:
        age = (now - parse_storage_timestamp(row["last_heartbeat"])).total_seconds()
        row["status"] = "online" if age <= settings.heartbeat_online_seconds else "offline"
    return rows


@router.patch("/devices/{device_id}")
def toggle_device(
    device_id: int,
    payload: DeviceUpdate,
    _session: dict = Depends(require_session),
    conn: sqlite3.Connection = Depends(get_conn),
):
    device = get_device(conn, device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found.")
    is_active = (not device.is_active) if payload.is_active is None else payload.is_active
    set_device_active(conn, device_id, is_active)
    updated = get_device(conn, device_id)
    return _device_out(updated or device)


@router.delete("/devices/{device_id}")
def remove_device(
    device_id: int,
    _session: dict = Depends(require_session),
    conn: sqlite3.Connection = Depends(get_conn),
):
    if not delete_device(conn, device_id):
        raise HTTPException(status_code=404, detail="Device not found.")
    return {"ok": True}


@router.post("/heartbeat")
def heartbeat(
    payload: Heartbeat,
    conn: sqlite3.Connection = Depends(get_conn),
    service: AttendanceService = Depends(get_service),
):
    # Scanner firmware expects {"success": false, "error": ...} on failure.
    device_id = (payload.device_id or "").strip()
    if not device_id:
        return JSONResponse({"success": False, "error": "Device ID is required"}, status_code=400)

    now = service.now()
    try:
        upsert_heartbeat(
            conn,
            device_id=device_id,
            device_name=payload.device_name or None,
            ip_address=payload.ip_address or None,
            cache_size=max(0, payload.cache_size or 0),
            uptime_seconds=max(0, payload.uptime_seconds or 0),
            received_at=now,
        )
    except sqlite3.Error:
        logger.exception("Heartbeat upsert failed for device %s", device_id)
        return JSONResponse({"success": False, "error": "Failed to process heartbeat"}, status_code=500)
    return {
        "success": True,
        "message": "Heartbeat received",
        "timestamp": now.isoformat(),
    }
