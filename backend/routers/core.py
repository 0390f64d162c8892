from fastapi import APIRouter, Depends

from backend.config import Settings
from backend.deps import get_broker, get_settings
from backend.services.notifications import NotificationBroker

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config(
    settings: Settings = Depends(get_settings),
    broker: NotificationBroker = Depends(get_broker),
):
    return {
        "duplicate_window_seconds": settings.duplicate_window_seconds,
        "late_tracking_enabled": settings.late_tracking_enabled,
        "late_cutoff": settings.late_cutoff.strftime("%H:%M:%S"),
        "timezone": str(settings.timezone) if settings.timezone else "local",
        "request_timeout_seconds": settings.request_timeout_seconds,
        "serialize_card_scans": settings.serialize_card_scans,
        "persist_full_status": settings.persist_full_status,
        "notification_buffer_size": settings.notification_buffer_size,
        "heartbeat_online_seconds": settings.heartbeat_online_seconds,
        "live_subscribers": broker.subscriber_count(),
    }
