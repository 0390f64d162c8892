import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, cast

from backend.config import Settings
from backend.errors import (
    InternalError,
    InvalidCredential,
    MissingCredential,
    PersistenceError,
    Timeout,
    ValidationError,
)
from backend.resolution import SCAN_TYPES, Resolution, normalize_status, resolve_scan
from backend.services.notifications import NotificationBroker
from database.db import (
    AttendanceLog,
    Device,
    Direction,
    Student,
    day_bounds,
    get_active_device_by_secret,
    get_latest_log,
    get_student_by_uid,
    insert_attendance_log,
    localize,
    open_db,
    touch_device_last_seen,
)

logger = logging.getLogger(__name__)


class Deadline:
    """Request-scoped time budget, checked before each pipeline stage."""

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, stage: str) -> None:
        if self.expired():
            raise Timeout(f"Deadline exceeded before {stage}.")


@dataclass(frozen=True)
class ScanResult:
    log: AttendanceLog
    student: Student | None
    resolution: Resolution
    requested_type: Direction

    def to_response(self) -> dict[str, Any]:
        student = self.student
        return {
            "status": "error" if self.resolution.is_error else "success",
            "student_name": student.name if student else None,
            "student_roll_no": student.roll_no if student else None,
            "student_branch": student.branch if student else None,
            "parent_phone": (student.parent_phone or "") if student else "",
            "attendance_status": self.resolution.status,
            "message": self.resolution.message,
            "scan_type": self.resolution.direction,
            "timestamp": self.log.timestamp.isoformat(),
            "log_id": self.log.id,
        }

    def to_legacy_response(self) -> dict[str, Any]:
        outcome = self.resolution.outcome
        if outcome == "valid":
            message = "Attendance recorded successfully"
        elif outcome == "duplicate":
            message = "Duplicate scan detected"
        else:
            message = "Unknown UID"
        return {
            "success": True,
            "data": {
                "status": normalize_status(self.resolution.status),
                "student": self.student.to_dict() if self.student else None,
                "message": message,
            },
        }

    def to_event(self) -> dict[str, Any]:
        event = self.log.to_dict()
        event["attendance_status"] = self.resolution.status
        event["student"] = self.student.to_dict() if self.student else None
        return event


def _clean_uid(uid: Any) -> str:
    if uid is None:
        raise ValidationError("UID is required")
    text = str(uid).strip()
    if not text:
        raise ValidationError("UID is required")
    return text


def _clean_scan_type(value: str | None) -> Direction:
    if value is None or not str(value).strip():
        return "IN"
    normalized = str(value).strip().upper()
    if normalized not in SCAN_TYPES:
        raise ValidationError("type must be IN or OUT")
    return cast(Direction, normalized)


class AttendanceService:
    """
    Scan pipeline: device gate -> roster lookup -> history -> resolution ->
    log write -> live fan-out. One scoped connection per request.
    """

    def __init__(
        self,
        settings: Settings,
        broker: NotificationBroker,
        *,
        now: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.broker = broker
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic

    def now(self) -> datetime:
        return self._now()

    def new_deadline(self) -> Deadline:
        return Deadline(self.settings.request_timeout_seconds, clock=self._monotonic)

    # -----------------------------
    # Device gate
    # -----------------------------
    def authenticate_device(
        self,
        conn: sqlite3.Connection,
        device_secret: str | None,
        deadline: Deadline,
    ) -> Device:
        secret = (device_secret or "").strip()
        if not secret:
            raise MissingCredential()

        deadline.check("device authentication")
        try:
            device = get_active_device_by_secret(conn, secret)
        except sqlite3.Error as exc:
            logger.exception("Device credential lookup failed")
            raise InternalError("Device credential lookup failed.") from exc

        if device is None:
            logger.warning("Rejected scan with invalid or inactive device secret")
            raise InvalidCredential()

        try:
            touch_device_last_seen(conn, device.id, self.now())
        except sqlite3.Error:
            logger.warning("Could not update last_seen for device %s", device.id, exc_info=True)
            if conn.in_transaction:
                conn.rollback()
        return device

    # -----------------------------
    # Entry points
    # -----------------------------
    def submit_scan(
        self,
        *,
        device_secret: str | None,
        uid: Any = None,
        device_id: str | None = None,
        scan_type: str | None = None,
        read_body: Callable[[], dict[str, Any]] | None = None,
    ) -> ScanResult:
        """
        Device scan. `read_body`, when given, is called only after the device
        gate passes and supplies uid / device_id / type from the raw request.
        """
        deadline = self.new_deadline()
        with open_db(self.settings.db_path, timeout=deadline.remaining()) as conn:
            device = self.authenticate_device(conn, device_secret, deadline)
            if read_body is not None:
                fields = read_body()
                uid, device_id, scan_type = fields.get("uid"), fields.get("device_id"), fields.get("type")
            clean_uid = _clean_uid(uid)
            requested_type = _clean_scan_type(scan_type)
            label = (device_id or "").strip() or device.device_name
            result = self._resolve_and_record(
                conn,
                deadline,
                uid=clean_uid,
                effective_at=self.now(),
                check_recent=True,
                device_label=label,
                manual_entry=False,
                requested_type=requested_type,
            )
        self._publish(result)
        return result

    def record_manual_entry(self, *, uid: Any, timestamp: datetime | None = None) -> ScanResult:
        """Staff entry: no device gate and no bounce suppression; day scope follows `timestamp`."""
        clean_uid = _clean_uid(uid)
        if timestamp is None:
            effective_at = self.now()
        elif timestamp.tzinfo is None:
            effective_at = localize(timestamp, self.settings.timezone)
        else:
            effective_at = timestamp

        deadline = self.new_deadline()
        with open_db(self.settings.db_path, timeout=deadline.remaining()) as conn:
            result = self._resolve_and_record(
                conn,
                deadline,
                uid=clean_uid,
                effective_at=effective_at,
                check_recent=False,
                device_label=None,
                manual_entry=True,
                requested_type="IN",
            )
        self._publish(result)
        return result

    # -----------------------------
    # Pipeline
    # -----------------------------
    def _resolve_and_record(
        self,
        conn: sqlite3.Connection,
        deadline: Deadline,
        *,
        uid: str,
        effective_at: datetime,
        check_recent: bool,
        device_label: str | None,
        manual_entry: bool,
        requested_type: Direction,
    ) -> ScanResult:
        settings = self.settings
        student: Student | None = None
        last_recent: AttendanceLog | None = None
        last_today: AttendanceLog | None = None

        try:
            if settings.serialize_card_scans:
                deadline.check("scan serialization")
                # Holds the write lock until commit so concurrent scans of one card see each other.
                conn.execute("BEGIN IMMEDIATE")

            deadline.check("roster lookup")
            student = get_student_by_uid(conn, uid)

            if student is not None:
                if check_recent and settings.duplicate_window_seconds > 0:
                    deadline.check("recency history query")
                    last_recent = get_latest_log(
                        conn,
                        uid,
                        since=effective_at - timedelta(seconds=settings.duplicate_window_seconds),
                        until=effective_at,
                    )
                if last_recent is None:
                    deadline.check("day history query")
                    day_start, _ = day_bounds(effective_at, settings.timezone)
                    last_today = get_latest_log(conn, uid, since=day_start, until=effective_at)
        except sqlite3.Error as exc:
            if deadline.expired():
                raise Timeout("Deadline exceeded waiting for the attendance store.") from exc
            logger.exception("Attendance lookup failed for uid=%s", uid)
            raise InternalError(f"Attendance lookup failed: {exc}") from exc

        resolution = resolve_scan(
            student=student,
            last_today=last_today,
            last_recent=last_recent,
            effective_at=effective_at,
            late_cutoff=settings.late_cutoff if settings.late_tracking_enabled else None,
            tz=settings.timezone,
        )

        stored_status = resolution.status if settings.persist_full_status else normalize_status(resolution.status)
        payload = {
            "requested_type": requested_type,
            "outcome": resolution.outcome,
            "attendance_status": resolution.status,
            "late": resolution.late,
        }

        deadline.check("log write")
        try:
            log = insert_attendance_log(
                conn,
                uid=uid,
                student_id=student.id if student else None,
                status=stored_status,
                direction=resolution.direction,
                timestamp=effective_at,
                device_id=device_label,
                manual_entry=manual_entry,
                payload_json=json.dumps(payload),
            )
            conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Attendance log write failed for uid=%s", uid)
            raise PersistenceError(f"Failed to persist attendance log: {exc}") from exc

        logger.info(
            "Scan uid=%s outcome=%s status=%s direction=%s device=%s manual=%s",
            uid,
            resolution.outcome,
            resolution.status,
            resolution.direction,
            device_label,
            manual_entry,
        )
        return ScanResult(log=log, student=student, resolution=resolution, requested_type=requested_type)

    def _publish(self, result: ScanResult) -> None:
        self.broker.publish(result.to_event())
