"""
Attendance-event resolution.

Given the roster match for a card and the two history lookups (last event of
the day, last event inside the recency window) decide what a scan means:

  1. unknown    - the card is not in the roster (checked before anything else)
  2. duplicate  - a known card already has an event inside the recency window;
                  inherits that event's direction
  3. valid      - toggles against the last event of the day:
                  none / OUT -> IN, IN -> OUT

IN events at or after the late cutoff are reported as "Late", other IN events
as "Present"; OUT events are always "success". This module does no I/O.
"""
from dataclasses import dataclass
from datetime import datetime, time, tzinfo
from typing import Literal

from database.db import AttendanceLog, Direction, Student

Outcome = Literal["unknown", "duplicate", "valid"]
ScanStatus = Literal["Present", "Late", "success", "duplicate", "unknown"]

SCAN_TYPES: tuple[str, ...] = ("IN", "OUT")


@dataclass(frozen=True)
class Resolution:
    outcome: Outcome
    status: ScanStatus
    direction: Direction | None
    late: bool
    message: str

    @property
    def is_error(self) -> bool:
        return self.outcome == "unknown"


def normalize_status(status: ScanStatus) -> str:
    """Storage-level status for the legacy schema that only knows success/duplicate/unknown."""
    if status in ("Present", "Late"):
        return "success"
    return status


def is_late(effective_at: datetime, *, cutoff: time, tz: tzinfo | None) -> bool:
    local_time = effective_at.astimezone(tz).time()
    return local_time >= cutoff


def resolve_scan(
    *,
    student: Student | None,
    last_today: AttendanceLog | None,
    last_recent: AttendanceLog | None,
    effective_at: datetime,
    late_cutoff: time | None = None,
    tz: tzinfo | None = None,
) -> Resolution:
    """
    Classify one scan. The device's IN/OUT hint is not an input: the day
    toggle decides the direction. `late_cutoff=None` disables lateness;
    `tz=None` reads the cutoff in the host zone.
    """
    if student is None:
        return Resolution(
            outcome="unknown",
            status="unknown",
            direction=None,
            late=False,
            message="Unknown Card",
        )

    if last_recent is not None:
        return Resolution(
            outcome="duplicate",
            status="duplicate",
            direction=last_recent.direction or "IN",
            late=False,
            message=f"Duplicate scan for {student.name}",
        )

    if last_today is None or last_today.direction == "OUT":
        late = late_cutoff is not None and is_late(
            effective_at,
            cutoff=late_cutoff,
            tz=tz,
        )
        status: ScanStatus = "Late" if late else "Present"
        return Resolution(
            outcome="valid",
            status=status,
            direction="IN",
            late=late,
            message=f"Marked {status} for {student.name}",
        )

    return Resolution(
        outcome="valid",
        status="success",
        direction="OUT",
        late=False,
        message=f"Checked out {student.name}",
    )
