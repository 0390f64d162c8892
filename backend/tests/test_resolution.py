from datetime import datetime, time, timedelta, timezone

import pytest

from backend.resolution import is_late, normalize_status, resolve_scan
from database.db import AttendanceLog, Student

JANE = Student(id=1, uid="A1", name="Jane", roll_no="CS-042")
MORNING = datetime(2026, 2, 10, 8, 30, tzinfo=timezone.utc)


def _log(direction, status="Present", at=MORNING, log_id=1):
    return AttendanceLog(
        id=log_id,
        student_id=JANE.id,
        uid=JANE.uid,
        status=status,
        direction=direction,
        timestamp=at,
        device_id="gate",
        manual_entry=False,
    )


def test_unknown_card_wins_over_history():
    res = resolve_scan(student=None, last_today=_log("IN"), last_recent=_log("IN"), effective_at=MORNING)
    assert res.outcome == "unknown"
    assert res.status == "unknown"
    assert res.direction is None
    assert res.is_error
    assert res.message == "Unknown Card"


def test_first_event_of_day_is_in():
    res = resolve_scan(student=JANE, last_today=None, last_recent=None, effective_at=MORNING)
    assert (res.outcome, res.status, res.direction) == ("valid", "Present", "IN")
    assert res.message == "Marked Present for Jane"
    assert not res.is_error


@pytest.mark.parametrize(
    "previous, expected",
    [
        ("IN", "OUT"),
        ("OUT", "IN"),
    ],
)
def test_valid_scans_toggle_direction(previous, expected):
    res = resolve_scan(student=JANE, last_today=_log(previous), last_recent=None, effective_at=MORNING)
    assert res.direction == expected


def test_out_is_always_success_even_after_cutoff():
    late = datetime(2026, 2, 10, 17, 0, tzinfo=timezone.utc)
    res = resolve_scan(
        student=JANE,
        last_today=_log("IN"),
        last_recent=None,
        effective_at=late,
        late_cutoff=time(9, 1),
        tz=timezone.utc,
    )
    assert res.status == "success"
    assert res.late is False
    assert res.message == "Checked out Jane"


def test_legacy_row_without_direction_counts_as_in():
    res = resolve_scan(student=JANE, last_today=_log(None, status="success"), last_recent=None, effective_at=MORNING)
    assert res.direction == "OUT"


@pytest.mark.parametrize("previous", ["IN", "OUT"])
def test_duplicate_inherits_recent_direction(previous):
    recent = _log(previous, at=MORNING - timedelta(seconds=30))
    res = resolve_scan(student=JANE, last_today=_log("IN"), last_recent=recent, effective_at=MORNING)
    assert res.outcome == "duplicate"
    assert res.status == "duplicate"
    assert res.direction == previous
    assert res.message == "Duplicate scan for Jane"


def test_duplicate_of_legacy_row_defaults_to_in():
    res = resolve_scan(student=JANE, last_today=None, last_recent=_log(None), effective_at=MORNING)
    assert res.direction == "IN"


def test_late_boundary_is_inclusive():
    cutoff = time(9, 1)
    before = datetime(2026, 2, 10, 9, 0, 59, tzinfo=timezone.utc)
    at = datetime(2026, 2, 10, 9, 1, 0, tzinfo=timezone.utc)

    early = resolve_scan(student=JANE, last_today=None, last_recent=None, effective_at=before, late_cutoff=cutoff, tz=timezone.utc)
    late = resolve_scan(student=JANE, last_today=None, last_recent=None, effective_at=at, late_cutoff=cutoff, tz=timezone.utc)

    assert early.status == "Present"
    assert late.status == "Late"
    assert late.late is True
    assert late.message == "Marked Late for Jane"


def test_lateness_disabled_without_cutoff():
    evening = datetime(2026, 2, 10, 20, 0, tzinfo=timezone.utc)
    res = resolve_scan(student=JANE, last_today=None, last_recent=None, effective_at=evening, late_cutoff=None)
    assert res.status == "Present"


def test_lateness_uses_configured_timezone():
    ist = timezone(timedelta(hours=5, minutes=30))
    # 03:40 UTC is 09:10 in UTC+05:30.
    scan = datetime(2026, 2, 10, 3, 40, tzinfo=timezone.utc)
    assert is_late(scan, cutoff=time(9, 1), tz=ist)
    assert not is_late(scan, cutoff=time(9, 1), tz=timezone.utc)


@pytest.mark.parametrize(
    "status, stored",
    [
        ("Present", "success"),
        ("Late", "success"),
        ("success", "success"),
        ("duplicate", "duplicate"),
        ("unknown", "unknown"),
    ],
)
def test_normalize_status(status, stored):
    assert normalize_status(status) == stored
