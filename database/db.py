import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, Iterator, Literal

Direction = Literal["IN", "OUT"]
LogStatus = Literal["Present", "Late", "success", "duplicate", "unknown"]

VALID_STATUSES: tuple[str, ...] = ("Present", "Late", "success")
ALL_STATUSES: tuple[str, ...] = VALID_STATUSES + ("duplicate", "unknown")

# Canonical roster field -> column names that may carry it, in preference order.
ROSTER_ALIASES: dict[str, tuple[str, ...]] = {
    "roll_no": ("roll_no", "roll_number"),
    "branch": ("branch", "department"),
    "division": ("division",),
    "year": ("year", "college_year"),
    "parent_phone": ("parent_phone", "parent_contact", "parent_number"),
}

STUDENT_COLUMNS: tuple[str, ...] = (
    "uid",
    "name",
    "roll_no",
    "roll_number",
    "branch",
    "department",
    "division",
    "year",
    "college_year",
    "parent_phone",
    "parent_contact",
    "parent_number",
)


def connect_db(db_path: Path | str, *, timeout: float = 5.0) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=max(0.01, timeout), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def open_db(db_path: Path | str, *, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    """Scoped connection: always closed, rolled back if the caller left a transaction open."""
    conn = connect_db(db_path, timeout=timeout)
    try:
        yield conn
    finally:
        if conn.in_transaction:
            conn.rollback()
        conn.close()


def create_tables(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uid TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        roll_no TEXT,
        roll_number TEXT,
        branch TEXT,
        department TEXT,
        division TEXT,
        year TEXT,
        college_year TEXT,
        parent_phone TEXT,
        parent_contact TEXT,
        parent_number TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # Append-only scan log. student_id is NULL when the card was unknown at write time.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER,
        uid TEXT NOT NULL,
        status TEXT NOT NULL,
        direction TEXT,                  -- IN | OUT | NULL (legacy rows, unknown cards)
        timestamp TEXT NOT NULL,         -- ISO-8601 UTC, microseconds
        device_id TEXT,
        manual_entry INTEGER NOT NULL DEFAULT 0,
        payload_json TEXT,
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE SET NULL
    )
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS idx_attendance_logs_uid_timestamp
    ON attendance_logs (uid, timestamp)
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_name TEXT NOT NULL,
        api_secret TEXT NOT NULL UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1,
        last_seen TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS esp_devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id TEXT NOT NULL UNIQUE,
        device_name TEXT,
        ip_address TEXT,
        cache_size INTEGER NOT NULL DEFAULT 0,
        uptime_seconds INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'online',
        last_heartbeat TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    conn.commit()


# -----------------------------
# Timestamps
# -----------------------------
def to_storage_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        raise ValueError("Timestamps must be timezone-aware.")
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_storage_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def localize(moment: datetime, tz: tzinfo | None) -> datetime:
    """Attach `tz` to a naive local time; `tz=None` is the host zone, with the offset in force at that time."""
    if tz is None:
        return moment.astimezone()
    return moment.replace(tzinfo=tz)


def day_bounds(moment: datetime, tz: tzinfo | None) -> tuple[datetime, datetime]:
    """Local midnight containing `moment` and the next local midnight."""
    day = moment.astimezone(tz).date()
    next_day = day + timedelta(days=1)
    start = localize(datetime(day.year, day.month, day.day), tz)
    end = localize(datetime(next_day.year, next_day.month, next_day.day), tz)
    return start, end


# -----------------------------
# Roster
# -----------------------------
@dataclass(frozen=True)
class Student:
    id: int
    uid: str
    name: str
    roll_no: str | None = None
    branch: str | None = None
    division: str | None = None
    year: str | None = None
    parent_phone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _first_present(row: sqlite3.Row | dict, names: tuple[str, ...]) -> str | None:
    keys = row.keys()
    for name in names:
        if name not in keys:
            continue
        value = row[name]
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def canonical_student(row: sqlite3.Row | dict) -> Student:
    """Collapse aliased roster columns into a single Student."""
    return Student(
        id=int(row["id"]),
        uid=str(row["uid"]),
        name=str(row["name"]),
        **{field: _first_present(row, aliases) for field, aliases in ROSTER_ALIASES.items()},
    )


def get_student_by_uid(conn: sqlite3.Connection, uid: str) -> Student | None:
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT id, {", ".join(STUDENT_COLUMNS)}
        FROM students
        WHERE uid = ?
        """,
        (uid,),
    )
    row = cur.fetchone()
    if not row:
        return None
    return canonical_student(row)


def get_all_students(conn: sqlite3.Connection) -> list[Student]:
    cur = conn.cursor()
    cur.execute(f"""
        SELECT id, {", ".join(STUDENT_COLUMNS)}
        FROM students
        ORDER BY name, id
    """)
    return [canonical_student(row) for row in cur.fetchall()]


def _student_insert_values(record: dict[str, Any]) -> tuple[Any, ...]:
    values = []
    for column in STUDENT_COLUMNS:
        value = record.get(column)
        if isinstance(value, str):
            value = value.strip() or None
        values.append(value)
    return tuple(values)


def add_students(conn: sqlite3.Connection, records: list[dict[str, Any]]) -> list[int]:
    """
    Insert roster rows in a single transaction; raises sqlite3.IntegrityError
    (and inserts nothing) if any uid already exists.
    """
    placeholders = ", ".join("?" for _ in STUDENT_COLUMNS)
    cur = conn.cursor()
    ids: list[int] = []
    try:
        for record in records:
            cur.execute(
                f"""
                INSERT INTO students ({", ".join(STUDENT_COLUMNS)})
                VALUES ({placeholders})
                """,
                _student_insert_values(record),
            )
            ids.append(int(cur.lastrowid))
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return ids


def add_student(conn: sqlite3.Connection, record: dict[str, Any]) -> int:
    return add_students(conn, [record])[0]


def delete_student(conn: sqlite3.Connection, uid: str) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM students WHERE uid = ?", (uid,))
    deleted = cur.rowcount > 0
    conn.commit()
    return deleted


# -----------------------------
# Attendance log
# -----------------------------
@dataclass(frozen=True)
class AttendanceLog:
    id: int
    student_id: int | None
    uid: str
    status: LogStatus
    direction: Direction | None
    timestamp: datetime
    device_id: str | None
    manual_entry: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "uid": self.uid,
            "status": self.status,
            "type": self.direction,
            "timestamp": self.timestamp.isoformat(),
            "device_id": self.device_id,
            "manual_entry": self.manual_entry,
        }


LOG_COLUMNS = "al.id, al.student_id, al.uid, al.status, al.direction, al.timestamp, al.device_id, al.manual_entry"


def _log_from_row(row: sqlite3.Row) -> AttendanceLog:
    direction = row["direction"]
    return AttendanceLog(
        id=int(row["id"]),
        student_id=int(row["student_id"]) if row["student_id"] is not None else None,
        uid=str(row["uid"]),
        status=row["status"],
        direction=direction if direction in ("IN", "OUT") else None,
        timestamp=parse_storage_timestamp(row["timestamp"]),
        device_id=row["device_id"],
        manual_entry=bool(row["manual_entry"]),
    )


def get_latest_log(
    conn: sqlite3.Connection,
    uid: str,
    *,
    since: datetime,
    until: datetime,
    include_until: bool = True,
    exclude_unknown: bool = True,
) -> AttendanceLog | None:
    """
    Most recent log for `uid` with since <= timestamp <= until (or < until).

    Ties on timestamp go to the row inserted last (highest id).
    """
    where = ["al.uid = ?", "al.timestamp >= ?", "al.timestamp <= ?" if include_until else "al.timestamp < ?"]
    params: list[Any] = [uid, to_storage_timestamp(since), to_storage_timestamp(until)]
    if exclude_unknown:
        where.append("al.status <> 'unknown'")

    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {LOG_COLUMNS}
        FROM attendance_logs al
        WHERE {" AND ".join(where)}
        ORDER BY al.timestamp DESC, al.id DESC
        LIMIT 1
        """,
        params,
    )
    row = cur.fetchone()
    return _log_from_row(row) if row else None


def insert_attendance_log(
    conn: sqlite3.Connection,
    *,
    uid: str,
    student_id: int | None,
    status: str,
    direction: Direction | None,
    timestamp: datetime,
    device_id: str | None = None,
    manual_entry: bool = False,
    payload_json: str | None = None,
) -> AttendanceLog:
    """
    Append one immutable log row and return it. Never updates an existing row;
    commit is left to the caller.
    """
    if status not in ALL_STATUSES:
        raise ValueError(f"Unsupported attendance status: {status}")

    stamp = to_storage_timestamp(timestamp)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO attendance_logs (
            student_id,
            uid,
            status,
            direction,
            timestamp,
            device_id,
            manual_entry,
            payload_json
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            student_id,
            uid,
            status,
            direction,
            stamp,
            device_id,
            1 if manual_entry else 0,
            payload_json,
        ),
    )
    return AttendanceLog(
        id=int(cur.lastrowid),
        student_id=student_id,
        uid=uid,
        status=status,  # type: ignore[arg-type]
        direction=direction,
        timestamp=parse_storage_timestamp(stamp),
        device_id=device_id,
        manual_entry=manual_entry,
    )


def _log_with_student(row: sqlite3.Row) -> dict[str, Any]:
    out = _log_from_row(row).to_dict()
    out["payload_json"] = row["payload_json"]
    if row["s_id"] is None:
        out["student"] = None
    else:
        student_row = {column: row[f"s_{column}"] for column in ("id",) + STUDENT_COLUMNS}
        out["student"] = canonical_student(student_row).to_dict()
    return out


STUDENT_JOIN_COLUMNS = ", ".join(f"s.{c} AS s_{c}" for c in ("id",) + STUDENT_COLUMNS)


def get_log_with_student(conn: sqlite3.Connection, log_id: int) -> dict[str, Any] | None:
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {LOG_COLUMNS}, al.payload_json, {STUDENT_JOIN_COLUMNS}
        FROM attendance_logs al
        LEFT JOIN students s ON s.id = al.student_id
        WHERE al.id = ?
        """,
        (log_id,),
    )
    row = cur.fetchone()
    return _log_with_student(row) if row else None


def _build_logs_where_clause(
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    uid: str | None = None,
    status: str | None = None,
    direction: Direction | None = None,
    manual_entry: bool | None = None,
) -> tuple[str, list[Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if since is not None:
        where.append("al.timestamp >= ?")
        params.append(to_storage_timestamp(since))
    if until is not None:
        where.append("al.timestamp < ?")
        params.append(to_storage_timestamp(until))
    if uid is not None:
        where.append("al.uid = ?")
        params.append(uid)
    if status is not None:
        where.append("al.status = ?")
        params.append(status)
    if direction is not None:
        where.append("al.direction = ?")
        params.append(direction)
    if manual_entry is not None:
        where.append("al.manual_entry = ?")
        params.append(1 if manual_entry else 0)

    return " AND ".join(where), params


def get_attendance_logs(
    conn: sqlite3.Connection,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    uid: str | None = None,
    status: str | None = None,
    direction: Direction | None = None,
    manual_entry: bool | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    where_sql, params = _build_logs_where_clause(
        since=since,
        until=until,
        uid=uid,
        status=status,
        direction=direction,
        manual_entry=manual_entry,
    )
    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(0, int(offset))

    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {LOG_COLUMNS}, al.payload_json, {STUDENT_JOIN_COLUMNS}
        FROM attendance_logs al
        LEFT JOIN students s ON s.id = al.student_id
        WHERE {where_sql}
        ORDER BY al.timestamp DESC, al.id DESC
        LIMIT ?
        OFFSET ?
        """,
        params + [safe_limit, safe_offset],
    )
    return [_log_with_student(row) for row in cur.fetchall()]


def get_attendance_logs_total(
    conn: sqlite3.Connection,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    uid: str | None = None,
    status: str | None = None,
    direction: Direction | None = None,
    manual_entry: bool | None = None,
) -> int:
    where_sql, params = _build_logs_where_clause(
        since=since,
        until=until,
        uid=uid,
        status=status,
        direction=direction,
        manual_entry=manual_entry,
    )
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT COUNT(1)
        FROM attendance_logs al
        WHERE {where_sql}
        """,
        params,
    )
    row = cur.fetchone()
    return int(row[0] or 0) if row else 0


def get_daily_summary(conn: sqlite3.Connection, *, since: datetime, until: datetime) -> dict[str, int]:
    valid = ", ".join(f"'{s}'" for s in VALID_STATUSES)
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            COUNT(1) AS total,
            COUNT(DISTINCT CASE WHEN status IN ({valid}) THEN uid END) AS unique_scans,
            SUM(CASE WHEN status = 'duplicate' THEN 1 ELSE 0 END) AS duplicates,
            SUM(CASE WHEN status = 'unknown' THEN 1 ELSE 0 END) AS unknown,
            SUM(CASE WHEN status = 'Present'
                      OR (status = 'success' AND direction = 'IN') THEN 1 ELSE 0 END) AS present,
            SUM(CASE WHEN status = 'Late' THEN 1 ELSE 0 END) AS late,
            SUM(CASE WHEN status IN ({valid}) AND direction = 'IN' THEN 1 ELSE 0 END) AS in_count,
            SUM(CASE WHEN status IN ({valid}) AND direction = 'OUT' THEN 1 ELSE 0 END) AS out_count
        FROM attendance_logs
        WHERE timestamp >= ? AND timestamp < ?
        """,
        (to_storage_timestamp(since), to_storage_timestamp(until)),
    )
    row = cur.fetchone()
    keys = ("today_count", "unique_scans", "duplicate_attempts", "unknown_scans", "present", "late", "in_count", "out_count")
    return {key: int(row[idx] or 0) if row else 0 for idx, key in enumerate(keys)}


def delete_attendance_log(conn: sqlite3.Connection, log_id: int) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance_logs WHERE id = ?", (log_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    return deleted


# -----------------------------
# Device credentials
# -----------------------------
@dataclass(frozen=True)
class Device:
    id: int
    device_name: str
    api_secret: str
    is_active: bool
    last_seen: str | None
    created_at: str | None


def _device_from_row(row: sqlite3.Row) -> Device:
    return Device(
        id=int(row["id"]),
        device_name=str(row["device_name"]),
        api_secret=str(row["api_secret"]),
        is_active=bool(row["is_active"]),
        last_seen=row["last_seen"],
        created_at=str(row["created_at"]) if row["created_at"] is not None else None,
    )


def create_device(conn: sqlite3.Connection, device_name: str, api_secret: str) -> Device:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO devices (device_name, api_secret)
        VALUES (?, ?)
        """,
        (device_name, api_secret),
    )
    device_id = int(cur.lastrowid)
    conn.commit()
    device = get_device(conn, device_id)
    assert device is not None
    return device


def get_device(conn: sqlite3.Connection, device_id: int) -> Device | None:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, device_name, api_secret, is_active, last_seen, created_at
        FROM devices
        WHERE id = ?
        """,
        (device_id,),
    )
    row = cur.fetchone()
    return _device_from_row(row) if row else None


def get_active_device_by_secret(conn: sqlite3.Connection, api_secret: str) -> Device | None:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, device_name, api_secret, is_active, last_seen, created_at
        FROM devices
        WHERE api_secret = ? AND is_active = 1
        """,
        (api_secret,),
    )
    row = cur.fetchone()
    return _device_from_row(row) if row else None


def touch_device_last_seen(conn: sqlite3.Connection, device_id: int, seen_at: datetime) -> None:
    conn.execute(
        "UPDATE devices SET last_seen = ? WHERE id = ?",
        (to_storage_timestamp(seen_at), device_id),
    )
    conn.commit()


def get_all_devices(conn: sqlite3.Connection) -> list[Device]:
    cur = conn.cursor()
    cur.execute("""
        SELECT id, device_name, api_secret, is_active, last_seen, created_at
        FROM devices
        ORDER BY device_name, id
    """)
    return [_device_from_row(row) for row in cur.fetchall()]


def set_device_active(conn: sqlite3.Connection, device_id: int, is_active: bool) -> bool:
    cur = conn.cursor()
    cur.execute(
        "UPDATE devices SET is_active = ? WHERE id = ?",
        (1 if is_active else 0, device_id),
    )
    updated = cur.rowcount > 0
    conn.commit()
    return updated


def delete_device(conn: sqlite3.Connection, device_id: int) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM devices WHERE id = ?", (device_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    return deleted


# -----------------------------
# Scanner heartbeats
# -----------------------------
def upsert_heartbeat(
    conn: sqlite3.Connection,
    *,
    device_id: str,
    device_name: str | None,
    ip_address: str | None,
    cache_size: int,
    uptime_seconds: int,
    received_at: datetime,
) -> None:
    conn.execute(
        """
        INSERT INTO esp_devices (
            device_id,
            device_name,
            ip_address,
            cache_size,
            uptime_seconds,
            status,
            last_heartbeat
        )
        VALUES (?, ?, ?, ?, ?, 'online', ?)
        ON CONFLICT(device_id) DO UPDATE SET
            device_name = excluded.device_name,
            ip_address = excluded.ip_address,
            cache_size = excluded.cache_size,
            uptime_seconds = excluded.uptime_seconds,
            status = 'online',
            last_heartbeat = excluded.last_heartbeat
        """,
        (
            device_id,
            device_name,
            ip_address,
            cache_size,
            uptime_seconds,
            to_storage_timestamp(received_at),
        ),
    )
    conn.commit()


def get_heartbeats(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    cur = conn.cursor()
    cur.execute("""
        SELECT device_id, device_name, ip_address, cache_size, uptime_seconds, status, last_heartbeat, created_at
        FROM esp_devices
        ORDER BY device_id
    """)
    return [dict(row) for row in cur.fetchall()]
