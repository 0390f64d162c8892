import os
import secrets
from dataclasses import dataclass, field, replace
from datetime import time, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

BASE_DIR = Path(__file__).resolve().parents[1]

DEVICE_SECRET_HEADER = "x-device-secret"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_time(value: str | None, fallback: time) -> time:
    if not value:
        return fallback
    parts = value.split(":")
    try:
        hh = int(parts[0])
        mm = int(parts[1]) if len(parts) > 1 else 0
        ss = int(parts[2]) if len(parts) > 2 else 0
        return time(hh, mm, ss)
    except ValueError:
        return fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value) if value else fallback
    except ValueError:
        parsed = fallback
    return max(minimum, parsed)


def _parse_float(value: str | None, fallback: float) -> float:
    try:
        parsed = float(value) if value else fallback
    except ValueError:
        parsed = fallback
    return parsed if parsed > 0 else fallback


def _parse_timezone(value: str | None) -> tzinfo | None:
    if value:
        try:
            return ZoneInfo(value.strip())
        except (ZoneInfoNotFoundError, ValueError):
            pass
    # Host zone; the offset is looked up per instant.
    return None


@dataclass(frozen=True)
class Settings:
    db_path: Path
    duplicate_window_seconds: int = 300
    late_tracking_enabled: bool = True
    late_cutoff: time = time(9, 1)
    timezone: tzinfo | None = None
    request_timeout_seconds: float = 5.0
    serialize_card_scans: bool = True
    persist_full_status: bool = True
    notification_buffer_size: int = 100
    heartbeat_online_seconds: int = 120
    signing_key: str = ""
    auth_token_ttl_seconds: int = 43200
    cors_allow_origins: list[str] = field(default_factory=lambda: ["*"])
    cors_allow_methods: list[str] = field(
        default_factory=lambda: ["GET", "POST", "PATCH", "DELETE", "OPTIONS"]
    )
    cors_allow_headers: list[str] = field(
        default_factory=lambda: ["Content-Type", "Authorization", DEVICE_SECRET_HEADER]
    )
    log_level: str = "INFO"


def load_settings(**overrides) -> Settings:
    """
    Build settings from ROLLCALL_* environment variables.

    Keyword overrides win over the environment (used by tests and embedders).
    """
    settings = Settings(
        db_path=Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db")),
        duplicate_window_seconds=_parse_int(os.getenv("ROLLCALL_DUPLICATE_WINDOW_SECONDS"), 300),
        late_tracking_enabled=_parse_bool(os.getenv("ROLLCALL_LATE_TRACKING"), True),
        late_cutoff=_parse_time(os.getenv("ROLLCALL_LATE_CUTOFF"), time(9, 1)),
        timezone=_parse_timezone(os.getenv("ROLLCALL_TIMEZONE")),
        request_timeout_seconds=_parse_float(os.getenv("ROLLCALL_REQUEST_TIMEOUT_SECONDS"), 5.0),
        serialize_card_scans=_parse_bool(os.getenv("ROLLCALL_SERIALIZE_CARD_SCANS"), True),
        persist_full_status=_parse_bool(os.getenv("ROLLCALL_PERSIST_FULL_STATUS"), True),
        notification_buffer_size=_parse_int(
            os.getenv("ROLLCALL_NOTIFICATION_BUFFER_SIZE"), 100, minimum=1
        ),
        heartbeat_online_seconds=_parse_int(os.getenv("ROLLCALL_HEARTBEAT_ONLINE_SECONDS"), 120),
        signing_key=os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32),
        auth_token_ttl_seconds=_parse_int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS"), 43200),
        cors_allow_origins=_parse_csv(os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"), ["*"]),
        cors_allow_methods=_parse_csv(
            os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
            ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        ),
        cors_allow_headers=_parse_csv(
            os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
            ["Content-Type", "Authorization", DEVICE_SECRET_HEADER],
        ),
        log_level=(os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"),
    )
    if overrides:
        settings = replace(settings, **overrides)
    return settings
