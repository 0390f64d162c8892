import sqlite3
from typing import Iterator

from fastapi import Request

from backend.config import Settings
from backend.services.attendance import AttendanceService
from backend.services.notifications import NotificationBroker
from database.db import open_db


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_service(request: Request) -> AttendanceService:
    return request.app.state.attendance


def get_broker(request: Request) -> NotificationBroker:
    return request.app.state.broker


def get_conn(request: Request) -> Iterator[sqlite3.Connection]:
    settings: Settings = request.app.state.settings
    with open_db(settings.db_path, timeout=settings.request_timeout_seconds) as conn:
        yield conn
