import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import Settings, load_settings
from backend.errors import AttendanceError
from backend.routers import attendance, core, devices, scans, students
from backend.services.attendance import AttendanceService
from backend.services.notifications import NotificationBroker
from database.db import create_tables, open_db

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body."
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


def create_app(settings: Settings | None = None, *, now: Callable[[], datetime] | None = None) -> FastAPI:
    settings = settings or load_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    broker = NotificationBroker(settings.notification_buffer_size)
    service = AttendanceService(settings, broker, now=now)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        with open_db(settings.db_path) as conn:
            create_tables(conn)
        logger.info("Attendance store ready at %s", settings.db_path)
        yield
        broker.close()
        logger.info("Live feed subscribers closed")

    app = FastAPI(title="Rollcall API", lifespan=lifespan)
    app.state.settings = settings
    app.state.broker = broker
    app.state.attendance = service

    # -----------------------------
    # CORS (scanners + dashboard)
    # -----------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    # -----------------------------
    # Error mapping
    # -----------------------------
    @app.exception_handler(AttendanceError)
    async def _attendance_error(request: Request, exc: AttendanceError):
        return JSONResponse(
            {"status": "error", "message": exc.message},
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"status": "error", "message": _validation_message(exc)},
            status_code=400,
        )

    @app.exception_handler(sqlite3.Error)
    async def _store_error(request: Request, exc: sqlite3.Error):
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            {"status": "error", "message": "Attendance store failure."},
            status_code=500,
        )

    app.include_router(core.router)
    app.include_router(scans.router)
    app.include_router(attendance.router)
    app.include_router(students.router)
    app.include_router(devices.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=8000)
