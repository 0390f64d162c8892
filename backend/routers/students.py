import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.deps import get_conn
from backend.security import require_session
from database.db import add_student, add_students, delete_student, get_all_students, get_student_by_uid

router = APIRouter(dependencies=[Depends(require_session)])


class StudentCreate(BaseModel):
    uid: str
    name: str
    roll_no: str | None = None
    roll_number: str | None = None
    branch: str | None = None
    department: str | None = None
    division: str | None = None
    year: str | None = None
    college_year: str | None = None
    parent_phone: str | None = None
    parent_contact: str | None = None
    parent_number: str | None = None


def _validated(payload: StudentCreate) -> dict:
    record = payload.model_dump()
    record["uid"] = payload.uid.strip()
    record["name"] = payload.name.strip()
    if not record["uid"] or not record["name"]:
        raise HTTPException(status_code=400, detail="uid and name are required.")
    return record


@router.get("/students")
def students(conn: sqlite3.Connection = Depends(get_conn)):
    return [s.to_dict() for s in get_all_students(conn)]


@router.get("/students/{uid}")
def student_detail(uid: str, conn: sqlite3.Connection = Depends(get_conn)):
    student = get_student_by_uid(conn, uid)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return student.to_dict()


@router.post("/students")
def create_student(payload: StudentCreate, conn: sqlite3.Connection = Depends(get_conn)):
    record = _validated(payload)
    try:
        add_student(conn, record)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="UID already registered.")
    student = get_student_by_uid(conn, record["uid"])
    return student.to_dict() if student else {}


@router.post("/students/bulk")
def bulk_create_students(payload: list[StudentCreate], conn: sqlite3.Connection = Depends(get_conn)):
    if not payload:
        raise HTTPException(status_code=400, detail="No students supplied.")
    records = [_validated(item) for item in payload]
    uids = [r["uid"] for r in records]
    if len(set(uids)) != len(uids):
        raise HTTPException(status_code=400, detail="Duplicate uid in import.")
    try:
        ids = add_students(conn, records)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="One or more UIDs already registered.")
    return {"ok": True, "imported": len(ids)}


@router.delete("/students/{uid}")
def remove_student(uid: str, conn: sqlite3.Connection = Depends(get_conn)):
    if not delete_student(conn, uid):
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"ok": True}
