import logging
import sqlite3
from datetime import datetime
from typing import Any

from rollcall.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from rollcall.models import ensure_utc, to_iso, utcnow
from rollcall.security import Caller
from rollcall_store.db import (
    add_course,
    enroll_student,
    get_course_by_id,
    get_courses_for_student,
    get_courses_for_teacher,
    get_user_by_username,
)

logger = logging.getLogger(__name__)


def _course_to_dict(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "code": row[1],
        "name": row[2],
        "department": row[3],
        "semester": row[4],
        "description": row[5],
        "teacher_id": row[6],
        "is_active": bool(row[7]),
    }


def create_course(
    caller: Caller,
    *,
    code: str,
    name: str,
    department: str | None = None,
    semester: int | None = None,
    description: str | None = None,
) -> dict[str, Any]:
    if not caller.is_teacher:
        raise AuthorizationError("Only teachers can create courses.")

    clean_code = (code or "").strip().upper()
    clean_name = (name or "").strip()
    if not clean_code or not clean_name:
        raise ValidationError("Course code and name are required.")

    try:
        course_id = add_course(
            code=clean_code,
            name=clean_name,
            department=(department or "").strip() or None,
            semester=semester,
            description=(description or "").strip() or None,
            teacher_id=caller.id,
        )
    except sqlite3.IntegrityError:
        raise ConflictError("Course code already exists.")

    logger.info("Course %s (%s) created by user %s", course_id, clean_code, caller.id)
    return _course_to_dict(get_course_by_id(course_id))


def list_courses(caller: Caller) -> list[dict[str, Any]]:
    rows = get_courses_for_teacher(caller.id) if caller.is_teacher else get_courses_for_student(caller.id)
    return [_course_to_dict(r) for r in rows]


def enroll(caller: Caller, course_id: int, username: str, *, now: datetime | None = None) -> dict[str, Any]:
    course = get_course_by_id(course_id)
    if not course:
        raise NotFoundError("Course not found.")
    if int(course[6]) != caller.id:
        raise AuthorizationError("Not authorized to manage enrollment for this course.")

    student = get_user_by_username(username or "")
    if not student:
        raise NotFoundError("Student not found.")
    student_id, student_username, role, full_name = student
    if role != "student":
        raise ValidationError("Only student accounts can be enrolled.")

    enrolled_at = to_iso(ensure_utc(now or utcnow()))
    try:
        enrollment_id = enroll_student(course_id, int(student_id), enrolled_at)
    except sqlite3.IntegrityError:
        raise ConflictError("Student is already enrolled in this course.")

    return {
        "id": enrollment_id,
        "course_id": course_id,
        "student_id": student_id,
        "username": student_username,
        "full_name": full_name,
        "enrolled_at": enrolled_at,
    }
