import logging
import sqlite3
from datetime import datetime

from rollcall.classifier import classify
from rollcall.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from rollcall.geofence import Location, distance_meters, mismatch_detail, validate_coordinate, within_radius
from rollcall.models import AttendanceRecord, Session, ensure_utc, to_iso, utcnow
from rollcall.security import Caller
from rollcall.services.audit import record_security_event
from rollcall_store.db import (
    get_attendance_for_session,
    get_attendance_for_student,
    get_attendance_record,
    get_session as get_session_row,
    immediate_transaction,
    insert_attendance,
    is_enrolled,
)

logger = logging.getLogger(__name__)

MAX_EVIDENCE_REF_LENGTH = 512


def _validate_submission(location: Location | None, evidence_ref: str | None) -> str | None:
    if location is not None:
        validate_coordinate(location.latitude, location.longitude)
        if location.accuracy is not None and location.accuracy < 0:
            raise ValidationError("Location accuracy cannot be negative.")
    if evidence_ref is None:
        return None
    clean_ref = evidence_ref.strip()
    if len(clean_ref) > MAX_EVIDENCE_REF_LENGTH:
        raise ValidationError("Evidence reference is too long.")
    return clean_ref or None


def _check_session_live(session: Session, caller: Caller, location: Location | None, at: datetime) -> None:
    if not session.is_active:
        record_security_event(
            session.id,
            "expired_token",
            "Attempted to mark attendance on an ended session.",
            student_id=caller.id,
            location=location,
            now=at,
        )
        raise StateError("Session is no longer active.")
    if session.token_expired(at):
        record_security_event(
            session.id,
            "expired_token",
            f"Attempted to mark attendance after the code expired at {to_iso(session.token_expires_at)}.",
            student_id=caller.id,
            location=location,
            now=at,
        )
        raise StateError("QR code has expired.")


def submit_attendance(
    session_id: str,
    caller: Caller,
    *,
    location: Location | None = None,
    evidence_ref: str | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    """
    Record the caller's attendance for a session, exactly once.

    Checks run in a fixed order (session live, enrollment, duplicate, geofence,
    attendance window) and each failure raises a distinct error. The duplicate
    check, geofence check, classification and insert share one write
    transaction, and the (session_id, student_id) unique constraint backs it,
    so concurrent submissions for the same pair yield exactly one record.
    """
    at = ensure_utc(now or utcnow())
    evidence_ref = _validate_submission(location, evidence_ref)

    row = get_session_row(session_id)
    if not row:
        raise NotFoundError("Session not found.")
    session = Session.from_row(row)
    _check_session_live(session, caller, location, at)

    if not caller.is_student or not is_enrolled(session.course_id, caller.id):
        raise AuthorizationError("You are not enrolled in this course.")

    mismatch_distance: float | None = None
    try:
        with immediate_transaction() as conn:
            # Re-read under the write lock so a concurrent end_session is honoured.
            current = get_session_row(session_id, conn=conn)
            if not current or not current["is_active"]:
                raise StateError("Session is no longer active.")

            if get_attendance_record(session_id, caller.id, conn=conn):
                raise ConflictError("Attendance already marked for this session.")

            geofence = session.geofence
            if geofence and location and not within_radius(
                geofence.center, geofence.radius_meters, location.point
            ):
                mismatch_distance = distance_meters(geofence.center, location.point)
                raise ValidationError("Location verification failed.")

            status = classify(at, session.started_at, session.late_window_minutes)
            if status == "absent":
                raise StateError("Attendance window has closed.")

            record_id = insert_attendance(
                session_id=session_id,
                student_id=caller.id,
                course_id=session.course_id,
                marked_at=to_iso(at),
                status=status,
                latitude=location.latitude if location else None,
                longitude=location.longitude if location else None,
                accuracy=location.accuracy if location else None,
                evidence_ref=evidence_ref,
                conn=conn,
            )
    except sqlite3.IntegrityError:
        _record_duplicate(session_id, caller, location, at)
        raise ConflictError("Attendance already marked for this session.") from None
    except ConflictError:
        _record_duplicate(session_id, caller, location, at)
        raise
    except ValidationError:
        if mismatch_distance is not None and session.geofence:
            record_security_event(
                session_id,
                "location_mismatch",
                mismatch_detail(mismatch_distance, session.geofence.radius_meters),
                student_id=caller.id,
                location=location,
                now=at,
            )
        raise

    logger.info(
        "Attendance %s recorded for student %s in session %s as %s",
        record_id,
        caller.id,
        session_id,
        status,
    )
    return AttendanceRecord(
        id=record_id,
        session_id=session_id,
        student_id=caller.id,
        course_id=session.course_id,
        marked_at=at,
        status=status,
        location=location,
        evidence_ref=evidence_ref,
    )


def _record_duplicate(session_id: str, caller: Caller, location: Location | None, at: datetime) -> None:
    record_security_event(
        session_id,
        "duplicate_submission",
        "Attempted to mark attendance multiple times.",
        student_id=caller.id,
        location=location,
        now=at,
    )


def list_session_attendance(session_id: str, caller: Caller) -> list[dict]:
    row = get_session_row(session_id)
    if not row:
        raise NotFoundError("Session not found.")
    if int(row["teacher_id"]) != caller.id:
        raise AuthorizationError("Not authorized to view attendance for this session.")

    out = []
    for r in get_attendance_for_session(session_id):
        payload = AttendanceRecord.from_row(r).to_dict()
        payload["username"] = r["username"]
        payload["full_name"] = r["full_name"]
        out.append(payload)
    return out


def list_student_attendance(caller: Caller, course_id: int | None = None) -> list[AttendanceRecord]:
    if not caller.is_student:
        raise AuthorizationError("Only students have attendance records.")
    return [AttendanceRecord.from_row(r) for r in get_attendance_for_student(caller.id, course_id)]
