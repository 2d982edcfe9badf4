import logging
import uuid
from datetime import datetime, timedelta

from rollcall.codec import decode_session_token, encode_session_token, peek_session_id
from rollcall.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from rollcall.geofence import (
    Geofence,
    Location,
    distance_meters,
    mismatch_detail,
    validate_coordinate,
    within_radius,
)
from rollcall.models import Session, TokenResolution, ensure_utc, to_iso, utcnow
from rollcall.security import Caller
from rollcall.services.audit import record_security_event
from rollcall_store.db import (
    get_active_sessions_for_teacher,
    get_course_by_id,
    get_session as get_session_row,
    get_sessions_for_course,
    insert_session,
    mark_session_ended,
)

logger = logging.getLogger(__name__)


def create_session(
    caller: Caller,
    course_id: int,
    name: str,
    geofence: Geofence | None,
    expiry_minutes: int,
    late_window_minutes: int | None = None,
    *,
    address: str | None = None,
    now: datetime | None = None,
) -> Session:
    """Open a live session for a course the caller teaches and issue its code."""
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValidationError("Session name is required.")
    if not isinstance(expiry_minutes, int) or expiry_minutes <= 0:
        raise ValidationError("expiry_minutes must be a positive whole number.")
    if late_window_minutes is not None and (
        not isinstance(late_window_minutes, int) or late_window_minutes < 0
    ):
        raise ValidationError("late_window_minutes must be zero or a positive whole number.")

    course = get_course_by_id(course_id)
    if not course:
        raise NotFoundError("Course not found.")
    if int(course[6]) != caller.id:
        raise AuthorizationError("Not authorized to create sessions for this course.")

    started_at = ensure_utc(now or utcnow())
    session_id = uuid.uuid4().hex
    token = encode_session_token(session_id, started_at, course_id=course_id)

    insert_session(
        session_id=session_id,
        course_id=course_id,
        teacher_id=caller.id,
        name=clean_name,
        geofence_latitude=geofence.latitude if geofence else None,
        geofence_longitude=geofence.longitude if geofence else None,
        geofence_radius_meters=geofence.radius_meters if geofence else None,
        address=(address or "").strip() or None,
        token=token,
        issued_at=to_iso(started_at),
        expiry_minutes=expiry_minutes,
        started_at=to_iso(started_at),
        late_window_minutes=late_window_minutes,
    )
    logger.info("Session %s opened for course %s by user %s", session_id, course_id, caller.id)
    return get_session(session_id)


def get_session(session_id: str) -> Session:
    row = get_session_row(session_id)
    if not row:
        raise NotFoundError("Session not found.")
    return Session.from_row(row)


def get_owned_session(session_id: str, caller: Caller) -> Session:
    session = get_session(session_id)
    if session.teacher_id != caller.id:
        raise AuthorizationError("Not authorized to access this session.")
    return session


def end_session(session_id: str, caller: Caller, *, now: datetime | None = None) -> Session:
    """
    Stop a session from accepting attendance.

    Ending an already-ended session is a StateError rather than a silent no-op.
    """
    session = get_session(session_id)
    if session.teacher_id != caller.id:
        raise AuthorizationError("Not authorized to end this session.")
    if not session.is_active:
        raise StateError("Session has already ended.")

    ended_at = ensure_utc(now or utcnow())
    # Conditional update: a concurrent end by the same owner loses here.
    if not mark_session_ended(session_id, to_iso(ended_at)):
        raise StateError("Session has already ended.")
    logger.info("Session %s ended by user %s", session_id, caller.id)
    return get_session(session_id)


def list_active_sessions(caller: Caller) -> list[Session]:
    return [Session.from_row(r) for r in get_active_sessions_for_teacher(caller.id)]


def list_course_sessions(course_id: int, caller: Caller) -> list[Session]:
    course = get_course_by_id(course_id)
    if not course:
        raise NotFoundError("Course not found.")
    if int(course[6]) != caller.id:
        raise AuthorizationError("Not authorized to view sessions for this course.")
    return [Session.from_row(r) for r in get_sessions_for_course(course_id)]


def resolve_token(
    token: str,
    *,
    student_id: int | None = None,
    student_location: Location | None = None,
    now: datetime | None = None,
) -> TokenResolution:
    """
    Check a scanned code without recording attendance.

    Never raises for a bad code: every rejection comes back as an invalid
    TokenResolution, and the security-relevant ones are also audited. An
    unusable ``student_location`` is a caller error and raises ValidationError.
    """
    if student_location is not None:
        validate_coordinate(student_location.latitude, student_location.longitude)
    at = ensure_utc(now or utcnow())

    claims = decode_session_token(token)
    if claims is None:
        attributed = peek_session_id(token)
        if attributed and get_session_row(attributed) is None:
            attributed = None
        record_security_event(
            attributed,
            "malformed_token",
            "Code failed to decode or verify.",
            student_id=student_id,
            location=student_location,
            now=at,
        )
        return TokenResolution(valid=False, reason="malformed", message="Invalid QR code")

    row = get_session_row(claims.session_id)
    if not row:
        return TokenResolution(valid=False, reason="not_found", message="Session not found")
    session = Session.from_row(row)

    if not session.is_active:
        record_security_event(
            session.id,
            "expired_token",
            "Code scanned after the session ended.",
            student_id=student_id,
            location=student_location,
            now=at,
        )
        return TokenResolution(valid=False, reason="ended", message="Session has ended")

    # Expiry is measured from the code's own issue time, not the session start.
    if at > claims.issued_at + timedelta(minutes=session.expiry_minutes):
        record_security_event(
            session.id,
            "expired_token",
            f"Code issued at {to_iso(claims.issued_at)} expired after {session.expiry_minutes} minutes.",
            student_id=student_id,
            location=student_location,
            now=at,
        )
        return TokenResolution(valid=False, reason="expired", message="QR code has expired")

    geofence = session.geofence
    if geofence and student_location and not within_radius(
        geofence.center, geofence.radius_meters, student_location.point
    ):
        distance = distance_meters(geofence.center, student_location.point)
        record_security_event(
            session.id,
            "location_mismatch",
            mismatch_detail(distance, geofence.radius_meters),
            student_id=student_id,
            location=student_location,
            now=at,
        )
        return TokenResolution(
            valid=False,
            reason="location_mismatch",
            message="Location verification failed",
        )

    return TokenResolution(valid=True, session=session)
