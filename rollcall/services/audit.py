import logging
import sqlite3
from datetime import datetime

from rollcall.errors import AuthorizationError, NotFoundError
from rollcall.geofence import Location
from rollcall.models import SecurityEvent, SecurityEventKind, to_iso, utcnow
from rollcall.security import Caller
from rollcall_store.db import get_security_events, get_session, insert_security_event

logger = logging.getLogger(__name__)


def record_security_event(
    session_id: str | None,
    kind: SecurityEventKind,
    detail: str,
    *,
    student_id: int | None = None,
    location: Location | None = None,
    now: datetime | None = None,
) -> int | None:
    """
    Append a security event and return its id.

    Best effort: callers invoke this on a path that is already failing, so a
    store error is logged and swallowed rather than masking the caller's error.
    """
    occurred_at = now or utcnow()
    logger.warning(
        "security event %s session=%s student=%s: %s",
        kind,
        session_id,
        student_id,
        detail,
    )
    try:
        return insert_security_event(
            session_id=session_id,
            student_id=student_id,
            kind=kind,
            occurred_at=to_iso(occurred_at),
            detail=detail,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
        )
    except (sqlite3.Error, ValueError):
        # ValueError covers UnicodeEncodeError raised while binding parameters.
        logger.exception("Failed to record %s security event for session %s", kind, session_id)
        return None


def list_security_events(session_id: str, caller: Caller) -> list[SecurityEvent]:
    row = get_session(session_id)
    if not row:
        raise NotFoundError("Session not found.")
    if int(row["teacher_id"]) != caller.id:
        raise AuthorizationError("Not authorized to view this session's security events.")
    return [SecurityEvent.from_row(r) for r in get_security_events(session_id)]
