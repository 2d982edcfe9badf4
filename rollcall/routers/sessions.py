from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rollcall.config import DEFAULT_EXPIRY_MINUTES
from rollcall.geofence import Location, build_geofence
from rollcall.security import Caller, get_caller, require_student, require_teacher
from rollcall.services import sessions as session_service
from rollcall.services.audit import list_security_events
from rollcall.services.ledger import list_session_attendance, submit_attendance

router = APIRouter()


class GeofenceIn(BaseModel):
    latitude: float
    longitude: float
    radius_meters: float | None = None


class LocationIn(BaseModel):
    latitude: float
    longitude: float
    accuracy: float | None = None

    def to_location(self) -> Location:
        return Location(self.latitude, self.longitude, self.accuracy)


class SessionCreate(BaseModel):
    course_id: int
    name: str
    geofence: GeofenceIn | None = None
    address: str | None = None
    expiry_minutes: int = DEFAULT_EXPIRY_MINUTES
    late_window_minutes: int | None = None


class TokenResolve(BaseModel):
    token: str
    student_location: LocationIn | None = None


class AttendanceSubmit(BaseModel):
    location: LocationIn | None = None
    evidence_ref: str | None = None


@router.post("/sessions")
def create_session(payload: SessionCreate, caller: Caller = Depends(require_teacher)):
    geofence = None
    if payload.geofence:
        geofence = build_geofence(
            payload.geofence.latitude,
            payload.geofence.longitude,
            payload.geofence.radius_meters,
        )
    session = session_service.create_session(
        caller,
        payload.course_id,
        payload.name,
        geofence,
        payload.expiry_minutes,
        payload.late_window_minutes,
        address=payload.address,
    )
    return session.to_dict()


@router.get("/sessions/active")
def active_sessions(caller: Caller = Depends(require_teacher)):
    return [s.to_dict() for s in session_service.list_active_sessions(caller)]


@router.post("/sessions/resolve")
def resolve_token(payload: TokenResolve, caller: Caller = Depends(get_caller)):
    location = payload.student_location.to_location() if payload.student_location else None
    result = session_service.resolve_token(
        payload.token,
        student_id=caller.id if caller.is_student else None,
        student_location=location,
    )
    return result.to_dict()


@router.get("/sessions/{session_id}")
def session_detail(session_id: str, caller: Caller = Depends(require_teacher)):
    return session_service.get_owned_session(session_id, caller).to_dict()


@router.post("/sessions/{session_id}/end")
def end_session(session_id: str, caller: Caller = Depends(require_teacher)):
    session = session_service.end_session(session_id, caller)
    return {"ok": True, "session_id": session.id, "ended_at": session.to_dict()["ended_at"]}


@router.post("/sessions/{session_id}/attendance")
def mark_attendance(
    session_id: str,
    payload: AttendanceSubmit | None = None,
    caller: Caller = Depends(require_student),
):
    payload = payload or AttendanceSubmit()
    record = submit_attendance(
        session_id,
        caller,
        location=payload.location.to_location() if payload.location else None,
        evidence_ref=payload.evidence_ref,
    )
    return {"success": True, "status": record.status, "record": record.to_dict()}


@router.get("/sessions/{session_id}/attendance")
def session_attendance(session_id: str, caller: Caller = Depends(require_teacher)):
    return list_session_attendance(session_id, caller)


@router.get("/sessions/{session_id}/security-events")
def session_security_events(session_id: str, caller: Caller = Depends(require_teacher)):
    return [e.to_dict() for e in list_security_events(session_id, caller)]
