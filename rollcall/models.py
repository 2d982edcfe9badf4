from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from rollcall.classifier import AttendanceStatus
from rollcall.geofence import Geofence, Location

SecurityEventKind = Literal[
    "expired_token",
    "malformed_token",
    "duplicate_submission",
    "location_mismatch",
]
ResolutionReason = Literal["malformed", "not_found", "ended", "expired", "location_mismatch"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="milliseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class Session:
    id: str
    course_id: int
    teacher_id: int
    name: str
    geofence: Geofence | None
    token: str
    issued_at: datetime
    expiry_minutes: int
    started_at: datetime
    ended_at: datetime | None
    is_active: bool
    late_window_minutes: int | None = None
    address: str | None = None

    @property
    def token_expires_at(self) -> datetime:
        return self.issued_at + timedelta(minutes=self.expiry_minutes)

    def token_expired(self, now: datetime) -> bool:
        return now > self.token_expires_at

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Session":
        geofence = None
        if row["geofence_latitude"] is not None and row["geofence_longitude"] is not None:
            geofence = Geofence(
                latitude=row["geofence_latitude"],
                longitude=row["geofence_longitude"],
                radius_meters=row["geofence_radius_meters"],
            )
        return cls(
            id=row["id"],
            course_id=row["course_id"],
            teacher_id=row["teacher_id"],
            name=row["name"],
            geofence=geofence,
            token=row["token"],
            issued_at=parse_iso(row["issued_at"]),
            expiry_minutes=int(row["expiry_minutes"]),
            started_at=parse_iso(row["started_at"]),
            ended_at=parse_iso(row["ended_at"]),
            is_active=bool(row["is_active"]),
            late_window_minutes=row["late_window_minutes"],
            address=row["address"],
        )

    def to_dict(self, *, include_token: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "course_id": self.course_id,
            "teacher_id": self.teacher_id,
            "name": self.name,
            "geofence": None,
            "address": self.address,
            "issued_at": to_iso(self.issued_at),
            "expiry_minutes": self.expiry_minutes,
            "token_expires_at": to_iso(self.token_expires_at),
            "started_at": to_iso(self.started_at),
            "ended_at": to_iso(self.ended_at) if self.ended_at else None,
            "is_active": self.is_active,
            "late_window_minutes": self.late_window_minutes,
        }
        if self.geofence:
            out["geofence"] = {
                "latitude": self.geofence.latitude,
                "longitude": self.geofence.longitude,
                "radius_meters": self.geofence.radius_meters,
            }
        if include_token:
            out["token"] = self.token
        return out


@dataclass(frozen=True)
class AttendanceRecord:
    id: int
    session_id: str
    student_id: int
    course_id: int
    marked_at: datetime
    status: AttendanceStatus
    location: Location | None = None
    evidence_ref: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AttendanceRecord":
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = Location(row["latitude"], row["longitude"], row["accuracy"])
        return cls(
            id=int(row["id"]),
            session_id=row["session_id"],
            student_id=int(row["student_id"]),
            course_id=int(row["course_id"]),
            marked_at=parse_iso(row["marked_at"]),
            status=row["status"],
            location=location,
            evidence_ref=row["evidence_ref"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "marked_at": to_iso(self.marked_at),
            "status": self.status,
            "location": _location_dict(self.location),
            "evidence_ref": self.evidence_ref,
        }


@dataclass(frozen=True)
class SecurityEvent:
    id: int
    session_id: str | None
    student_id: int | None
    kind: SecurityEventKind
    occurred_at: datetime
    detail: str
    location: Location | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SecurityEvent":
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = Location(row["latitude"], row["longitude"])
        return cls(
            id=int(row["id"]),
            session_id=row["session_id"],
            student_id=row["student_id"],
            kind=row["kind"],
            occurred_at=parse_iso(row["occurred_at"]),
            detail=row["detail"] or "",
            location=location,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "student_id": self.student_id,
            "kind": self.kind,
            "occurred_at": to_iso(self.occurred_at),
            "detail": self.detail,
            "location": _location_dict(self.location),
        }


@dataclass(frozen=True)
class TokenResolution:
    valid: bool
    reason: ResolutionReason | None = None
    message: str | None = None
    session: Session | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.valid or self.session is None:
            return {"valid": False, "reason": self.reason, "message": self.message}
        return {
            "valid": True,
            "session_id": self.session.id,
            "course_id": self.session.course_id,
            "name": self.session.name,
        }


def _location_dict(location: Location | None) -> dict[str, Any] | None:
    if location is None:
        return None
    return {
        "latitude": location.latitude,
        "longitude": location.longitude,
        "accuracy": location.accuracy,
    }
