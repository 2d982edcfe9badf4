from fastapi import APIRouter

from rollcall.config import (
    DEFAULT_EXPIRY_MINUTES,
    DEFAULT_GEOFENCE_RADIUS_METERS,
    DEFAULT_LATE_WINDOW_MINUTES,
    GRACE_MINUTES,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    return {
        "grace_minutes": GRACE_MINUTES,
        "default_late_window_minutes": DEFAULT_LATE_WINDOW_MINUTES,
        "default_expiry_minutes": DEFAULT_EXPIRY_MINUTES,
        "default_geofence_radius_meters": DEFAULT_GEOFENCE_RADIUS_METERS,
        "late_policy": "reject_after_window",
    }
