import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "rollcall_store" / "rollcall.db"))
DB_TIMEOUT_SECONDS = float(os.getenv("ROLLCALL_DB_TIMEOUT_SECONDS", "30"))

SIGNING_KEY = (
    os.getenv("ROLLCALL_SIGNING_KEY", "").strip()
    or secrets.token_urlsafe(32)
)
# Session codes are signed separately so rotating one key does not void the other.
SESSION_CODE_KEY = os.getenv("ROLLCALL_SESSION_CODE_KEY", "").strip() or SIGNING_KEY
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))

LOG_LEVEL = (os.getenv("ROLLCALL_LOG_LEVEL") or "INFO").strip().upper()
LOG_FILE = os.getenv("ROLLCALL_LOG_FILE")


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_minutes(value: str | None, fallback: int) -> int:
    if not value:
        return fallback
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)

# Attendance timing
GRACE_MINUTES = _parse_minutes(os.getenv("ROLLCALL_GRACE_MINUTES"), 5)
DEFAULT_LATE_WINDOW_MINUTES = _parse_minutes(os.getenv("ROLLCALL_DEFAULT_LATE_WINDOW_MINUTES"), 15)
DEFAULT_EXPIRY_MINUTES = max(1, _parse_minutes(os.getenv("ROLLCALL_DEFAULT_EXPIRY_MINUTES"), 30))

DEFAULT_GEOFENCE_RADIUS_METERS = float(
    os.getenv("ROLLCALL_DEFAULT_GEOFENCE_RADIUS_METERS", "100")
)
