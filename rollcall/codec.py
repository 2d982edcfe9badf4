import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from rollcall.config import SESSION_CODE_KEY

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class SessionTokenClaims:
    session_id: str
    issued_at: datetime
    course_id: int | None = None


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def hmac_signature(key: str, payload_b64: str) -> str:
    digest = hmac.new(
        key.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return b64url_encode(digest)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def encode_session_token(
    session_id: str,
    issued_at: datetime,
    *,
    course_id: int | None = None,
) -> str:
    """
    Encode a session reference into a self-contained scannable code.

    Format: ``<payload>.<signature>``, both base64url without padding. The
    payload is compact JSON with ``sid`` (session id), ``iat`` (issued-at,
    epoch milliseconds) and optionally ``cid`` (course id).
    """
    payload: dict[str, Any] = {"sid": session_id, "iat": to_epoch_ms(issued_at)}
    if course_id is not None:
        payload["cid"] = int(course_id)
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = b64url_encode(payload_json.encode("utf-8"))
    return f"{payload_b64}.{hmac_signature(SESSION_CODE_KEY, payload_b64)}"


def _load_payload(payload_b64: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError, RecursionError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _usable_sid(sid: Any) -> bool:
    if not isinstance(sid, str) or not sid.strip():
        return False
    # JSON escapes can smuggle in lone surrogates, which sqlite cannot bind.
    try:
        sid.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def decode_session_token(token: str) -> SessionTokenClaims | None:
    """Return the token's claims, or None when the token is malformed or forged."""
    if not isinstance(token, str):
        return None
    token = token.strip()
    if not token or token.count(".") != 1:
        return None

    payload_b64, signature = token.split(".", 1)
    try:
        expected = hmac_signature(SESSION_CODE_KEY, payload_b64)
    except UnicodeError:
        return None
    if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
        return None

    payload = _load_payload(payload_b64)
    if payload is None:
        return None

    sid = payload.get("sid")
    iat = payload.get("iat")
    cid = payload.get("cid")
    if not _usable_sid(sid):
        return None
    # bool is an int subclass; reject it explicitly.
    if not isinstance(iat, int) or isinstance(iat, bool) or iat < 0:
        return None
    if cid is not None and (not isinstance(cid, int) or isinstance(cid, bool)):
        return None

    try:
        issued_at = from_epoch_ms(iat)
    except (OverflowError, OSError, ValueError):
        return None
    return SessionTokenClaims(session_id=sid, issued_at=issued_at, course_id=cid)


def peek_session_id(token: str) -> str | None:
    """
    Read ``sid`` without verifying the signature.

    Only used to attribute a malformed-token security event to a session; never
    trust the result for anything else.
    """
    if not isinstance(token, str) or "." not in token:
        return None
    try:
        payload = _load_payload(token.strip().split(".", 1)[0])
    except UnicodeError:
        return None
    if payload is None:
        return None
    sid = payload.get("sid")
    return sid if _usable_sid(sid) else None
