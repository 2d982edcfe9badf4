import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import Depends, Header

from rollcall.codec import b64url_decode, b64url_encode, hmac_signature
from rollcall.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY
from rollcall.errors import AuthenticationError, AuthorizationError
from rollcall_store.db import get_user_by_id

Role = Literal["teacher", "student"]


@dataclass(frozen=True)
class Caller:
    id: int
    username: str
    role: Role
    full_name: str

    @property
    def is_teacher(self) -> bool:
        return self.role == "teacher"

    @property
    def is_student(self) -> bool:
        return self.role == "student"


def issue_session_token(user_id: int, username: str, role: str) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    exp = now + AUTH_TOKEN_TTL_SECONDS
    payload = {
        "sub": str(user_id),
        "usr": username,
        "role": role,
        "iat": now,
        "exp": exp,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{hmac_signature(SIGNING_KEY, payload_b64)}"
    return token, payload


def decode_auth_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    try:
        expected = hmac_signature(SIGNING_KEY, payload_b64)
    except UnicodeError:
        return None
    if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
        return None

    try:
        payload_raw = b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except ValueError:
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip().isdigit():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None

    return payload


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise AuthenticationError("Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Invalid authorization scheme.")

    payload = decode_auth_token(token.strip())
    if not payload:
        raise AuthenticationError("Invalid or expired session token.")

    return payload


def get_caller(session: dict[str, Any] = Depends(require_session)) -> Caller:
    """Resolve the bearer token to a live user; a deleted account is unauthenticated."""
    row = get_user_by_id(int(session["sub"]))
    if not row:
        raise AuthenticationError("Account no longer exists.")
    user_id, username, role, full_name = row
    return Caller(id=int(user_id), username=username, role=role, full_name=full_name)


def require_teacher(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_teacher:
        raise AuthorizationError("Only teachers can perform this action.")
    return caller


def require_student(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_student:
        raise AuthorizationError("Only students can perform this action.")
    return caller
