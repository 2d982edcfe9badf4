import time
import sqlite3

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rollcall.errors import AuthenticationError, ConflictError, ValidationError
from rollcall.security import Caller, get_caller, issue_session_token
from rollcall_store.db import create_user, verify_user_credentials

router = APIRouter()

ALLOWED_ROLES = {"teacher", "student"}


class UserLogin(BaseModel):
    username: str
    password: str


class UserRegister(BaseModel):
    username: str
    password: str
    role: str
    full_name: str


def _token_response(user_id: int, username: str, role: str) -> dict:
    token, claims = issue_session_token(user_id, username, role)
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": user_id,
        "username": username,
        "role": role,
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/register")
def register(payload: UserRegister):
    username = payload.username.strip()
    password = payload.password.strip()
    role = payload.role.strip().lower()
    full_name = payload.full_name.strip()

    if not username or not password or not full_name:
        raise ValidationError("Username, password and full name are required.")
    if role not in ALLOWED_ROLES:
        raise ValidationError("Role must be 'teacher' or 'student'.")

    try:
        user_id = create_user(username, password, role, full_name)
    except sqlite3.IntegrityError:
        raise ConflictError("Username already exists.")

    return _token_response(user_id, username, role)


@router.post("/auth/login")
def login(payload: UserLogin):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise ValidationError("Username is required.")
    if not password:
        raise ValidationError("Password is required.")

    user = verify_user_credentials(username, password)
    if not user:
        raise AuthenticationError("Invalid credentials.")

    return _token_response(int(user["id"]), user["username"], user["role"])


@router.get("/auth/me")
def auth_me(caller: Caller = Depends(get_caller)):
    return {
        "id": caller.id,
        "username": caller.username,
        "role": caller.role,
        "full_name": caller.full_name,
    }
