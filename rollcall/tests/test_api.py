import json
import math

import pytest

import rollcall.routers.sessions as session_routes
from rollcall.codec import b64url_encode
from rollcall.geofence import EARTH_RADIUS_METERS

CENTER = (40.0, -75.0)


def _register(client, username: str, role: str) -> dict:
    res = client.post(
        "/auth/register",
        json={
            "username": username,
            "password": "secret-pass",
            "role": role,
            "full_name": username.title(),
        },
    )
    assert res.status_code == 200
    return res.json()


def _headers(auth: dict) -> dict:
    return {"Authorization": f"Bearer {auth['access_token']}"}


@pytest.fixture()
def teacher_headers(client):
    return _headers(_register(client, "prof.ada", "teacher"))


@pytest.fixture()
def student_headers(client):
    return _headers(_register(client, "stu.alan", "student"))


@pytest.fixture()
def course_id(client, teacher_headers, student_headers):
    res = client.post(
        "/courses",
        json={"code": "cs101", "name": "Intro to Computing", "department": "CS", "semester": 1},
        headers=teacher_headers,
    )
    assert res.status_code == 200
    course_id = res.json()["id"]

    res = client.post(
        f"/courses/{course_id}/enrollments",
        json={"username": "stu.alan"},
        headers=teacher_headers,
    )
    assert res.status_code == 200
    return course_id


def _open_session(client, headers, course_id, **overrides) -> dict:
    body = {"course_id": course_id, "name": "Lecture 1", "expiry_minutes": 30, "late_window_minutes": 15}
    body.update(overrides)
    res = client.post("/sessions", json=body, headers=headers)
    assert res.status_code == 200
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_attendance_config_reports_defaults(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    payload = res.json()
    assert payload["grace_minutes"] == 5
    assert payload["default_late_window_minutes"] == 15
    assert payload["default_geofence_radius_meters"] == 100
    assert payload["late_policy"] == "reject_after_window"


def test_login_rejects_invalid_credentials(client):
    _register(client, "stu.alan", "student")
    res = client.post("/auth/login", json={"username": "stu.alan", "password": "wrong-password"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."
    assert res.json()["error"] == "authentication"


def test_login_and_me(client):
    _register(client, "prof.ada", "teacher")
    res = client.post("/auth/login", json={"username": "PROF.ADA", "password": "secret-pass"})
    assert res.status_code == 200
    me = client.get("/auth/me", headers=_headers(res.json()))
    assert me.status_code == 200
    assert me.json()["role"] == "teacher"


def test_register_rejects_duplicates_and_bad_roles(client):
    _register(client, "stu.alan", "student")
    res = client.post(
        "/auth/register",
        json={"username": "stu.alan", "password": "x", "role": "student", "full_name": "Alan"},
    )
    assert res.status_code == 409

    res = client.post(
        "/auth/register",
        json={"username": "root", "password": "x", "role": "admin", "full_name": "Root"},
    )
    assert res.status_code == 422


def test_endpoints_require_session(client):
    for method, path in (
        ("POST", "/sessions"),
        ("POST", "/sessions/resolve"),
        ("POST", "/sessions/abc/attendance"),
        ("GET", "/sessions/abc/security-events"),
        ("GET", "/attendance/me"),
    ):
        res = client.request(method, path, json={})
        assert res.status_code == 401
        assert res.json()["detail"] == "Missing bearer token."

    res = client.get("/courses", headers={"Authorization": "Bearer forged.token"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid or expired session token."


def test_students_cannot_open_sessions(client, student_headers, course_id):
    res = client.post(
        "/sessions",
        json={"course_id": course_id, "name": "Sneaky", "expiry_minutes": 30},
        headers=student_headers,
    )
    assert res.status_code == 403


def test_full_attendance_flow(client, teacher_headers, student_headers, course_id):
    session = _open_session(client, teacher_headers, course_id)
    assert session["is_active"] is True

    resolved = client.post("/sessions/resolve", json={"token": session["token"]}, headers=student_headers)
    assert resolved.status_code == 200
    assert resolved.json() == {
        "valid": True,
        "session_id": session["id"],
        "course_id": course_id,
        "name": "Lecture 1",
    }

    res = client.post(
        f"/sessions/{session['id']}/attendance",
        json={"evidence_ref": "captures/42"},
        headers=student_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "on_time"
    assert res.json()["record"]["evidence_ref"] == "captures/42"

    again = client.post(f"/sessions/{session['id']}/attendance", json={}, headers=student_headers)
    assert again.status_code == 409
    assert again.json()["error"] == "conflict"

    roster = client.get(f"/sessions/{session['id']}/attendance", headers=teacher_headers)
    assert roster.status_code == 200
    assert [r["username"] for r in roster.json()] == ["stu.alan"]

    mine = client.get("/attendance/me", headers=student_headers)
    assert mine.status_code == 200
    assert len(mine.json()) == 1

    events = client.get(f"/sessions/{session['id']}/security-events", headers=teacher_headers)
    assert events.status_code == 200
    assert [e["kind"] for e in events.json()] == ["duplicate_submission"]

    forbidden = client.get(f"/sessions/{session['id']}/security-events", headers=student_headers)
    assert forbidden.status_code == 403


def test_resolve_malformed_token_returns_invalid(client, student_headers):
    res = client.post("/sessions/resolve", json={"token": "garbage"}, headers=student_headers)
    assert res.status_code == 200
    assert res.json()["valid"] is False
    assert res.json()["reason"] == "malformed"

    payload_b64 = b64url_encode(json.dumps({"sid": "\ud800", "iat": 1}).encode("ascii"))
    res = client.post("/sessions/resolve", json={"token": f"{payload_b64}.forged"}, headers=student_headers)
    assert res.status_code == 200
    assert res.json() == {"valid": False, "reason": "malformed", "message": "Invalid QR code"}


def test_resolve_rejects_out_of_range_location(client, teacher_headers, student_headers, course_id):
    session = _open_session(client, teacher_headers, course_id)
    res = client.post(
        "/sessions/resolve",
        json={"token": session["token"], "student_location": {"latitude": 120.0, "longitude": 0.0}},
        headers=student_headers,
    )
    assert res.status_code == 422
    assert res.json()["error"] == "validation"


def test_geofence_rejection_over_http(client, teacher_headers, student_headers, course_id):
    session = _open_session(
        client,
        teacher_headers,
        course_id,
        geofence={"latitude": CENTER[0], "longitude": CENTER[1], "radius_meters": 100},
    )
    far_lat = CENTER[0] + math.degrees(150 / EARTH_RADIUS_METERS)

    res = client.post(
        f"/sessions/{session['id']}/attendance",
        json={"location": {"latitude": far_lat, "longitude": CENTER[1]}},
        headers=student_headers,
    )
    assert res.status_code == 422
    assert res.json()["detail"] == "Location verification failed."
    roster = client.get(f"/sessions/{session['id']}/attendance", headers=teacher_headers)
    assert roster.json() == []

    events = client.get(f"/sessions/{session['id']}/security-events", headers=teacher_headers).json()
    assert events[0]["kind"] == "location_mismatch"
    assert events[0]["detail"] == "Distance: 150m, Max allowed: 100m"


def test_invalid_geofence_is_rejected(client, teacher_headers, course_id):
    res = client.post(
        "/sessions",
        json={
            "course_id": course_id,
            "name": "Lab",
            "expiry_minutes": 30,
            "geofence": {"latitude": 120.0, "longitude": 0.0},
        },
        headers=teacher_headers,
    )
    assert res.status_code == 422


def test_end_session_over_http(client, teacher_headers, student_headers, course_id):
    session = _open_session(client, teacher_headers, course_id)

    res = client.post(f"/sessions/{session['id']}/end", headers=student_headers)
    assert res.status_code == 403

    res = client.post(f"/sessions/{session['id']}/end", headers=teacher_headers)
    assert res.status_code == 200
    assert res.json()["ok"] is True

    res = client.post(f"/sessions/{session['id']}/end", headers=teacher_headers)
    assert res.status_code == 409
    assert res.json()["error"] == "state"

    res = client.post(f"/sessions/{session['id']}/attendance", json={}, headers=student_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Session is no longer active."

    active = client.get("/sessions/active", headers=teacher_headers)
    assert active.json() == []


def test_unknown_session_is_not_found(client, student_headers):
    res = client.post("/sessions/does-not-exist/attendance", json={}, headers=student_headers)
    assert res.status_code == 404


def test_default_expiry_is_applied(client, teacher_headers, course_id):
    res = client.post(
        "/sessions",
        json={"course_id": course_id, "name": "Lecture"},
        headers=teacher_headers,
    )
    assert res.status_code == 200
    assert res.json()["expiry_minutes"] == session_routes.DEFAULT_EXPIRY_MINUTES
