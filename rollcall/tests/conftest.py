from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import rollcall.config as config
import rollcall.main as main
import rollcall_store.db as db
from rollcall.security import Caller
from rollcall.services import courses as course_service

T0 = datetime(2026, 2, 10, 8, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(store):
    with TestClient(main.app) as c:
        yield c


def count_attendance(session_id: str, student_id: int) -> int:
    conn = db.connect_db()
    row = conn.execute(
        "SELECT COUNT(1) FROM attendance WHERE session_id = ? AND student_id = ?",
        (session_id, student_id),
    ).fetchone()
    conn.close()
    return int(row[0])


def make_caller(username: str, role: str, full_name: str | None = None) -> Caller:
    user_id = db.create_user(username, "secret-pass", role, full_name or username.title())
    return Caller(id=user_id, username=username, role=role, full_name=full_name or username.title())


@pytest.fixture()
def teacher(store) -> Caller:
    return make_caller("prof.ada", "teacher", "Ada Lovelace")


@pytest.fixture()
def student(store) -> Caller:
    return make_caller("stu.alan", "student", "Alan Turing")


@pytest.fixture()
def course(teacher, student) -> dict:
    created = course_service.create_course(teacher, code="cs101", name="Intro to Computing")
    course_service.enroll(teacher, created["id"], student.username, now=T0)
    return created
