import hashlib
import hmac
import secrets
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from rollcall.config import DB_PATH, DB_TIMEOUT_SECONDS


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

SESSION_COLUMNS = """
    id, course_id, teacher_id, name,
    geofence_latitude, geofence_longitude, geofence_radius_meters, address,
    token, issued_at, expiry_minutes,
    started_at, ended_at, is_active, late_window_minutes
"""
ATTENDANCE_COLUMNS = """
    id, session_id, student_id, course_id, marked_at,
    latitude, longitude, accuracy, evidence_ref, status
"""
SECURITY_EVENT_COLUMNS = """
    id, session_id, student_id, kind, occurred_at, detail, latitude, longitude
"""


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_TIMEOUT_SECONDS, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def immediate_transaction() -> Iterator[sqlite3.Connection]:
    """
    Yield a connection holding SQLite's write lock until commit or rollback.

    Everything read and written through the yielded connection is serialized
    against every other writer, so a read-check-insert inside the block cannot
    interleave with another request doing the same.
    """
    conn = connect_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('teacher', 'student')),
        full_name TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS courses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        department TEXT,
        semester INTEGER,
        description TEXT,
        teacher_id INTEGER NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (teacher_id) REFERENCES users(id)
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS enrollments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        course_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        enrolled_at TEXT NOT NULL,
        FOREIGN KEY (course_id) REFERENCES courses(id),
        FOREIGN KEY (student_id) REFERENCES users(id),
        UNIQUE(course_id, student_id)
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        course_id INTEGER NOT NULL,
        teacher_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        geofence_latitude REAL,
        geofence_longitude REAL,
        geofence_radius_meters REAL,
        address TEXT,
        token TEXT NOT NULL,
        issued_at TEXT NOT NULL,         -- ISO-8601 UTC
        expiry_minutes INTEGER NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        late_window_minutes INTEGER,
        FOREIGN KEY (course_id) REFERENCES courses(id),
        FOREIGN KEY (teacher_id) REFERENCES users(id)
    )
    """
    )

    # One row per (session, student): the single-submission guarantee.
    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        student_id INTEGER NOT NULL,
        course_id INTEGER NOT NULL,
        marked_at TEXT NOT NULL,
        latitude REAL,
        longitude REAL,
        accuracy REAL,
        evidence_ref TEXT,
        status TEXT NOT NULL CHECK (status IN ('on_time', 'late', 'absent')),
        FOREIGN KEY (session_id) REFERENCES sessions(id),
        FOREIGN KEY (student_id) REFERENCES users(id),
        UNIQUE(session_id, student_id)
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS security_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,                 -- NULL only for unattributable malformed codes
        student_id INTEGER,
        kind TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        detail TEXT NOT NULL DEFAULT '',
        latitude REAL,
        longitude REAL
    )
    """
    )

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_teacher ON sessions(teacher_id, is_active)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_course ON sessions(course_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance(student_id)")
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_security_events_session ON security_events(session_id, occurred_at)"
    )

    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def create_user(username: str, password: str, role: str, full_name: str) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO users (username, password_hash, role, full_name)
            VALUES (?, ?, ?, ?)
            """,
            (clean_username, _hash_password(clean_password), role, full_name.strip()),
        )
        user_id = int(cur.lastrowid)
        conn.commit()
        return user_id
    finally:
        conn.close()


def verify_user_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash, role
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    user_id, saved_username, password_hash, role = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": user_id, "username": saved_username, "role": role}


def get_user_by_id(user_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, role, full_name
        FROM users
        WHERE id = ?
        """,
        (user_id,),
    )
    row = cur.fetchone()
    conn.close()
    return row


def get_user_by_username(username: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, role, full_name
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username.strip(),),
    )
    row = cur.fetchone()
    conn.close()
    return row


# -----------------------------
# Courses + enrollment
# -----------------------------
def add_course(
    *,
    code: str,
    name: str,
    department: str | None,
    semester: int | None,
    description: str | None,
    teacher_id: int,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO courses (code, name, department, semester, description, teacher_id)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (code, name, department, semester, description, teacher_id),
        )
        course_id = int(cur.lastrowid)
        conn.commit()
        return course_id
    finally:
        conn.close()


def get_course_by_id(course_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, code, name, department, semester, description, teacher_id, is_active
        FROM courses
        WHERE id = ?
        """,
        (course_id,),
    )
    row = cur.fetchone()
    conn.close()
    return row


def get_courses_for_teacher(teacher_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, code, name, department, semester, description, teacher_id, is_active
        FROM courses
        WHERE teacher_id = ? AND is_active = 1
        ORDER BY code
        """,
        (teacher_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return rows


def get_courses_for_student(student_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT c.id, c.code, c.name, c.department, c.semester, c.description, c.teacher_id, c.is_active
        FROM enrollments e
        JOIN courses c ON c.id = e.course_id
        WHERE e.student_id = ?
        ORDER BY c.code
        """,
        (student_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return rows


def enroll_student(course_id: int, student_id: int, enrolled_at: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO enrollments (course_id, student_id, enrolled_at)
            VALUES (?, ?, ?)
            """,
            (course_id, student_id, enrolled_at),
        )
        enrollment_id = int(cur.lastrowid)
        conn.commit()
        return enrollment_id
    finally:
        conn.close()


def is_enrolled(course_id: int, student_id: int, *, conn: sqlite3.Connection | None = None) -> bool:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT 1
            FROM enrollments
            WHERE course_id = ? AND student_id = ?
            """,
            (course_id, student_id),
        )
        return cur.fetchone() is not None
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Sessions
# -----------------------------
def insert_session(
    *,
    session_id: str,
    course_id: int,
    teacher_id: int,
    name: str,
    geofence_latitude: float | None,
    geofence_longitude: float | None,
    geofence_radius_meters: float | None,
    address: str | None,
    token: str,
    issued_at: str,
    expiry_minutes: int,
    started_at: str,
    late_window_minutes: int | None,
) -> None:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO sessions (
                id,
                course_id,
                teacher_id,
                name,
                geofence_latitude,
                geofence_longitude,
                geofence_radius_meters,
                address,
                token,
                issued_at,
                expiry_minutes,
                started_at,
                is_active,
                late_window_minutes
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (
                session_id,
                course_id,
                teacher_id,
                name,
                geofence_latitude,
                geofence_longitude,
                geofence_radius_meters,
                address,
                token,
                issued_at,
                expiry_minutes,
                started_at,
                late_window_minutes,
            ),
        )
        conn.commit()
    finally:
        conn.close()


def _session_row_to_dict(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "course_id": row[1],
        "teacher_id": row[2],
        "name": row[3],
        "geofence_latitude": row[4],
        "geofence_longitude": row[5],
        "geofence_radius_meters": row[6],
        "address": row[7],
        "token": row[8],
        "issued_at": row[9],
        "expiry_minutes": row[10],
        "started_at": row[11],
        "ended_at": row[12],
        "is_active": bool(row[13]),
        "late_window_minutes": row[14],
    }


def get_session(session_id: str, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {SESSION_COLUMNS}
            FROM sessions
            WHERE id = ?
            """,
            (session_id,),
        )
        row = cur.fetchone()
        return _session_row_to_dict(row) if row else None
    finally:
        if owns_conn:
            active_conn.close()


def get_active_sessions_for_teacher(teacher_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {SESSION_COLUMNS}
        FROM sessions
        WHERE teacher_id = ? AND is_active = 1
        ORDER BY started_at DESC
        """,
        (teacher_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_session_row_to_dict(r) for r in rows]


def get_sessions_for_course(course_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {SESSION_COLUMNS}
        FROM sessions
        WHERE course_id = ?
        ORDER BY started_at DESC
        """,
        (course_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_session_row_to_dict(r) for r in rows]


def mark_session_ended(session_id: str, ended_at: str) -> bool:
    """Flip an active session off. Returns False if it was not active."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE sessions
        SET is_active = 0,
            ended_at = ?
        WHERE id = ? AND is_active = 1
        """,
        (ended_at, session_id),
    )
    changed = cur.rowcount == 1
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Attendance
# -----------------------------
def _attendance_row_to_dict(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "session_id": row[1],
        "student_id": row[2],
        "course_id": row[3],
        "marked_at": row[4],
        "latitude": row[5],
        "longitude": row[6],
        "accuracy": row[7],
        "evidence_ref": row[8],
        "status": row[9],
    }


def get_attendance_record(
    session_id: str,
    student_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {ATTENDANCE_COLUMNS}
            FROM attendance
            WHERE session_id = ? AND student_id = ?
            """,
            (session_id, student_id),
        )
        row = cur.fetchone()
        return _attendance_row_to_dict(row) if row else None
    finally:
        if owns_conn:
            active_conn.close()


def insert_attendance(
    *,
    session_id: str,
    student_id: int,
    course_id: int,
    marked_at: str,
    status: str,
    latitude: float | None = None,
    longitude: float | None = None,
    accuracy: float | None = None,
    evidence_ref: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """
    Insert one attendance row and return its id.

    Raises sqlite3.IntegrityError when (session_id, student_id) already exists.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance (
                session_id,
                student_id,
                course_id,
                marked_at,
                latitude,
                longitude,
                accuracy,
                evidence_ref,
                status
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                student_id,
                course_id,
                marked_at,
                latitude,
                longitude,
                accuracy,
                evidence_ref,
                status,
            ),
        )
        record_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return record_id
    finally:
        if owns_conn:
            active_conn.close()


def get_attendance_for_session(session_id: str) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            a.id, a.session_id, a.student_id, a.course_id, a.marked_at,
            a.latitude, a.longitude, a.accuracy, a.evidence_ref, a.status,
            u.username, u.full_name
        FROM attendance a
        LEFT JOIN users u ON u.id = a.student_id
        WHERE a.session_id = ?
        ORDER BY a.marked_at, a.id
        """,
        (session_id,),
    )
    rows = cur.fetchall()
    conn.close()

    out: list[dict[str, Any]] = []
    for row in rows:
        record = _attendance_row_to_dict(row)
        record["username"] = row[10]
        record["full_name"] = row[11]
        out.append(record)
    return out


def get_attendance_for_student(student_id: int, course_id: int | None = None) -> list[dict[str, Any]]:
    where = ["student_id = ?"]
    params: list[Any] = [student_id]
    if course_id is not None:
        where.append("course_id = ?")
        params.append(course_id)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {ATTENDANCE_COLUMNS}
        FROM attendance
        WHERE {" AND ".join(where)}
        ORDER BY marked_at DESC, id DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_attendance_row_to_dict(r) for r in rows]


# -----------------------------
# Security events (append-only)
# -----------------------------
def insert_security_event(
    *,
    session_id: str | None,
    student_id: int | None,
    kind: str,
    occurred_at: str,
    detail: str = "",
    latitude: float | None = None,
    longitude: float | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO security_events (
                session_id,
                student_id,
                kind,
                occurred_at,
                detail,
                latitude,
                longitude
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (session_id, student_id, kind, occurred_at, detail, latitude, longitude),
        )
        event_id = int(cur.lastrowid)
        conn.commit()
        return event_id
    finally:
        conn.close()


def get_security_events(session_id: str) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {SECURITY_EVENT_COLUMNS}
        FROM security_events
        WHERE session_id = ?
        ORDER BY occurred_at, id
        """,
        (session_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "id": row[0],
            "session_id": row[1],
            "student_id": row[2],
            "kind": row[3],
            "occurred_at": row[4],
            "detail": row[5],
            "latitude": row[6],
            "longitude": row[7],
        }
        for row in rows
    ]
