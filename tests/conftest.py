"""Shared fixtures: a temporary SQLite database seeded with one IT student."""

import pytest
from werkzeug.security import generate_password_hash

from nodue_clearance_system.app import create_app
from nodue_clearance_system.database import get_db_connection, init_db

STUDENT_PASSWORD = "student-pass-123"
ADMIN_PASSWORD = "admin-pass-123"


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "nodue.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    connection = get_db_connection(db_path)
    yield connection
    connection.close()


def seed_student(conn, register_number="21IT001", name="Asha Raman", class_year="III-IT",
                 semester=5, year=3, password=STUDENT_PASSWORD):
    cursor = conn.execute("""
        INSERT INTO students
        (register_number, name, email, class_year, semester, year, password, is_active)
        VALUES (?, ?, ?, ?, ?, ?, ?, 1)
    """, (
        register_number,
        name,
        f"{register_number.lower()}@college.edu",
        class_year,
        semester,
        year,
        generate_password_hash(password)
    ))
    conn.commit()
    return cursor.lastrowid


def seed_subject(conn, code, name, semester=5, department="IT", course_type="THEORY"):
    conn.execute("""
        INSERT INTO subjects_master (subject_code, subject_name, semester, department, course_type)
        VALUES (?, ?, ?, ?, ?)
    """, (code, name, semester, department, course_type))
    conn.commit()


def seed_marks(conn, student_id, subject, iat, model):
    conn.execute("""
        INSERT INTO marks (student_id, subject, iat, model, assignment_submitted, signed, department_fine)
        VALUES (?, ?, ?, ?, 1, 1, 0)
    """, (student_id, subject, iat, model))
    conn.commit()


def seed_assignment(conn, sub_code, class_year="III-IT", title="Assignment"):
    cursor = conn.execute(
        "INSERT INTO assignments (sub_code, class_year, title) VALUES (?, ?, ?)",
        (sub_code, class_year, title)
    )
    conn.commit()
    return cursor.lastrowid


def seed_submission(conn, assignment_id, student_id, status="submitted"):
    conn.execute(
        "INSERT INTO assignment_submissions (assignment_id, student_id, status) VALUES (?, ?, ?)",
        (assignment_id, student_id, status)
    )
    conn.commit()


def seed_admin(conn, email="hod.it@college.edu", password=ADMIN_PASSWORD):
    cursor = conn.execute(
        "INSERT INTO admins (name, email, password, is_active) VALUES (?, ?, ?, 1)",
        ("IT HOD", email, generate_password_hash(password))
    )
    conn.commit()
    return cursor.lastrowid


@pytest.fixture
def cleared_student(conn):
    """A student who has cleared both semester-5 subjects and owes nothing."""

    student_id = seed_student(conn)

    seed_subject(conn, "CS301", "Data Structures")
    seed_subject(conn, "IT302", "Computer Networks", course_type="ELECTIVE")
    seed_subject(conn, "IT399", "Mini Project", course_type="LAB")

    seed_marks(conn, student_id, "data structures", 60, 70)
    seed_marks(conn, student_id, "Computer  Networks ", 55, 50)

    for _ in range(2):
        seed_submission(conn, seed_assignment(conn, "CS301"), student_id)

    return student_id


@pytest.fixture
def app(db_path, tmp_path, clock):
    from nodue_clearance_system.rate_limiter import LoginRateLimiter

    limiter = LoginRateLimiter(max_attempts=3, window_seconds=60, block_seconds=120, clock=clock)

    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "DATABASE_PATH": db_path,
            "CERTIFICATE_DIR": str(tmp_path / "certificates"),
        },
        rate_limiter=limiter,
    )


@pytest.fixture
def client(app):
    return app.test_client()
