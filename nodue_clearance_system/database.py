import json
import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List

from nodue_clearance_system.assignments import SUBMITTED_STATUSES, build_assignment_counts
from nodue_clearance_system.exceptions import (
    InvalidRecordError,
    RecordConflictError,
    RecordNotFoundError,
    StudentNotFoundError,
)
from nodue_clearance_system.models import (
    AssignmentCounts,
    MarksRecord,
    SubjectCatalogEntry,
    SubjectMasterEntry,
)
from nodue_clearance_system.normalizer import normalize_code

logger = logging.getLogger(__name__)

DB_PATH = "database.db"

FINE_STATUSES = ("pending", "paid", "waived")
FINE_TYPES = ("seminar_no_booking", "assignment_late", "attendance_absent", "other")


def get_db_connection(path=None):
    conn = sqlite3.connect(
        path or DB_PATH,
        timeout=30,
        check_same_thread=False
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _now():
    return datetime.now(timezone.utc).isoformat()


def init_db(path=None):

    conn = get_db_connection(path)

    try:
        # =========================
        # ADMINS
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS admins (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password TEXT NOT NULL,
            is_active INTEGER DEFAULT 0
        )
        """)

        # =========================
        # STUDENTS
        #  - register_number UNIQUE
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS students (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            register_number TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            email TEXT,
            class_year TEXT,
            semester INTEGER,
            year INTEGER,
            password TEXT,
            is_active INTEGER DEFAULT 0
        )
        """)

        # =========================
        # SUBJECT MASTER
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS subjects_master (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subject_code TEXT UNIQUE NOT NULL,
            subject_name TEXT NOT NULL,
            semester INTEGER,
            department TEXT,
            course_type TEXT
        )
        """)

        # =========================
        # MARKS
        #  - keyed by subject NAME, as the grading system exports it
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS marks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            student_id INTEGER NOT NULL,
            subject TEXT NOT NULL,
            iat REAL,
            model REAL,
            assignment_submitted INTEGER DEFAULT 0,
            signed INTEGER DEFAULT 0,
            department_fine REAL DEFAULT 0,
            UNIQUE(student_id, subject),
            FOREIGN KEY (student_id) REFERENCES students(id)
        )
        """)

        # =========================
        # ASSIGNMENTS
        #  - keyed by subject CODE
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS assignments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sub_code TEXT,
            class_year TEXT,
            title TEXT,
            due_date TEXT
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS assignment_submissions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            assignment_id INTEGER NOT NULL,
            student_id INTEGER NOT NULL,
            status TEXT,
            submitted_at TEXT,
            UNIQUE(assignment_id, student_id),
            FOREIGN KEY (assignment_id) REFERENCES assignments(id),
            FOREIGN KEY (student_id) REFERENCES students(id)
        )
        """)

        # =========================
        # FINES
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS student_fines (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            student_id INTEGER NOT NULL,
            fine_type TEXT NOT NULL DEFAULT 'other',
            reference_date TEXT,
            amount REAL NOT NULL,
            payment_status TEXT NOT NULL DEFAULT 'pending',
            description TEXT,
            created_at TEXT,
            FOREIGN KEY (student_id) REFERENCES students(id)
        )
        """)

        # =========================
        # NO DUE HISTORY
        #  - marks_snapshot is the JSON of the clearance snapshot
        # =========================
        conn.execute("""
        CREATE TABLE IF NOT EXISTS nodue_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            student_id INTEGER NOT NULL,
            register_number TEXT,
            student_name TEXT,
            class_year TEXT,
            semester INTEGER,
            year INTEGER,
            marks_snapshot TEXT,
            pdf_path TEXT,
            status TEXT,
            generated_at TEXT,
            FOREIGN KEY (student_id) REFERENCES students(id)
        )
        """)

        conn.commit()

    finally:
        conn.close()


# =========================
# STUDENTS
# =========================

def get_student(conn, student_id):
    return conn.execute(
        "SELECT * FROM students WHERE id=?",
        (student_id,)
    ).fetchone()


def find_student_by_register_number(conn, register_number):
    return conn.execute(
        "SELECT * FROM students WHERE register_number=?",
        (str(register_number).strip().upper(),)
    ).fetchone()


STUDENT_COLUMNS = "id, register_number, name, email, class_year, semester, year, is_active"


def _check_student_conflict(conn, record, exclude_id=None):
    row = conn.execute("""
        SELECT id, register_number, email
        FROM students
        WHERE (register_number=? OR email=?) AND id IS NOT ?
    """, (record.register_number, record.email, exclude_id)).fetchone()

    if row is None:
        return

    if row["register_number"] == record.register_number:
        raise RecordConflictError(f"A student with register number {record.register_number} already exists")

    raise RecordConflictError(f"A student with email {record.email} already exists")


def create_student(conn, record, password_hash):
    """
    Insert a student from a validated ``StudentRecord``.
    New accounts start inactive so the first login asks for a new password.
    """

    _check_student_conflict(conn, record)

    cursor = conn.execute("""
        INSERT INTO students
        (register_number, name, email, class_year, semester, year, password, is_active)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0)
    """, (
        record.register_number,
        record.name,
        record.email,
        record.class_year,
        record.semester,
        record.year,
        password_hash
    ))

    conn.commit()
    logger.info("Created student %s", record.register_number)
    return cursor.lastrowid


def update_student(conn, student_id, record):

    _check_student_conflict(conn, record, exclude_id=student_id)

    cursor = conn.execute("""
        UPDATE students
        SET register_number=?, name=?, email=?, class_year=?, semester=?, year=?
        WHERE id=?
    """, (
        record.register_number,
        record.name,
        record.email,
        record.class_year,
        record.semester,
        record.year,
        student_id
    ))

    conn.commit()
    return cursor.rowcount > 0


def delete_student(conn, student_id):
    """
    Remove a student with their marks, submissions and fines.
    Students with issued certificates are kept.
    """

    if get_student(conn, student_id) is None:
        return False

    issued = conn.execute(
        "SELECT COUNT(*) AS n FROM nodue_history WHERE student_id=?",
        (student_id,)
    ).fetchone()["n"]

    if issued:
        raise RecordConflictError(f"Student {student_id} has {issued} no due record(s) and cannot be deleted")

    with conn:
        conn.execute("DELETE FROM marks WHERE student_id=?", (student_id,))
        conn.execute("DELETE FROM assignment_submissions WHERE student_id=?", (student_id,))
        conn.execute("DELETE FROM student_fines WHERE student_id=?", (student_id,))
        conn.execute("DELETE FROM students WHERE id=?", (student_id,))

    logger.info("Deleted student %s", student_id)
    return True


def list_students(conn, search=None, class_year=None):

    query = f"SELECT {STUDENT_COLUMNS} FROM students WHERE 1=1"
    params = []

    if search:
        query += " AND (register_number LIKE ? OR name LIKE ?)"
        params.extend([f"%{search}%", f"%{search}%"])
    if class_year:
        query += " AND class_year=?"
        params.append(class_year)

    query += " ORDER BY register_number"

    return [dict(row) for row in conn.execute(query, params).fetchall()]


# =========================
# SUBJECT MASTER
# =========================

def add_subject(conn, entry):

    existing = conn.execute(
        "SELECT id FROM subjects_master WHERE subject_code=?",
        (entry.code,)
    ).fetchone()

    if existing:
        raise RecordConflictError(f"Subject code {entry.code} already exists")

    cursor = conn.execute("""
        INSERT INTO subjects_master (subject_code, subject_name, semester, department, course_type)
        VALUES (?, ?, ?, ?, ?)
    """, (entry.code, entry.name, entry.semester, entry.department, entry.course_type))

    conn.commit()
    return cursor.lastrowid


def import_subjects(conn, rows):
    """
    Add uploaded catalogue rows (``subject_code``, ``subject_name`` and
    optional ``semester``, ``department``, ``course_type``).
    Returns ``(imported, skipped)`` like ``import_marks``.
    """

    imported = 0
    skipped = []

    for index, row in enumerate(rows, start=1):

        values = {
            "code": row.get("subject_code", row.get("code")),
            "name": row.get("subject_name", row.get("name")),
            "semester": row.get("semester"),
            "department": row.get("department"),
            "course_type": row.get("course_type"),
        }

        try:
            entry = SubjectMasterEntry.from_dict({k: v for k, v in values.items() if v is not None})
            add_subject(conn, entry)
        except (InvalidRecordError, RecordConflictError) as e:
            skipped.append((index, str(e)))
            continue

        imported += 1

    if skipped:
        logger.warning("Subject import skipped %d row(s)", len(skipped))

    return imported, skipped


def list_subjects(conn, semester=None, department=None):

    query = "SELECT * FROM subjects_master WHERE 1=1"
    params = []

    if semester:
        query += " AND semester=?"
        params.append(semester)
    if department:
        query += " AND department=?"
        params.append(department)

    query += " ORDER BY subject_code"

    return [dict(row) for row in conn.execute(query, params).fetchall()]


def delete_subject(conn, subject_id):
    cursor = conn.execute(
        "DELETE FROM subjects_master WHERE id=?",
        (subject_id,)
    )
    conn.commit()
    return cursor.rowcount > 0


# =========================
# ASSIGNMENTS
# =========================

def create_assignment(conn, record):

    cursor = conn.execute(
        "INSERT INTO assignments (sub_code, class_year, title, due_date) VALUES (?, ?, ?, ?)",
        (record.sub_code, record.class_year, record.title, record.due_date.isoformat())
    )

    conn.commit()
    logger.info("Created assignment %s for %s %s", cursor.lastrowid, record.class_year, record.sub_code)
    return cursor.lastrowid


def get_assignment(conn, assignment_id):
    return conn.execute(
        "SELECT * FROM assignments WHERE id=?",
        (assignment_id,)
    ).fetchone()


def list_assignments(conn, class_year=None):
    """Assignments with how many students submitted each one."""

    statuses = sorted(SUBMITTED_STATUSES)
    placeholders = ",".join("?" for _ in statuses)

    query = f"""
        SELECT a.*,
               COUNT(s.id) AS submission_count,
               COALESCE(SUM(CASE WHEN LOWER(s.status) IN ({placeholders}) THEN 1 ELSE 0 END), 0)
                   AS submitted_count
        FROM assignments a
        LEFT JOIN assignment_submissions s ON s.assignment_id = a.id
        WHERE 1=1
    """
    params = list(statuses)

    if class_year:
        query += " AND a.class_year=?"
        params.append(class_year)

    query += " GROUP BY a.id ORDER BY a.due_date, a.id"

    return [dict(row) for row in conn.execute(query, params).fetchall()]


def list_student_assignments(conn, student):
    """The student's class assignments with their own submission status."""

    rows = conn.execute("""
        SELECT a.*, s.status, s.submitted_at
        FROM assignments a
        LEFT JOIN assignment_submissions s
            ON s.assignment_id = a.id AND s.student_id = ?
        WHERE a.class_year=?
        ORDER BY a.due_date, a.id
    """, (student["id"], student["class_year"])).fetchall()

    return [dict(row) for row in rows]


def delete_assignment(conn, assignment_id):

    if get_assignment(conn, assignment_id) is None:
        return False

    with conn:
        conn.execute("DELETE FROM assignment_submissions WHERE assignment_id=?", (assignment_id,))
        conn.execute("DELETE FROM assignments WHERE id=?", (assignment_id,))

    return True


def submit_assignment(conn, assignment_id, student, status="submitted"):
    """Record (or re-record) a student's submission. Returns the submission id."""

    assignment = get_assignment(conn, assignment_id)

    if assignment is None:
        raise RecordNotFoundError(f"Assignment {assignment_id} not found")

    if assignment["class_year"] != student["class_year"]:
        raise InvalidRecordError(
            f"Assignment {assignment_id} is set for {assignment['class_year']}, not {student['class_year']}"
        )

    conn.execute("""
        INSERT INTO assignment_submissions (assignment_id, student_id, status, submitted_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(assignment_id, student_id) DO UPDATE SET
            status=excluded.status,
            submitted_at=excluded.submitted_at
    """, (assignment_id, student["id"], status, _now()))

    conn.commit()

    return conn.execute(
        "SELECT id FROM assignment_submissions WHERE assignment_id=? AND student_id=?",
        (assignment_id, student["id"])
    ).fetchone()["id"]


# =========================
# NO DUE INPUTS
# =========================

@dataclass
class NoDueData:
    student: Any
    marks: List[MarksRecord]
    subjects: List[SubjectCatalogEntry]
    assignment_counts: AssignmentCounts = field(default_factory=dict)
    total_fine_amount: float = 0


def get_student_marks(conn, student_id):
    rows = conn.execute(
        "SELECT * FROM marks WHERE student_id=? ORDER BY id",
        (student_id,)
    ).fetchall()

    return [MarksRecord.from_dict(row) for row in rows]


def get_student_subjects(conn, semester, department="IT", course_types=("THEORY", "ELECTIVE")):
    placeholders = ",".join("?" for _ in course_types)

    rows = conn.execute(f"""
        SELECT subject_code AS code, subject_name AS name
        FROM subjects_master
        WHERE semester=? AND department=? AND course_type IN ({placeholders})
        ORDER BY subject_code
    """, (semester, department, *course_types)).fetchall()

    return [SubjectCatalogEntry.from_dict(row) for row in rows]


def get_student_assignment_counts(conn, student, subjects):
    """
    Counts keyed by the catalogue's own subject codes, so the evaluator
    can look them up with ``subject.code`` directly.
    """

    assignments = conn.execute(
        "SELECT id, sub_code FROM assignments WHERE class_year=?",
        (student["class_year"],)
    ).fetchall()

    submissions = conn.execute(
        "SELECT assignment_id, status FROM assignment_submissions WHERE student_id=?",
        (student["id"],)
    ).fetchall()

    by_normalized = build_assignment_counts(
        assignments,
        submissions,
        subject_codes=[s.code for s in subjects]
    )

    counts = {}
    for subject in subjects:
        entry = by_normalized.get(normalize_code(subject.code))
        if entry is not None:
            counts[subject.code] = entry

    return counts


def get_total_fine_amount(conn, student_id):
    row = conn.execute("""
        SELECT COALESCE(SUM(amount), 0) AS total
        FROM student_fines
        WHERE student_id=? AND payment_status='pending'
    """, (student_id,)).fetchone()

    return row["total"]


def get_no_due_data(conn, student_id, department="IT", course_types=("THEORY", "ELECTIVE")):

    student = get_student(conn, student_id)

    if student is None:
        raise StudentNotFoundError(f"Student {student_id} not found")

    subjects = []
    if student["semester"] is not None:
        subjects = get_student_subjects(conn, student["semester"], department, course_types)

    return NoDueData(
        student=student,
        marks=get_student_marks(conn, student_id),
        subjects=subjects,
        assignment_counts=get_student_assignment_counts(conn, student, subjects),
        total_fine_amount=get_total_fine_amount(conn, student_id),
    )


# =========================
# MARKS IMPORT
# =========================

def import_marks(conn, rows):
    """
    Upsert uploaded marks rows (one per student + subject).

    Each row needs ``register_number`` and ``subject``. Returns
    ``(imported, skipped)`` where skipped lists ``(row_number, reason)``.
    """

    imported = 0
    skipped = []

    for index, row in enumerate(rows, start=1):

        register_number = str(row.get("register_number") or "").strip()
        if not register_number:
            skipped.append((index, "Missing register number"))
            continue

        student = find_student_by_register_number(conn, register_number)
        if student is None:
            skipped.append((index, f"Unknown register number {register_number}"))
            continue

        try:
            record = MarksRecord.from_dict(row)
        except InvalidRecordError as e:
            skipped.append((index, str(e)))
            continue

        conn.execute("""
            INSERT INTO marks
            (student_id, subject, iat, model, assignment_submitted, signed, department_fine)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(student_id, subject) DO UPDATE SET
                iat=excluded.iat,
                model=excluded.model,
                assignment_submitted=excluded.assignment_submitted,
                signed=excluded.signed,
                department_fine=excluded.department_fine
        """, (
            student["id"],
            record.subject.strip(),
            record.iat,
            record.model,
            int(record.assignment_submitted),
            int(record.signed),
            record.department_fine
        ))
        imported += 1

    conn.commit()

    if skipped:
        logger.warning("Marks import skipped %d row(s)", len(skipped))

    return imported, skipped


# =========================
# FINES
# =========================

def add_fine(conn, student_id, amount, fine_type="other", reference_date=None, description=None):

    if fine_type not in FINE_TYPES:
        raise InvalidRecordError(f"Unknown fine type {fine_type!r}")

    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise InvalidRecordError(f"Fine amount must be numeric, got {amount!r}")

    if not math.isfinite(amount) or amount <= 0:
        raise InvalidRecordError(f"Fine amount must be a positive number, got {amount!r}")

    if get_student(conn, student_id) is None:
        raise StudentNotFoundError(f"Student {student_id} not found")

    cursor = conn.execute("""
        INSERT INTO student_fines
        (student_id, fine_type, reference_date, amount, payment_status, description, created_at)
        VALUES (?, ?, ?, ?, 'pending', ?, ?)
    """, (
        student_id,
        fine_type,
        reference_date,
        amount,
        description,
        _now()
    ))

    conn.commit()
    return cursor.lastrowid


def update_fine_status(conn, fine_id, status):

    if status not in FINE_STATUSES:
        raise InvalidRecordError(f"Unknown payment status {status!r}")

    cursor = conn.execute(
        "UPDATE student_fines SET payment_status=? WHERE id=?",
        (status, fine_id)
    )

    conn.commit()
    return cursor.rowcount > 0


def list_fines(conn, class_year=None, status=None, fine_type=None, date_from=None, date_to=None):

    query = """
        SELECT f.*, s.register_number, s.name AS student_name, s.class_year
        FROM student_fines f
        JOIN students s ON s.id = f.student_id
        WHERE 1=1
    """
    params = []

    if class_year:
        query += " AND s.class_year=?"
        params.append(class_year)
    if status:
        query += " AND f.payment_status=?"
        params.append(status)
    if fine_type:
        query += " AND f.fine_type=?"
        params.append(fine_type)
    if date_from:
        query += " AND f.reference_date >= ?"
        params.append(date_from)
    if date_to:
        query += " AND f.reference_date <= ?"
        params.append(date_to)

    query += " ORDER BY f.created_at DESC, f.id DESC"

    return [dict(row) for row in conn.execute(query, params).fetchall()]


def summarize_fines(fines):
    summary = {
        "total_fines": len(fines),
        "total_amount": sum(f["amount"] for f in fines),
    }

    for status in FINE_STATUSES:
        selected = [f for f in fines if f["payment_status"] == status]
        summary[f"{status}_fines"] = len(selected)
        summary[f"{status}_amount"] = sum(f["amount"] for f in selected)

    summary["by_type"] = {
        fine_type: len([f for f in fines if f["fine_type"] == fine_type])
        for fine_type in FINE_TYPES
    }

    return summary


# =========================
# NO DUE HISTORY
# =========================

def save_nodue_history(conn, student, snapshot, pdf_path=None, status="cleared"):

    generated_at = _now()

    cursor = conn.execute("""
        INSERT INTO nodue_history
        (student_id, register_number, student_name, class_year, semester, year,
         marks_snapshot, pdf_path, status, generated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        student["id"],
        student["register_number"],
        student["name"],
        student["class_year"],
        student["semester"],
        student["year"],
        json.dumps(snapshot.to_dict()),
        pdf_path,
        status,
        generated_at
    ))

    conn.commit()
    return cursor.lastrowid


def _history_row(row):
    if row is None:
        return None

    record = dict(row)
    record["marks_snapshot"] = json.loads(record["marks_snapshot"] or "null")
    return record


def get_nodue_record(conn, record_id):
    row = conn.execute(
        "SELECT * FROM nodue_history WHERE id=?",
        (record_id,)
    ).fetchone()

    return _history_row(row)


def get_latest_nodue_record(conn, student_id):
    row = conn.execute("""
        SELECT *
        FROM nodue_history
        WHERE student_id=?
        ORDER BY generated_at DESC, id DESC
        LIMIT 1
    """, (student_id,)).fetchone()

    return _history_row(row)


def get_nodue_history(conn, student_id=None, register_number=None, class_year=None,
                      semester=None, start_date=None, end_date=None):
    """History rows, newest first. Dates are ``YYYY-MM-DD`` and inclusive."""

    query = "SELECT * FROM nodue_history WHERE 1=1"
    params = []

    if student_id:
        query += " AND student_id=?"
        params.append(student_id)
    if register_number:
        query += " AND register_number LIKE ?"
        params.append(f"%{register_number}%")
    if class_year:
        query += " AND class_year=?"
        params.append(class_year)
    if semester:
        query += " AND semester=?"
        params.append(semester)
    if start_date:
        query += " AND substr(generated_at, 1, 10) >= ?"
        params.append(start_date)
    if end_date:
        query += " AND substr(generated_at, 1, 10) <= ?"
        params.append(end_date)

    query += " ORDER BY generated_at DESC, id DESC"

    return [_history_row(row) for row in conn.execute(query, params).fetchall()]
