import logging
import math
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd
from flask import Flask, current_app, jsonify, request, send_file, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from nodue_clearance_system.certificate import build_certificate_pdf
from nodue_clearance_system.config import Config
from nodue_clearance_system.database import (
    FINE_STATUSES,
    add_fine,
    add_subject,
    create_assignment,
    create_student,
    delete_assignment,
    delete_student,
    delete_subject,
    get_db_connection,
    get_latest_nodue_record,
    get_no_due_data,
    get_nodue_history,
    get_nodue_record,
    get_student,
    import_marks,
    import_subjects,
    init_db,
    list_assignments,
    list_fines,
    list_student_assignments,
    list_students,
    list_subjects,
    save_nodue_history,
    submit_assignment,
    summarize_fines,
    update_fine_status,
    update_student,
)
from nodue_clearance_system.evaluator import (
    calculate_clearance_status,
    get_assignment_status_label,
    to_roman_numeral,
)
from nodue_clearance_system.exceptions import (
    CertificateNotEligibleError,
    InvalidRecordError,
    RecordConflictError,
    RecordNotFoundError,
    StudentNotFoundError,
)
from nodue_clearance_system.models import AssignmentRecord, StudentRecord, SubjectMasterEntry
from nodue_clearance_system.rate_limiter import LoginRateLimiter
from nodue_clearance_system.snapshot import create_snapshot

logger = logging.getLogger(__name__)

STUDENT = "STUDENT"
ADMIN = "ADMIN"


def create_app(config=None, rate_limiter=None):

    app = Flask(__name__)

    settings = Config().as_dict()
    settings.update(config or {})
    app.config.update(settings)

    app.secret_key = app.config["SECRET_KEY"]
    app.permanent_session_lifetime = timedelta(minutes=app.config["SESSION_MINUTES"])
    app.logger.setLevel(logging.INFO)

    app.extensions["login_rate_limiter"] = rate_limiter or LoginRateLimiter(
        max_attempts=app.config["LOGIN_MAX_ATTEMPTS"],
        window_seconds=app.config["LOGIN_WINDOW_SECONDS"],
        block_seconds=app.config["LOGIN_BLOCK_SECONDS"],
    )

    init_db(app.config["DATABASE_PATH"])

    app.after_request(add_security_headers)
    app.register_error_handler(InvalidRecordError, _invalid_record)
    app.register_error_handler(StudentNotFoundError, _student_not_found)
    app.register_error_handler(RecordNotFoundError, _record_not_found)
    app.register_error_handler(RecordConflictError, _record_conflict)
    app.register_error_handler(sqlite3.Error, _database_error)

    register_routes(app)

    return app


def add_security_headers(response):
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def _invalid_record(error):
    return jsonify({"error": str(error)}), 400


def _student_not_found(error):
    return jsonify({"error": "Student not found"}), 404


def _record_not_found(error):
    return jsonify({"error": str(error)}), 404


def _record_conflict(error):
    return jsonify({"error": str(error)}), 409


def _database_error(error):
    logger.exception("Database error: %s", error)
    return jsonify({"error": "Database error"}), 500


def _connect():
    return get_db_connection(current_app.config["DATABASE_PATH"])


def _limiter():
    return current_app.extensions["login_rate_limiter"]


def _payload():
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def _read_upload(file):
    """Rows of an uploaded .xlsx/.csv sheet as dicts, or None for other files."""

    filename = file.filename.lower()

    if filename.endswith(".xlsx"):
        df = pd.read_excel(file, engine="openpyxl", dtype=str)
    elif filename.endswith(".csv"):
        df = pd.read_csv(file, dtype=str)
    else:
        return None

    df.columns = df.columns.str.strip().str.lower()
    df = df.astype(object).where(df.notna(), None)

    return df.to_dict(orient="records")


def admin_required():
    return "user_id" in session and session.get("role") == ADMIN


def student_allowed(student_id):
    """Students may only see their own records; admins see everyone."""

    if "user_id" not in session:
        return False
    if session.get("role") == ADMIN:
        return True
    return str(session["user_id"]) == str(student_id)


def _unauthorized():
    return jsonify({"error": "Unauthorized"}), 401


def student_summary(student):
    return {
        "id": student["id"],
        "register_number": student["register_number"],
        "name": student["name"],
        "class_year": student["class_year"],
        "semester": student["semester"],
        "year": student["year"],
        "year_roman": to_roman_numeral(student["year"]) if student["year"] is not None else None,
    }


# =========================
# NO DUE EVALUATION
# =========================

def evaluate_student(conn, student_id):
    data = get_no_due_data(
        conn,
        student_id,
        department=current_app.config["DEPARTMENT"],
        course_types=current_app.config["COURSE_TYPES"],
    )

    snapshot = create_snapshot(
        data.marks,
        data.subjects,
        data.assignment_counts,
        data.total_fine_amount,
    )

    return data, snapshot


def _certificate_response(record):
    return {
        "pdf_url": url_for("download_certificate", record_id=record["id"]),
        "generated_at": record["generated_at"],
        "status": record["status"],
    }


def issue_certificate(conn, student_id):
    """
    Render and record a certificate, or return the latest one if it
    already exists. Returns ``(record, created)``.
    """

    data, snapshot = evaluate_student(conn, student_id)

    if not snapshot.all_requirements_met:
        raise CertificateNotEligibleError(student_id, snapshot)

    existing = get_latest_nodue_record(conn, student_id)
    if existing and existing["pdf_path"]:
        return existing, False

    student = data.student
    pdf_bytes = build_certificate_pdf(
        student,
        snapshot,
        data.assignment_counts,
        department_name=current_app.config["DEPARTMENT_NAME"],
    )

    cert_dir = Path(current_app.config["CERTIFICATE_DIR"])
    cert_dir.mkdir(parents=True, exist_ok=True)

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    pdf_path = cert_dir / f"nodue_{student['register_number']}_{stamp}.pdf"
    pdf_path.write_bytes(pdf_bytes)

    record_id = save_nodue_history(conn, student, snapshot, pdf_path=str(pdf_path))
    logger.info("No due certificate %s issued for %s", record_id, student["register_number"])

    return get_nodue_record(conn, record_id), True


def register_routes(app):

    @app.route("/")
    def home():
        return jsonify({"service": "nodue", "status": "ok"})

    # =========================
    # AUTH
    # =========================

    @app.route("/login", methods=["POST"])
    def login():

        payload = _payload()
        identifier = str(payload.get("identifier", "")).strip()
        password = payload.get("password", "")
        role = str(payload.get("role", STUDENT)).strip().upper()

        if not identifier or not password or role not in (STUDENT, ADMIN):
            return jsonify({"error": "Identifier, password and role are required"}), 400

        limiter = _limiter()
        limiter.cleanup_if_due()

        key = request.remote_addr or "unknown"
        limit = limiter.is_rate_limited(key)

        if limit.limited:
            return jsonify({
                "error": "Too many failed attempts. Try again later.",
                "retry_after": limit.retry_after
            }), 429

        conn = _connect()

        try:
            if role == ADMIN:
                user = conn.execute(
                    "SELECT * FROM admins WHERE email=?",
                    (identifier.lower(),)
                ).fetchone()
            else:
                user = conn.execute(
                    "SELECT * FROM students WHERE register_number=?",
                    (identifier.upper(),)
                ).fetchone()
        finally:
            conn.close()

        if not user or not user["password"] or not check_password_hash(user["password"], password):
            limiter.record_failed_attempt(key)
            return jsonify({"error": "Invalid credentials"}), 401

        limiter.clear_attempts(key)

        session.clear()
        session["user_id"] = user["id"]
        session["role"] = role
        session.permanent = True

        return jsonify({
            "success": True,
            "role": role,
            "must_change_password": user["is_active"] == 0
        })

    @app.route("/change_password", methods=["POST"])
    def change_password():

        if "user_id" not in session:
            return _unauthorized()

        password = _payload().get("password", "")
        if len(password) < 8:
            return jsonify({"error": "Password must be at least 8 characters"}), 400

        table = "admins" if session["role"] == ADMIN else "students"
        conn = _connect()

        try:
            conn.execute(
                f"UPDATE {table} SET password=?, is_active=1 WHERE id=?",
                (generate_password_hash(password), session["user_id"])
            )
            conn.commit()
        finally:
            conn.close()

        return jsonify({"success": True})

    @app.route("/logout")
    def logout():
        session.clear()
        return jsonify({"success": True})

    # =========================
    # STUDENT NO DUE
    # =========================

    @app.route("/nodue")
    def nodue_status():

        if "user_id" not in session:
            return _unauthorized()

        student_id = request.args.get("student_id", session["user_id"])
        if not student_allowed(student_id):
            return jsonify({"error": "Forbidden"}), 403

        conn = _connect()
        try:
            data, snapshot = evaluate_student(conn, student_id)
        finally:
            conn.close()

        clearance = [
            calculate_clearance_status(
                subject.code,
                subject.name,
                data.marks,
                data.assignment_counts,
                data.total_fine_amount,
            ).to_dict()
            for subject in data.subjects
        ]

        return jsonify({
            "student": student_summary(data.student),
            "snapshot": snapshot.to_dict(),
            "clearance": clearance,
            "assignment_status": {
                subject.code: get_assignment_status_label(subject.code, data.assignment_counts)
                for subject in data.subjects
            },
            "can_generate": snapshot.all_requirements_met,
        })

    @app.route("/nodue/check-existing", methods=["POST"])
    def check_existing():

        student_id = _payload().get("studentId")

        if not student_id:
            return jsonify({"error": "Student ID is required"}), 400

        if not student_allowed(student_id):
            return _unauthorized()

        conn = _connect()
        try:
            record = get_latest_nodue_record(conn, student_id)
        finally:
            conn.close()

        if record and record["pdf_path"]:
            return jsonify({"exists": True, **_certificate_response(record)})

        return jsonify({"exists": False})

    @app.route("/nodue/generate-pdf", methods=["POST"])
    def generate_pdf():

        student_id = _payload().get("studentId")

        if not student_id:
            return jsonify({"error": "Student ID is required"}), 400

        if not student_allowed(student_id):
            return _unauthorized()

        conn = _connect()
        try:
            record, created = issue_certificate(conn, student_id)

        except CertificateNotEligibleError as e:
            return jsonify({
                "error": "Student is not eligible for no due certificate",
                "snapshot": e.snapshot.to_dict() if e.snapshot else None
            }), 400

        finally:
            conn.close()

        message = "Certificate generated successfully" if created else "Certificate already generated"

        return jsonify({"success": True, "message": message, **_certificate_response(record)})

    @app.route("/nodue/download/<int:record_id>")
    def download_certificate(record_id):

        if "user_id" not in session:
            return _unauthorized()

        conn = _connect()
        try:
            record = get_nodue_record(conn, record_id)
        finally:
            conn.close()

        if not record or not student_allowed(record["student_id"]):
            return jsonify({"error": "Certificate not found"}), 404

        path = Path(record["pdf_path"] or "")
        if not path.is_file():
            return jsonify({"error": "Certificate file missing"}), 404

        return send_file(
            path.resolve(),
            mimetype="application/pdf",
            as_attachment=True,
            download_name=f"NoDue_{record['register_number']}.pdf"
        )

    # =========================
    # STUDENT ASSIGNMENTS
    # =========================

    @app.route("/assignments")
    def my_assignments():

        if session.get("role") != STUDENT:
            return _unauthorized()

        conn = _connect()
        try:
            student = get_student(conn, session["user_id"])
            if student is None:
                raise StudentNotFoundError(f"Student {session['user_id']} not found")

            rows = list_student_assignments(conn, student)
        finally:
            conn.close()

        return jsonify({"success": True, "data": rows})

    @app.route("/assignments/<int:assignment_id>/submit", methods=["POST"])
    def submit(assignment_id):

        if session.get("role") != STUDENT:
            return _unauthorized()

        conn = _connect()
        try:
            student = get_student(conn, session["user_id"])
            if student is None:
                raise StudentNotFoundError(f"Student {session['user_id']} not found")

            submission_id = submit_assignment(conn, assignment_id, student)
        finally:
            conn.close()

        logger.info("Student %s submitted assignment %s", student["register_number"], assignment_id)

        return jsonify({"success": True, "id": submission_id})

    # =========================
    # ADMIN
    # =========================

    @app.route("/admin/nodue/history")
    def nodue_history():

        if not admin_required():
            return _unauthorized()

        semester = request.args.get("semester")

        conn = _connect()
        try:
            history = get_nodue_history(
                conn,
                student_id=request.args.get("student_id"),
                register_number=request.args.get("register_number"),
                class_year=request.args.get("class_year"),
                semester=int(semester) if semester and semester.isdigit() else None,
                start_date=request.args.get("start_date"),
                end_date=request.args.get("end_date"),
            )
        finally:
            conn.close()

        for record in history:
            record.pop("pdf_path", None)

        return jsonify({"success": True, "data": history})

    @app.route("/admin/marks/upload", methods=["POST"])
    def upload_marks():

        if not admin_required():
            return _unauthorized()

        file = request.files.get("file")
        if not file or not file.filename:
            return jsonify({"error": "No file uploaded"}), 400

        rows = _read_upload(file)
        if rows is None:
            return jsonify({"error": "Unsupported file format."}), 400

        conn = _connect()
        try:
            imported, skipped = import_marks(conn, rows)
        finally:
            conn.close()

        logger.info("Marks upload %s: %d imported, %d skipped", file.filename, imported, len(skipped))

        return jsonify({
            "success": True,
            "imported": imported,
            "skipped": [{"row": row, "reason": reason} for row, reason in skipped]
        })

    @app.route("/admin/fines", methods=["GET", "POST"])
    def fines():

        if not admin_required():
            return _unauthorized()

        conn = _connect()

        try:
            if request.method == "POST":
                payload = _payload()

                try:
                    amount = float(payload.get("amount", ""))
                except (TypeError, ValueError):
                    return jsonify({"error": "Fine amount must be numeric"}), 400

                if not math.isfinite(amount) or amount <= 0:
                    return jsonify({"error": "Fine amount must be a positive number"}), 400

                fine_id = add_fine(
                    conn,
                    payload.get("student_id"),
                    amount,
                    fine_type=payload.get("fine_type", "other"),
                    reference_date=payload.get("reference_date"),
                    description=payload.get("description"),
                )
                return jsonify({"success": True, "id": fine_id}), 201

            status = request.args.get("status")
            fine_type = request.args.get("type")
            class_year = request.args.get("class")

            fine_rows = list_fines(
                conn,
                class_year=None if class_year in (None, "all") else class_year,
                status=None if status in (None, "all") else status,
                fine_type=None if fine_type in (None, "all") else fine_type,
                date_from=request.args.get("from"),
                date_to=request.args.get("to"),
            )

        finally:
            conn.close()

        return jsonify({
            "success": True,
            "data": {"fines": fine_rows, "summary": summarize_fines(fine_rows)}
        })

    @app.route("/admin/fines/<int:fine_id>", methods=["POST"])
    def set_fine_status(fine_id):

        if not admin_required():
            return _unauthorized()

        status = str(_payload().get("status", "")).strip().lower()
        if status not in FINE_STATUSES:
            return jsonify({"error": f"Status must be one of {', '.join(FINE_STATUSES)}"}), 400

        conn = _connect()
        try:
            updated = update_fine_status(conn, fine_id, status)
        finally:
            conn.close()

        if not updated:
            return jsonify({"error": "Fine not found"}), 404

        return jsonify({"success": True, "id": fine_id, "status": status})

    # =========================
    # ADMIN: STUDENTS
    # =========================

    @app.route("/admin/students", methods=["GET", "POST"])
    def students():

        if not admin_required():
            return _unauthorized()

        conn = _connect()

        try:
            if request.method == "POST":
                payload = _payload()
                record = StudentRecord.from_dict(payload)

                # first login uses the register number unless a password is given
                password = payload.get("password") or record.register_number
                student_id = create_student(conn, record, generate_password_hash(password))

                return jsonify({"success": True, "id": student_id}), 201

            class_year = request.args.get("class")

            rows = list_students(
                conn,
                search=request.args.get("search"),
                class_year=None if class_year in (None, "all") else class_year,
            )

        finally:
            conn.close()

        return jsonify({"success": True, "data": rows})

    @app.route("/admin/students/<int:student_id>", methods=["POST"])
    def edit_student(student_id):

        if not admin_required():
            return _unauthorized()

        record = StudentRecord.from_dict(_payload())

        conn = _connect()
        try:
            updated = update_student(conn, student_id, record)
        finally:
            conn.close()

        if not updated:
            return jsonify({"error": "Student not found"}), 404

        return jsonify({"success": True, "id": student_id})

    @app.route("/admin/students/<int:student_id>/delete", methods=["POST"])
    def remove_student(student_id):

        if not admin_required():
            return _unauthorized()

        conn = _connect()
        try:
            deleted = delete_student(conn, student_id)
        finally:
            conn.close()

        if not deleted:
            return jsonify({"error": "Student not found"}), 404

        return jsonify({"success": True})

    # =========================
    # ADMIN: SUBJECT MASTER
    # =========================

    @app.route("/admin/subjects", methods=["GET", "POST"])
    def subjects():

        if not admin_required():
            return _unauthorized()

        # 🔹 Excel / CSV upload
        if request.method == "POST" and "file" in request.files:

            rows = _read_upload(request.files["file"])
            if rows is None:
                return jsonify({"error": "Unsupported file format."}), 400

            conn = _connect()
            try:
                imported, skipped = import_subjects(conn, rows)
            finally:
                conn.close()

            return jsonify({
                "success": True,
                "imported": imported,
                "skipped": [{"row": row, "reason": reason} for row, reason in skipped]
            })

        conn = _connect()

        try:
            # 🔹 Manual add
            if request.method == "POST":
                entry = SubjectMasterEntry.from_dict(_payload())
                subject_id = add_subject(conn, entry)
                return jsonify({"success": True, "id": subject_id, "code": entry.code}), 201

            rows = list_subjects(
                conn,
                semester=request.args.get("semester", type=int),
                department=request.args.get("department"),
            )

        finally:
            conn.close()

        return jsonify({"success": True, "data": rows})

    @app.route("/admin/subjects/<int:subject_id>/delete", methods=["POST"])
    def remove_subject(subject_id):

        if not admin_required():
            return _unauthorized()

        conn = _connect()
        try:
            deleted = delete_subject(conn, subject_id)
        finally:
            conn.close()

        if not deleted:
            return jsonify({"error": "Subject not found"}), 404

        return jsonify({"success": True})

    # =========================
    # ADMIN: ASSIGNMENTS
    # =========================

    @app.route("/admin/assignments", methods=["GET", "POST"])
    def assignments():

        if not admin_required():
            return _unauthorized()

        conn = _connect()

        try:
            if request.method == "POST":
                record = AssignmentRecord.from_dict(_payload())
                assignment_id = create_assignment(conn, record)
                return jsonify({"success": True, "id": assignment_id}), 201

            class_year = request.args.get("class")

            rows = list_assignments(
                conn,
                class_year=None if class_year in (None, "all") else class_year,
            )

        finally:
            conn.close()

        return jsonify({"success": True, "data": rows})

    @app.route("/admin/assignments/<int:assignment_id>/delete", methods=["POST"])
    def remove_assignment(assignment_id):

        if not admin_required():
            return _unauthorized()

        conn = _connect()
        try:
            deleted = delete_assignment(conn, assignment_id)
        finally:
            conn.close()

        if not deleted:
            return jsonify({"error": "Assignment not found"}), 404

        return jsonify({"success": True})


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_app().run(debug=True)
