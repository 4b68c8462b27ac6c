# assignments.py

from nodue_clearance_system.models import AssignmentCount
from nodue_clearance_system.normalizer import normalize_code


SUBMITTED_STATUSES = {"submitted", "graded", "approved", "accepted"}


def build_assignment_counts(assignments, submissions, subject_codes=None):
    """
    Count assignments per subject code for one student.

    assignments  → rows with ``id`` and ``sub_code`` for the student's class
    submissions  → the student's rows with ``assignment_id`` and ``status``
    subject_codes → optional whitelist; other codes are ignored

    Keys of the result are normalized subject codes.
    """

    allowed = None
    if subject_codes is not None:
        allowed = {normalize_code(code) for code in subject_codes}

    code_by_assignment = {}
    totals = {}

    for row in assignments:
        code = normalize_code(row["sub_code"])

        if not code:
            continue
        if allowed is not None and code not in allowed:
            continue

        code_by_assignment[row["id"]] = code
        totals[code] = totals.get(code, 0) + 1

    submitted_ids = set()
    for row in submissions:
        status = str(row["status"] or "").strip().lower()
        if status in SUBMITTED_STATUSES:
            submitted_ids.add(row["assignment_id"])

    submitted = {}
    for assignment_id in submitted_ids:
        code = code_by_assignment.get(assignment_id)
        if code:
            submitted[code] = submitted.get(code, 0) + 1

    return {
        code: AssignmentCount(total=total, submitted=submitted.get(code, 0))
        for code, total in totals.items()
    }
