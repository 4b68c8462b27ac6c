# evaluator.py

from nodue_clearance_system.models import ClearanceStatus, MarksRecord, SubjectCatalogEntry
from nodue_clearance_system.normalizer import normalize_code


MARKS_PASS_THRESHOLD = 50

ASSIGNMENTS_SUBMITTED = "Submitted"
ASSIGNMENTS_PENDING = "Not Submitted"
NO_ASSIGNMENTS = "No Assignments"

FEE_PAID = "Paid"
FEE_NOT_PAID = "Not Paid"

ROMAN_NUMERALS = {1: "I", 2: "II", 3: "III", 4: "IV"}


def _marks(record):
    if isinstance(record, MarksRecord):
        return record
    return MarksRecord.from_dict(record)


def as_subject_entry(entry):
    if isinstance(entry, SubjectCatalogEntry):
        return entry
    return SubjectCatalogEntry.from_dict(entry)


def _counts_for(subject_code, assignment_counts):
    entry = (assignment_counts or {}).get(subject_code)

    if entry is None:
        return None

    if isinstance(entry, dict):
        return entry.get("total", 0), entry.get("submitted", 0)

    return entry.total, entry.submitted


def find_marks_record(subject_name, marks):
    """
    First marks record whose subject matches the catalogue name.
    Duplicates are not merged, the earliest row wins.
    """

    wanted = normalize_code(subject_name)

    for record in marks:
        record = _marks(record)
        if normalize_code(record.subject) == wanted:
            return record

    return None


def is_marks_cleared(iat, model):
    """
    Marks rule:
    IAT >= 50 AND Model >= 50
    missing either mark → not cleared
    """

    if iat is None or model is None:
        return False

    return iat >= MARKS_PASS_THRESHOLD and model >= MARKS_PASS_THRESHOLD


def is_assignments_cleared(subject_code, assignment_counts):
    """
    Assignment rule:
    no assignments for the subject → cleared
    otherwise every assignment must be submitted
    """

    counts = _counts_for(subject_code, assignment_counts)

    if counts is None or counts[0] == 0:
        return True

    total, submitted = counts
    return submitted == total


def is_fee_cleared(total_fine_amount):
    # Only an exact zero passes; None / NaN / any balance do not
    if total_fine_amount is None or isinstance(total_fine_amount, bool):
        return False
    return total_fine_amount == 0


def record_marks_cleared(record):
    return record is not None and is_marks_cleared(record.iat, record.model)


def calculate_clearance_status(subject_code, subject_name, marks, assignment_counts, total_fine_amount):
    """
    Per-subject clearance.

    The fee flag is reported alongside but does not gate ``overall_cleared``;
    only the whole-student verdict in ``can_generate_certificate`` needs fees.
    """

    record = find_marks_record(subject_name, marks)

    marks_cleared = record_marks_cleared(record)
    assignment_cleared = is_assignments_cleared(subject_code, assignment_counts)

    return ClearanceStatus(
        subject=subject_code,
        marks_cleared=marks_cleared,
        assignment_cleared=assignment_cleared,
        fee_cleared=is_fee_cleared(total_fine_amount),
        overall_cleared=marks_cleared and assignment_cleared,
    )


def can_generate_certificate(marks, subjects, assignment_counts, total_fine_amount):
    """
    NO DUE RULE

    1. Fees must be fully paid (checked first)
    2. Every catalogue subject must have IAT and Model cleared
    3. Every catalogue subject must have all assignments submitted
    """

    if not is_fee_cleared(total_fine_amount):
        return False

    marks = list(marks)

    for entry in subjects:
        subject = as_subject_entry(entry)

        if not record_marks_cleared(find_marks_record(subject.name, marks)):
            return False

        if not is_assignments_cleared(subject.code, assignment_counts):
            return False

    return True


# =========================
# LABELS
# =========================

def get_assignment_status_label(subject_code, assignment_counts):
    counts = _counts_for(subject_code, assignment_counts)

    if counts is None or counts[0] == 0:
        return NO_ASSIGNMENTS

    if counts[1] == counts[0]:
        return ASSIGNMENTS_SUBMITTED

    return ASSIGNMENTS_PENDING


def get_fee_status_label(total_fine_amount):
    return FEE_PAID if is_fee_cleared(total_fine_amount) else FEE_NOT_PAID


def to_roman_numeral(num):
    """Year of study as I-IV; other values are returned as plain text."""

    return ROMAN_NUMERALS.get(num, str(num))
