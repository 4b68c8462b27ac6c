"""
Historical record of a no-due evaluation.

The snapshot copies every mark it was decided on, so a stored snapshot still
explains the verdict after the live marks change.
"""

from dataclasses import asdict, dataclass
from typing import Optional, Tuple

from nodue_clearance_system.evaluator import (
    as_subject_entry,
    can_generate_certificate,
    find_marks_record,
    get_fee_status_label,
    is_assignments_cleared,
    record_marks_cleared,
)


@dataclass(frozen=True)
class SubjectSnapshot:
    code: str
    name: str
    iat: Optional[float]
    model: Optional[float]
    assignment_cleared: bool
    marks_cleared: bool


@dataclass(frozen=True)
class ClearanceSnapshot:
    subjects: Tuple[SubjectSnapshot, ...]
    fee_status: str
    total_fine_amount: float
    all_requirements_met: bool

    def to_dict(self):
        data = asdict(self)
        data["subjects"] = [dict(s) for s in data["subjects"]]
        return data


def create_snapshot(marks, subjects, assignment_counts, total_fine_amount):
    marks = list(marks)
    subjects = [as_subject_entry(s) for s in subjects]

    details = []
    for subject in subjects:
        record = find_marks_record(subject.name, marks)

        details.append(SubjectSnapshot(
            code=subject.code,
            name=subject.name,
            iat=record.iat if record else None,
            model=record.model if record else None,
            assignment_cleared=is_assignments_cleared(subject.code, assignment_counts),
            marks_cleared=record_marks_cleared(record),
        ))

    return ClearanceSnapshot(
        subjects=tuple(details),
        fee_status=get_fee_status_label(total_fine_amount),
        total_fine_amount=total_fine_amount if total_fine_amount is not None else 0,
        all_requirements_met=can_generate_certificate(
            marks, subjects, assignment_counts, total_fine_amount
        ),
    )
