import datetime
import math

import pytest

from nodue_clearance_system.exceptions import InvalidRecordError
from nodue_clearance_system.models import (
    AssignmentCount,
    AssignmentRecord,
    MarksRecord,
    StudentRecord,
    SubjectCatalogEntry,
    SubjectMasterEntry,
)


class TestMarksRecord:

    def test_accepts_database_spelling(self):
        record = MarksRecord.from_dict({
            "subject": "Data Structures",
            "iat": 60,
            "model": 70,
            "assignmentsubmitted": True,
            "signed": 1,
            "department_fine": 0,
        })

        assert record == MarksRecord(
            subject="Data Structures",
            iat=60,
            model=70,
            assignment_submitted=True,
            signed=True,
            department_fine=0,
        )

    def test_blank_and_nan_marks_are_missing(self):
        record = MarksRecord.from_dict({"subject": "DS", "iat": "", "model": math.nan})

        assert record.iat is None
        assert record.model is None
        assert record.department_fine == 0

    def test_numeric_strings_are_converted(self):
        record = MarksRecord.from_dict({"subject": "DS", "iat": " 55 ", "model": "61.5"})

        assert record.iat == 55.0
        assert record.model == 61.5

    def test_text_flags(self):
        record = MarksRecord.from_dict({"subject": "DS", "assignment_submitted": "Yes", "signed": "no"})

        assert record.assignment_submitted is True
        assert record.signed is False

    @pytest.mark.parametrize("row", [
        {"iat": 50, "model": 50},
        {"subject": None},
        {"subject": "DS", "iat": "absent"},
        {"subject": "DS", "model": True},
        {"subject": "DS", "iat": [50]},
    ])
    def test_rejects_bad_shapes(self, row):
        with pytest.raises(InvalidRecordError):
            MarksRecord.from_dict(row)

    def test_rejects_non_mapping(self):
        with pytest.raises(InvalidRecordError):
            MarksRecord.from_dict(42)


class TestSubjectCatalogEntry:

    def test_from_dict(self):
        entry = SubjectCatalogEntry.from_dict({"code": "CS301", "name": "Data Structures", "semester": 5})
        assert entry == SubjectCatalogEntry(code="CS301", name="Data Structures")

    @pytest.mark.parametrize("row", [
        {"name": "Data Structures"},
        {"code": "  ", "name": "Data Structures"},
        {"code": "CS301"},
        {"code": "CS301", "name": ""},
    ])
    def test_requires_code_and_name(self, row):
        with pytest.raises(InvalidRecordError):
            SubjectCatalogEntry.from_dict(row)


class TestAssignmentCount:

    def test_valid_counts(self):
        assert AssignmentCount(total=3, submitted=2).submitted == 2
        assert AssignmentCount().total == 0

    @pytest.mark.parametrize("total, submitted", [(-1, 0), (2, 3), (2, -1)])
    def test_rejects_impossible_counts(self, total, submitted):
        with pytest.raises(InvalidRecordError):
            AssignmentCount.from_dict({"total": total, "submitted": submitted})

        with pytest.raises(ValueError):
            AssignmentCount(total=total, submitted=submitted)

    def test_numeric_strings_are_converted(self):
        assert AssignmentCount.from_dict({"total": 2, "submitted": "1"}) == AssignmentCount(total=2, submitted=1)

    def test_rejects_non_integer(self):
        with pytest.raises(InvalidRecordError):
            AssignmentCount.from_dict({"total": "many", "submitted": 0})


class TestStudentRecord:

    def test_normalizes_fields(self):
        record = StudentRecord.from_dict({
            "register_number": " 23it050 ",
            "name": " Ravi Kumar ",
            "email": " Ravi@College.EDU ",
            "class_year": "ii-it",
            "semester": "3",
            "year": "",
            "password": "ignored",
        })

        assert record == StudentRecord(
            register_number="23IT050",
            name="Ravi Kumar",
            email="ravi@college.edu",
            class_year="II-IT",
            semester=3,
            year=None,
        )

    def test_numeric_register_number(self):
        assert StudentRecord.from_dict({"register_number": 412521205001, "name": "A", "class_year": "III-IT"}) \
            .register_number == "412521205001"

    @pytest.mark.parametrize("change", [
        {"register_number": None},
        {"email": "ravi@college"},
        {"class_year": "I-IT"},
        {"year": 5},
    ])
    def test_rejects_bad_values(self, change):
        row = dict({"register_number": "23IT050", "name": "Ravi", "class_year": "II-IT"}, **change)

        with pytest.raises(InvalidRecordError):
            StudentRecord.from_dict(row)


class TestSubjectMasterEntry:

    def test_code_is_trimmed_and_upper_cased(self):
        entry = SubjectMasterEntry.from_dict({"code": " cs 305 ", "name": " Operating Systems ", "semester": "5"})

        assert (entry.code, entry.name, entry.semester) == ("CS 305", "Operating Systems", 5)
        assert (entry.department, entry.course_type) == ("IT", "THEORY")


class TestAssignmentRecord:

    def test_due_date_is_parsed(self):
        record = AssignmentRecord.from_dict({
            "sub_code": "it302", "class_year": "III-IT", "title": "Routing lab", "due_date": "2026-11-01",
        })

        assert record.sub_code == "IT302"
        assert record.due_date == datetime.date(2026, 11, 1)

    def test_rejects_bad_date(self):
        with pytest.raises(InvalidRecordError):
            AssignmentRecord.from_dict({
                "sub_code": "IT302", "class_year": "III-IT", "title": "Routing lab", "due_date": "31/11/2026",
            })
