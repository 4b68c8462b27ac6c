"""
Typed records handed to the clearance core.

Rows arrive from sqlite, spreadsheet uploads or JSON bodies. Each
``from_dict`` checks the shape once at the boundary so the evaluator can
trust its inputs; a bad row raises ``InvalidRecordError``.
"""

import math
import re
from dataclasses import asdict, dataclass
from datetime import date
from typing import Dict, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from nodue_clearance_system.exceptions import InvalidRecordError


def _as_mapping(row):
    if isinstance(row, dict):
        return row
    try:
        return dict(row)
    except (TypeError, ValueError):
        raise InvalidRecordError(f"Expected a mapping, got {type(row).__name__}")


def _validate(model, row):
    try:
        return model.model_validate(_as_mapping(row))
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "record"
        raise InvalidRecordError(f"Invalid {model.__name__} {field}: {error['msg']}") from e


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    @classmethod
    def from_dict(cls, row):
        return _validate(cls, row)


class MarksRecord(_Record):
    subject: str
    iat: Optional[float] = None
    model: Optional[float] = None
    assignment_submitted: bool = Field(
        default=False,
        validation_alias=AliasChoices("assignment_submitted", "assignmentsubmitted"),
    )
    signed: bool = False
    department_fine: Optional[float] = 0

    @field_validator("iat", "model", "department_fine", mode="before")
    @classmethod
    def _blank_is_missing(cls, value):
        # Empty spreadsheet cells come through as None, "" or NaN
        if isinstance(value, bool):
            raise ValueError("marks cannot be true/false")
        if isinstance(value, str):
            return value.strip() or None
        if isinstance(value, float) and math.isnan(value):
            return None
        return value

    @field_validator("department_fine", mode="after")
    @classmethod
    def _no_fine_is_zero(cls, value):
        return 0 if value is None else value

    @field_validator("assignment_submitted", "signed", mode="before")
    @classmethod
    def _flag(cls, value):
        if value is None:
            return False
        if isinstance(value, str):
            return value.strip().lower() in ("true", "yes", "1", "y")
        return bool(value)


class SubjectCatalogEntry(_Record):
    code: str
    name: str

    @field_validator("code", "name")
    @classmethod
    def _not_blank(cls, value):
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class AssignmentCount(_Record):
    total: int = 0
    submitted: int = 0

    @model_validator(mode="after")
    def _within_total(self):
        if self.total < 0:
            raise ValueError(f"assignment total cannot be negative ({self.total})")
        if not 0 <= self.submitted <= self.total:
            raise ValueError(f"submitted count {self.submitted} outside 0..{self.total}")
        return self


AssignmentCounts = Dict[str, AssignmentCount]


# =========================
# ADMIN INPUT RECORDS
# =========================

CLASS_YEARS = ("II-IT", "III-IT")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _blank(value):
    if isinstance(value, str):
        return value.strip() or None
    return value


def _text(value):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    return _blank(value)


class StudentRecord(_Record):
    register_number: str
    name: str
    email: Optional[str] = None
    class_year: str
    semester: Optional[int] = Field(default=None, ge=1, le=8)
    year: Optional[int] = Field(default=None, ge=1, le=4)

    @field_validator("register_number", "name", "email", "class_year", mode="before")
    @classmethod
    def _strip(cls, value):
        return _text(value)

    @field_validator("semester", "year", mode="before")
    @classmethod
    def _blank_number(cls, value):
        return _blank(value)

    @field_validator("register_number", "class_year")
    @classmethod
    def _upper(cls, value):
        return value.upper()

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value):
        if value is None:
            return None
        if not EMAIL_PATTERN.match(value):
            raise ValueError("not a valid email address")
        return value.lower()

    @field_validator("class_year", mode="after")
    @classmethod
    def _known_class(cls, value):
        if value not in CLASS_YEARS:
            raise ValueError(f"must be one of {', '.join(CLASS_YEARS)}")
        return value


class SubjectMasterEntry(_Record):
    code: str
    name: str
    semester: Optional[int] = Field(default=None, ge=1, le=8)
    department: str = "IT"
    course_type: str = "THEORY"

    @field_validator("code", "name", "department", "course_type", mode="before")
    @classmethod
    def _strip(cls, value):
        return _text(value)

    @field_validator("semester", mode="before")
    @classmethod
    def _blank_number(cls, value):
        return _blank(value)

    @field_validator("code", "department", "course_type")
    @classmethod
    def _upper(cls, value):
        return value.upper()


class AssignmentRecord(_Record):
    sub_code: str
    class_year: str
    title: str
    due_date: date

    @field_validator("sub_code", "class_year", "title", mode="before")
    @classmethod
    def _strip(cls, value):
        return _text(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _blank_date(cls, value):
        return _blank(value)

    @field_validator("sub_code", "class_year")
    @classmethod
    def _upper(cls, value):
        return value.upper()

    @field_validator("class_year", mode="after")
    @classmethod
    def _known_class(cls, value):
        if value not in CLASS_YEARS:
            raise ValueError(f"must be one of {', '.join(CLASS_YEARS)}")
        return value


@dataclass(frozen=True)
class ClearanceStatus:
    subject: str
    marks_cleared: bool
    assignment_cleared: bool
    fee_cleared: bool
    overall_cleared: bool

    def to_dict(self):
        return asdict(self)
