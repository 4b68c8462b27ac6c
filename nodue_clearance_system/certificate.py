# certificate.py

import io
import logging
import re
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib import pagesizes
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table

from nodue_clearance_system.evaluator import (
    FEE_PAID,
    get_assignment_status_label,
    to_roman_numeral,
)

logger = logging.getLogger(__name__)

SIGNED_MARK = "SIGNED"

_REPLACEMENTS = [
    (re.compile("[\u2018\u2019\u201A\u201B]"), "'"),
    (re.compile("[\u201C\u201D\u201E\u201F]"), '"'),
    (re.compile("[\u2013\u2014\u2212]"), "-"),
    (re.compile("\u2026"), "..."),
    (re.compile("[\u00AA\u00BA]"), ""),
    (re.compile("[\u02DA\u00B0]"), "\u00B0"),
    (re.compile("[\u00C2\u00A0]"), " "),
    (re.compile("[<>]"), ""),
    (re.compile("[^\x00-\x7F\u00B0]"), ""),
]


def sanitize_text(value):
    """ASCII-only text for the PDF (smart quotes, dashes etc. flattened)."""

    text = "" if value is None else str(value)

    for pattern, replacement in _REPLACEMENTS:
        text = pattern.sub(replacement, text)

    return text


def _mark(value):
    if value is None:
        return "-"
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def build_certificate_rows(snapshot, assignment_counts):
    """
    One row per subject.

    A subject is signed only when its marks and assignments are cleared
    and the student has no pending fines.
    """

    fees_paid = snapshot.fee_status == FEE_PAID
    rows = []

    for subject in snapshot.subjects:
        signed = fees_paid and subject.marks_cleared and subject.assignment_cleared

        rows.append({
            "code": sanitize_text(subject.code),
            "subject": sanitize_text(subject.name),
            "iat": _mark(subject.iat),
            "model": _mark(subject.model),
            "assignment": get_assignment_status_label(subject.code, assignment_counts),
            "fees": snapshot.fee_status,
            "signature": SIGNED_MARK if signed else "",
        })

    return rows


def build_student_details(student):
    year = to_roman_numeral(student["year"]) if student["year"] is not None else "-"
    semester = sanitize_text(student["semester"]) if student["semester"] is not None else "-"

    return [
        ["Name", sanitize_text(student["name"]), "Register No", sanitize_text(student["register_number"])],
        ["Class", sanitize_text(student["class_year"]), "Year / Sem", f"{year} / {semester}"],
    ]


def build_certificate_pdf(student, snapshot, assignment_counts, department_name="Department of Information Technology"):

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=pagesizes.A4,
        title="No Due Certificate",
    )
    styles = getSampleStyleSheet()

    elements = [
        Paragraph(escape(sanitize_text(department_name).upper()), styles["Title"]),
        Paragraph("NO DUE CERTIFICATE", styles["Heading2"]),
        Spacer(1, 12),
    ]

    details_table = Table(build_student_details(student))
    details_table.setStyle([
        ('BOX', (0, 0), (-1, -1), 1, colors.grey),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTNAME', (2, 0), (2, -1), 'Helvetica-Bold'),
    ])

    elements.append(details_table)
    elements.append(Spacer(1, 16))

    table_data = [["Code", "Subject", "IAT", "Model", "Assignment", "Fees", "Signature"]]

    for row in build_certificate_rows(snapshot, assignment_counts):
        table_data.append([
            row["code"],
            Paragraph(escape(row["subject"]), styles["BodyText"]),
            row["iat"],
            row["model"],
            row["assignment"],
            row["fees"],
            row["signature"],
        ])

    table = Table(table_data, repeatRows=1, colWidths=[55, 150, 35, 40, 80, 50, 60])
    table.setStyle([
        ('GRID', (0, 0), (-1, -1), 1, colors.black),
        ('BACKGROUND', (0, 0), (-1, 0), colors.lightgrey),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
    ])

    elements.append(table)
    doc.build(elements)

    logger.info(
        "Rendered no due certificate for %s with %d subject rows",
        student["register_number"],
        len(table_data) - 1
    )

    return buffer.getvalue()
