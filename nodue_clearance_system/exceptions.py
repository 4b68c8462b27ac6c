# exceptions.py


class InvalidRecordError(ValueError):
    """A row handed to the clearance core does not have the expected shape."""


class RecordNotFoundError(LookupError):
    pass


class StudentNotFoundError(RecordNotFoundError):
    pass


class RecordConflictError(Exception):
    """Duplicate key, or a delete blocked by rows that still depend on it."""


class CertificateNotEligibleError(Exception):
    """Raised when a certificate is requested for a student who has dues."""

    def __init__(self, student_id, snapshot=None):
        super().__init__(f"Student {student_id} is not eligible for no due certificate")
        self.student_id = student_id
        self.snapshot = snapshot
