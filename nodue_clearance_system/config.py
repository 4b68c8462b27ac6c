# config.py

import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Config:
    """Settings read from the environment (``.env`` is loaded if present)."""

    def __init__(self):
        self.SECRET_KEY = os.environ.get("NODUE_SECRET_KEY") or os.urandom(32)
        self.DATABASE_PATH = os.environ.get("NODUE_DATABASE_PATH", "database.db")
        self.CERTIFICATE_DIR = os.environ.get("NODUE_CERTIFICATE_DIR", "certificates")
        self.SESSION_MINUTES = _int_env("NODUE_SESSION_MINUTES", 30)

        self.LOGIN_MAX_ATTEMPTS = _int_env("NODUE_LOGIN_MAX_ATTEMPTS", 5)
        self.LOGIN_WINDOW_SECONDS = _int_env("NODUE_LOGIN_WINDOW_SECONDS", 15 * 60)
        self.LOGIN_BLOCK_SECONDS = _int_env("NODUE_LOGIN_BLOCK_SECONDS", 30 * 60)

        self.DEPARTMENT = os.environ.get("NODUE_DEPARTMENT", "IT")
        self.DEPARTMENT_NAME = os.environ.get(
            "NODUE_DEPARTMENT_NAME", "Department of Information Technology"
        )
        self.COURSE_TYPES = ("THEORY", "ELECTIVE")

    def as_dict(self):
        return {key: value for key, value in vars(self).items() if key.isupper()}
