# normalizer.py

import re


_WHITESPACE = re.compile(r"\s+")


def normalize_code(code):
    """
    Canonical form for subject names / codes:
    strip, drop every whitespace run, upper-case
    """

    if code is None:
        return ""

    return _WHITESPACE.sub("", str(code).strip()).upper()
