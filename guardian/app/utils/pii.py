"""
PII redaction utility.

This module performs minimal pattern detection using a small set of
transparent regexes, and masks matches in free text before that text
leaves the service (error payloads, retained descriptor reasons, logs).

It is intentionally incomplete and non-exhaustive. Structured personal
data (extracted fields) is removed by the purger, not by this module.
"""

import re
from typing import Any


# Intentionally small, transparent pattern set.
PII_PATTERNS = {
    "email": r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+",
    "ssn_us": r"\b\d{3}-\d{2}-\d{4}\b",
    "credit_card": r"\b(?:\d{4}[ -]?){3}\d{4}\b",
    "date": r"\b\d{4}-\d{2}-\d{2}\b",
    "document_number": r"\b[A-Z]{1,3}-?\d{4,}(?:-[A-Z0-9]+)*\b",
}

_COMPILED = {
    label: re.compile(pattern) for label, pattern in PII_PATTERNS.items()
}

REDACTION_MARK = "[redacted]"


def scan_for_pii(data: Any) -> list[str]:
    """
    Recursively scan a data structure for potential PII patterns.

    Returns:
        A sorted list of detected PII type labels.
        Empty list means nothing detected.
    """
    detected: set[str] = set()

    def _scan(value: Any) -> None:
        if isinstance(value, str):
            for label, pattern in _COMPILED.items():
                if pattern.search(value):
                    detected.add(label)

        elif isinstance(value, dict):
            for v in value.values():
                _scan(v)

        elif isinstance(value, (list, tuple, set)):
            for item in value:
                _scan(item)
        # All other types intentionally ignored

    _scan(data)
    return sorted(detected)


def redact_text(text: str) -> str:
    """
    Mask every pattern match in text.
    """
    for pattern in _COMPILED.values():
        text = pattern.sub(REDACTION_MARK, text)
    return text
