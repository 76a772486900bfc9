"""
Request identifier generation.

Identifiers are unique for the lifetime of the process. They never
encode anything derived from the document or the person.
"""

from __future__ import annotations

import itertools
import secrets
import threading
from typing import Protocol


class RequestIdGenerator(Protocol):
    def next_id(self) -> str:
        ...


class MonotonicRequestIdGenerator:
    """
    Sequential ids ("GRD-000001", ...). Deterministic, used in tests.
    """

    def __init__(self, prefix: str = "GRD-", start: int = 1) -> None:
        self._prefix = prefix
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            value = next(self._counter)
        return f"{self._prefix}{value:06d}"


class RandomRequestIdGenerator:
    """
    Unguessable ids for production use.
    """

    def __init__(self, prefix: str = "GRD-") -> None:
        self._prefix = prefix

    def next_id(self) -> str:
        return f"{self._prefix}{secrets.token_hex(12)}"
