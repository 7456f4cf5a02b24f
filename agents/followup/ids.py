"""Identifier generation for executions and audit events."""

from __future__ import annotations

import itertools
import threading
from uuid import uuid4


class UuidGenerator:
    """Random UUID4 identifiers."""

    def new_id(self) -> str:
        return str(uuid4())


class SequentialIdGenerator:
    """Deterministic identifiers (`<prefix>-0001`, `<prefix>-0002`, ...)."""

    def __init__(self, prefix: str = "EXEC"):
        self.prefix = prefix
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def new_id(self) -> str:
        with self._lock:
            return f"{self.prefix}-{next(self._counter):04d}"
