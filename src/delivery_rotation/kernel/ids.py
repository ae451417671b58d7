"""
Time-ordered identifiers

IDs start with a short type prefix (``req``, ``prv``, ``evt``...) followed by
a millisecond timestamp and random bits, so they sort by creation time and are
readable in logs and communication records.
"""

import secrets
import time
from typing import Protocol


class IdFactory(Protocol):
    """Protocol for ID generation strategies"""

    def generate(self, prefix: str = "id") -> str:
        """Generate a new unique ID"""
        ...


def generate_id(prefix: str = "id") -> str:
    """
    Generate a sortable identifier

    Format: ``<prefix>_<12 hex timestamp><16 hex random>``

    Example:
        >>> generate_id("req")  # doctest: +SKIP
        'req_01908e9a3b87c5d1e2f3a4b5c6d7'
    """
    timestamp_ms = int(time.time() * 1000) & 0xFFFFFFFFFFFF
    return f"{prefix}_{timestamp_ms:012x}{secrets.randbits(64):016x}"


class DefaultIdFactory:
    """Default factory backed by generate_id"""

    def generate(self, prefix: str = "id") -> str:
        return generate_id(prefix)


class SequentialIdFactory:
    """
    Deterministic factory for tests and demos

    Produces ``<prefix>_0001``, ``<prefix>_0002``... per prefix.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}

    def generate(self, prefix: str = "id") -> str:
        self._counters[prefix] = self._counters.get(prefix, 0) + 1
        return f"{prefix}_{self._counters[prefix]:04d}"


default_id_factory = DefaultIdFactory()
