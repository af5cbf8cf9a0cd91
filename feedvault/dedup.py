"""
Session Deduplicator — in-memory set of record ids seen by this process.

A fast path only: resets on restart. The store's insert-if-absent check is
the authoritative duplicate guard.
"""

from __future__ import annotations

import logging
from typing import Set

logger = logging.getLogger(__name__)


class Deduplicator:
    """Process-lifetime membership set of record ids."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def has_seen(self, record_id: str) -> bool:
        return record_id in self._seen

    def mark_seen(self, record_id: str) -> None:
        """Mark before the write starts so racing duplicates short-circuit."""
        self._seen.add(record_id)

    def forget(self, record_id: str) -> None:
        """Roll back a mark after a failed write so a later attempt can retry."""
        self._seen.discard(record_id)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._seen
