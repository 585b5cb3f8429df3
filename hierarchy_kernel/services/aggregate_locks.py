"""
AggregateLockRegistry -- per-aggregate serialization within a process.

Responsibility:
    Hands out one mutex per (entity type, entity id) so that transitions on
    the same visit or request are linearized inside the process.  Writers
    in other processes are caught by the optimistic ``revision`` check;
    the lock only keeps in-process racers from burning a round-trip.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Lock acquisition is bounded by ``lock_timeout_seconds``.
    - Entries are reference-counted and dropped when no thread holds or
      waits on them.

Failure modes:
    - ConcurrentModificationError if the lock cannot be acquired in time.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from hierarchy_kernel.exceptions import ConcurrentModificationError
from hierarchy_kernel.logging_config import get_logger

logger = get_logger("services.aggregate_locks")


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class AggregateLockRegistry:
    """Registry of per-aggregate locks."""

    def __init__(self, lock_timeout_seconds: float = 5.0):
        self._timeout = lock_timeout_seconds
        self._guard = threading.Lock()
        self._entries: dict[tuple[str, str], _Entry] = {}

    @contextmanager
    def hold(self, entity_type: str, entity_id: object) -> Iterator[None]:
        """Hold the lock for one aggregate for the duration of the block."""
        key = (entity_type, str(entity_id))
        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.users += 1
        try:
            if not entry.lock.acquire(timeout=self._timeout):
                logger.warning(
                    "aggregate_lock_timeout",
                    extra={
                        "entity_type": entity_type,
                        "entity_id": str(entity_id),
                        "timeout_seconds": self._timeout,
                    },
                )
                raise ConcurrentModificationError(entity_type, str(entity_id))
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
