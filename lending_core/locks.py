"""
Keyed Lock Registry

Per-key re-entrant locks used to serialise operations on the same loan,
installment, ledger entry or agreement. Every operation that changes a loan's
installments holds the loan's key, so payments, reversals, edits and
agreement creation on one loan never interleave.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

from .errors import DeadlineExceededError


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class KeyedLockRegistry:
    """
    Hands out one RLock per key.

    A key's lock exists only while some thread holds or waits for it, and is
    dropped once the last of them lets go.
    """

    def __init__(self):
        self._slots: Dict[str, _Slot] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = _Slot()
                self._slots[key] = slot
            slot.users += 1
            return slot.lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            slot = self._slots[key]
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    @contextmanager
    def hold(self, *keys: Optional[str], timeout: Optional[float] = None):
        """
        Hold the locks for every non-empty key.

        Keys are acquired in sorted order so two callers locking overlapping
        sets never deadlock.

        Raises:
            DeadlineExceededError: If a lock is not acquired within ``timeout`` seconds
        """
        ordered = sorted({key for key in keys if key})
        checked_out: List[str] = []
        acquired: List[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                if not lock.acquire(timeout=timeout if timeout is not None else -1):
                    raise DeadlineExceededError(f"Timed out waiting for lock on {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)

    def known_keys(self) -> Iterable[str]:
        """Keys currently held or waited for"""
        with self._guard:
            return list(self._slots)
