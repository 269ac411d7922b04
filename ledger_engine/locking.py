"""
Keyed Lock Manager

Per-resource mutual exclusion for account balances and loans. Locks are
re-entrant, acquired in sorted key order to avoid deadlock between
multi-account operations, and every wait is bounded by a timeout. A
key's lock is dropped once no thread holds or waits for it.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Tuple

from .errors import LockTimeout


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def loan_key(loan_id: str) -> str:
    return f"loan:{loan_id}"




class _KeyedLock:
    """A re-entrant lock plus the number of threads using it"""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class LockManager:
    """Hands out one re-entrant lock per key"""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, _KeyedLock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        """Number of keys currently held or waited on"""
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> _KeyedLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyedLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _KeyedLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[str]):
        """
        Hold the locks for all keys for the duration of the block

        Raises:
            LockTimeout: If any lock is not acquired within the timeout;
                locks already taken are released first
        """
        acquired: List[Tuple[str, _KeyedLock]] = []
        try:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                if not entry.lock.acquire(timeout=self.timeout_seconds):
                    self._checkin(key, entry)
                    raise LockTimeout(
                        f"Timed out after {self.timeout_seconds}s waiting for {key}"
                    )
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)
