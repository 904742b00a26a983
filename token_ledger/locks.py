"""
Keyed Lock Manager

Serializes work per target ("token:42", "batch:7") and per ledger account
("agent:3"). Locks are re-entrant so a coordinator holding an account lock can
call into the ledger service, which takes the same lock again. A key's lock
lives only while some thread holds or waits for it.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Tuple

from .errors import ConcurrencyConflict
from .logging_config import get_logger


class _KeyLock:
    """Re-entrant lock plus the number of threads holding or waiting on it"""
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class KeyedLockManager:
    """Per-key re-entrant locks with bounded wait and retry"""

    def __init__(self, timeout_seconds: float = 5.0, retry_attempts: int = 3,
                 retry_backoff_seconds: float = 0.05):
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._locks: Dict[str, _KeyLock] = {}
        self._registry_lock = threading.Lock()
        self.logger = get_logger("token_ledger.locks")

    def _checkout(self, key: str) -> _KeyLock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _KeyLock) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def _acquire(self, key: str) -> _KeyLock:
        entry = self._checkout(key)
        per_attempt = self.timeout_seconds / self.retry_attempts
        for attempt in range(1, self.retry_attempts + 1):
            if entry.lock.acquire(timeout=per_attempt):
                return entry
            self.logger.debug(f"Lock {key} busy (attempt {attempt}/{self.retry_attempts})")
            if attempt < self.retry_attempts:
                time.sleep(self.retry_backoff_seconds)
        self._checkin(key, entry)
        raise ConcurrencyConflict(
            f"Could not lock {key} within {self.timeout_seconds}s",
            {"key": key, "attempts": self.retry_attempts}
        )

    @contextmanager
    def hold(self, *keys: str):
        """
        Hold the locks for all keys, acquired in sorted order so two callers
        asking for the same pair can never deadlock.
        """
        acquired: List[Tuple[str, _KeyLock]] = []
        try:
            for key in sorted(set(keys)):
                acquired.append((key, self._acquire(key)))
            yield
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)
