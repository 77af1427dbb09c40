"""
Keyed Lock Registry

Per-key reentrant locks used to serialize work on a single loan
(``loan:<id>``), a single accounting period (``period:<id>``) or a single
payment (``payment:<id>``) while letting unrelated keys proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List


class KeyedLockRegistry:
    """Hands out one RLock per key, created lazily and dropped once no holder or waiter remains"""

    def __init__(self):
        self._locks: Dict[str, List] = {}  # key -> [RLock, holders and waiters]
        self._guard = threading.Lock()

    def _acquire_entry(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _release_entry(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str):
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)

    def loan(self, loan_id: str):
        return self.hold(f"loan:{loan_id}")

    def period(self, period_id: str):
        return self.hold(f"period:{period_id}")

    def payment(self, payment_id: str):
        return self.hold(f"payment:{payment_id}")

    def active_keys(self) -> List[str]:
        with self._guard:
            return sorted(self._locks)
