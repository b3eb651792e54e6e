"""Per-account critical sections.

Every balance mutation for one account runs while holding that account's lock,
so the read-check-append sequence cannot interleave with another charge on the
same account. Different accounts never contend.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Dict
from uuid import UUID


class AccountLockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[UUID, threading.RLock] = {}

    def lock_for(self, account_id: UUID) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_id: UUID) -> Iterator[None]:
        lock = self.lock_for(account_id)
        with lock:
            yield


account_locks = AccountLockRegistry()
