"""Per-request mutual exclusion for workflow operations.

Operations on the same request id are serialized; different requests never
contend. The registry only covers one process; the workflow also takes a row
lock (SELECT ... FOR UPDATE) where the database supports it.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class RequestLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, request_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(request_id, threading.Lock())
            self._holders[request_id] = self._holders.get(request_id, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._holders[request_id] -= 1
                if self._holders[request_id] == 0:
                    del self._holders[request_id]
                    del self._locks[request_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by the HTTP layer and the scheduled sweep in one process
request_locks = RequestLocks()
