"""Per-entity locks that serialize writers inside one process.

Cross-process safety comes from the conditional UPDATE statements in the
ledger and billing services; these locks make concurrent requests in the same
worker queue up instead of racing to the database.

Every in-process lock a unit of work needs is taken before its first write.
A thread that already holds the database write lock must never wait on one of
these, or it would stall writers that hold the lock it is waiting for.
"""
import threading
from contextlib import contextmanager, ExitStack
from typing import Dict, Iterable, Tuple


class KeyedLockRegistry:
    def __init__(self):
        self._locks: Dict[Tuple[str, int], threading.RLock] = {}
        self._guard = threading.Lock()

    def _get(self, key: Tuple[str, int]) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                # Reentrant: settlement holds the medicine locks across deduct_many
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, kind: str, entity_id: int):
        lock = self._get((kind, entity_id))
        with lock:
            yield

    @contextmanager
    def hold_many(self, kind: str, entity_ids: Iterable[int]):
        """Acquire several locks in ascending id order to avoid deadlocks"""
        with ExitStack() as stack:
            for entity_id in sorted(set(entity_ids)):
                stack.enter_context(self.hold(kind, entity_id))
            yield


entity_locks = KeyedLockRegistry()
