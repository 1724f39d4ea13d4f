#rollout_engine\controller\locks.py

"""Per-service mutual exclusion for deployment attempts."""

from threading import Lock
from typing import Dict


class ServiceLockManager:
    """
    One lock per service name, held for the whole lifetime of an attempt.

    Locks are taken without blocking: a second deploy of the same service
    is rejected, never queued. A plain ``Lock`` (not ``RLock``) is used so
    the worker thread can release what the request thread acquired.
    """

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._guard = Lock()

    def _lock_for(self, service_name: str) -> Lock:
        with self._guard:
            lock = self._locks.get(service_name)
            if lock is None:
                lock = self._locks[service_name] = Lock()
            return lock

    def try_acquire(self, service_name: str) -> bool:
        return self._lock_for(service_name).acquire(blocking=False)

    def release(self, service_name: str) -> None:
        lock = self._lock_for(service_name)
        if lock.locked():
            lock.release()

    def is_locked(self, service_name: str) -> bool:
        return self._lock_for(service_name).locked()
