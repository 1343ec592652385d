"""In-process lease store."""

import collections
import threading
import time

from filewarden.locks.lock_manager import Lease, LockService


class MemoryLockService(LockService):
    """A :class:`LockService` keeping leases in a dict.

    Only callers within one process are excluded from each other. Useful
    for tests and for embedding the service in a single process.

    Args:
        clock: function returning the current time in seconds, monotonic
            by default. Tests may pass a fake one.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._mutex = threading.Lock()
        self._leases = {}
        self._tokens = collections.defaultdict(int)

    def try_acquire(self, key, owner, ttl):
        with self._mutex:
            now = self._clock()
            current = self._leases.get(key)
            if current is not None and current.expires_at > now:
                return None
            self._tokens[key] += 1
            lease = Lease(key, owner, ttl, self._tokens[key], now + ttl)
            self._leases[key] = lease
            return lease

    def release(self, lease):
        with self._mutex:
            current = self._leases.get(lease.key)
            if current is None or current.owner != lease.owner:
                return False
            del self._leases[lease.key]
            return current.expires_at > self._clock()

    def holder(self, key):
        with self._mutex:
            current = self._leases.get(key)
            if current is not None and current.expires_at > self._clock():
                return current
            return None
