"""Time-bounded exclusive leases keyed by resource.

A :class:`LockManager` wraps a :class:`LockService` (the store holding
the leases) and adds retries with jittered backoff, idempotent release
and a scoped ``with`` form.

Leases are not queued: when several callers race for a busy key, whoever
retries first after the holder releases wins, regardless of who asked
first.
"""

import contextlib
import logging
import random
import uuid

import gevent

from filewarden.errors import (LockLost, LockServiceUnavailable,
                               LockUnavailable, OperationTimeout)


logger = logging.getLogger(__name__)


_DEFAULT_RETRY_COUNT = 10
_DEFAULT_RETRY_DELAY_S = 0.2
_DEFAULT_RETRY_JITTER_S = 0.2


def lock_key(lock_id):
    return 'lock:' + lock_id


class Lease:
    """An exclusive claim on ``key`` valid until ``expires_at``.

    ``expires_at`` is expressed in the clock of the service which granted
    the lease. ``fencing_token`` grows with every grant of the same key, so
    a stale holder can be told apart from the current one.
    """

    def __init__(self, key, owner, ttl, fencing_token, expires_at):
        self.key = key
        self.owner = owner
        self.ttl = ttl
        self.fencing_token = fencing_token
        self.expires_at = expires_at
        self.released = False

    def __repr__(self):
        return '<Lease {} token={} owner={}>'.format(
            self.key, self.fencing_token, self.owner)


class LockService:
    """An abstract lease store.

    Implementations must make both operations atomic with respect to every
    process sharing the store.
    """

    def try_acquire(self, key, owner, ttl):
        """Grants ``key`` to ``owner`` for ``ttl`` seconds if nobody holds a
        valid lease on it.

        Returns a :class:`Lease`, or ``None`` if the key is busy.
        Raises :class:`LockServiceUnavailable` on infrastructure failure.
        """
        raise NotImplementedError

    def release(self, lease):
        """Removes ``lease`` if its owner still holds it.

        Returns ``True`` if the lease was valid until now, ``False`` if it
        had expired or been granted to someone else.
        """
        raise NotImplementedError

    def holder(self, key):
        """Returns the currently valid :class:`Lease` on ``key`` or ``None``."""
        raise NotImplementedError


class LockManager:
    """Acquires and releases leases from a :class:`LockService`.

    Args:
        service: the :class:`LockService` holding the leases
        retry_count: how many times a busy key is retried before
            :class:`LockUnavailable` is raised
        retry_delay: base sleep between attempts, in seconds
        retry_jitter: maximum random extra sleep added to ``retry_delay``
        call_timeout: bound on a single call to the service, in seconds
            (``None`` disables it)
    """

    def __init__(self, service, retry_count=_DEFAULT_RETRY_COUNT,
                 retry_delay=_DEFAULT_RETRY_DELAY_S,
                 retry_jitter=_DEFAULT_RETRY_JITTER_S, call_timeout=None):
        self.service = service
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.retry_jitter = retry_jitter
        self.call_timeout = call_timeout

    def acquire(self, key, ttl, retry_count=None):
        """Acquires a lease on ``key`` valid for ``ttl`` seconds.

        Callers must pick a ``ttl`` comfortably longer than the operation
        the lease guards, the lease is not extended automatically.
        """
        if retry_count is None:
            retry_count = self.retry_count
        owner = uuid.uuid4().hex
        attempts = 0

        while True:
            attempts += 1
            lease = self._call(self.service.try_acquire, key, owner, ttl)
            if lease is not None:
                logger.debug('Acquired %r after %d attempt(s).',
                             lease, attempts)
                return lease
            if attempts > retry_count:
                logger.info('Giving up on lease %s after %d attempts.',
                            key, attempts)
                raise LockUnavailable(key, attempts)
            # This yields execution to other greenlets.
            gevent.sleep(self.retry_delay
                         + random.uniform(0, self.retry_jitter))

    def release(self, lease, strict=False):
        """Releases ``lease``.

        Releasing a lease twice, or one that already expired, is a no-op
        returning ``False``. With ``strict=True`` a lease lost before this
        call raises :class:`LockLost` instead.
        """
        if lease.released:
            logger.debug('%r already released.', lease)
            return False

        try:
            released = self._call(self.service.release, lease)
        except (LockServiceUnavailable, OperationTimeout):
            if strict:
                raise
            logger.warning('Could not release %r, it will expire in at '
                           'most %ss.', lease, lease.ttl, exc_info=True)
            return False

        lease.released = True
        if released:
            logger.debug('Released %r.', lease)
        elif strict:
            raise LockLost(lease)
        else:
            logger.warning('%r expired before it was released.', lease)
        return released

    @contextlib.contextmanager
    def locked(self, key, ttl, retry_count=None):
        """Holds a lease on ``key`` for the duration of the ``with`` block."""
        lease = self.acquire(key, ttl, retry_count)
        try:
            yield lease
        finally:
            self.release(lease)

    def _call(self, fn, *args):
        timeout = gevent.Timeout(
            self.call_timeout,
            OperationTimeout('Lock service call timed out after {}s'
                             .format(self.call_timeout)))
        with timeout:
            return fn(*args)
