"""Lease store shared by all processes on a host, kept in a directory.

Every key has its own lease file, named by the SHA256 of the key. The
file holds a small JSON document::

    {"key": ..., "owner": ..., "token": ..., "expires_at": ...}

Reads and writes of a lease file happen under an exclusive ``fcntl``
lock on that file, which makes set-if-absent and delete-if-owner atomic.
Lease files are never removed: after release ``owner`` is cleared but
``token`` is kept, so fencing tokens of a key only ever grow.
"""

import contextlib
import errno
import fcntl
import hashlib
import json
import logging
import os
import time

import gevent

from filewarden.errors import LockServiceUnavailable
from filewarden.locks.lock_manager import Lease, LockService
from filewarden.utils import mkdir


logger = logging.getLogger(__name__)


_FLOCK_RETRIES = 200
_FLOCK_SLEEP_TIME_S = 0.01


class FcntlLockService(LockService):
    """A :class:`LockService` using lease files and ``fcntl.flock``.

    Expiry uses wall clock time, since it must be comparable between
    processes.
    """

    def __init__(self, dir, clock=time.time):
        self.dir = dir
        self._clock = clock
        mkdir(dir)

    def try_acquire(self, key, owner, ttl):
        with self._lease_file(key) as fd:
            state = _read_state(fd)
            now = self._clock()
            if state.get('owner') and state.get('expires_at', 0) > now:
                return None
            token = state.get('token', 0) + 1
            expires_at = now + ttl
            _write_state(fd, {
                'key': key,
                'owner': owner,
                'token': token,
                'expires_at': expires_at,
            })
            return Lease(key, owner, ttl, token, expires_at)

    def release(self, lease):
        with self._lease_file(lease.key) as fd:
            state = _read_state(fd)
            if (state.get('owner') != lease.owner
                    or state.get('token') != lease.fencing_token):
                return False
            still_valid = state.get('expires_at', 0) > self._clock()
            _write_state(fd, {
                'key': lease.key,
                'owner': None,
                'token': state['token'],
                'expires_at': 0,
            })
            return still_valid

    def holder(self, key):
        with self._lease_file(key) as fd:
            state = _read_state(fd)
        if state.get('owner') and state.get('expires_at', 0) > self._clock():
            return Lease(key, state['owner'], None, state['token'],
                         state['expires_at'])
        return None

    def _lease_path(self, key):
        name = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return os.path.join(self.dir, name + '.lease')

    @contextlib.contextmanager
    def _lease_file(self, key):
        """Opens and exclusively locks the lease file of ``key``."""
        path = self._lease_path(key)
        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise LockServiceUnavailable(
                'Cannot open lease file {}: {}'.format(path, e))

        success = False
        try:
            retries_left = _FLOCK_RETRIES
            while retries_left > 0:
                # Try to acquire the lock in a loop, because gevent doesn't
                # treat flock as IO, so blocking here would stall every
                # greenlet of the process.
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    success = True
                    break
                except OSError as e:
                    if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK):
                        gevent.sleep(_FLOCK_SLEEP_TIME_S)
                        retries_left -= 1
                    else:
                        raise LockServiceUnavailable(
                            'flock failed on {}: {}'.format(path, e))

            if not success:
                raise LockServiceUnavailable(
                    'Lease file {} stayed locked'.format(path))
            yield fd
        finally:
            if success:
                fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)


def _read_state(fd):
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        chunks = []
        while True:
            buf = os.read(fd, 4096)
            if not buf:
                break
            chunks.append(buf)
    except OSError as e:
        raise LockServiceUnavailable('Cannot read lease file: {}'.format(e))

    data = b''.join(chunks)
    if not data:
        return {}
    try:
        return json.loads(data.decode('utf-8'))
    except ValueError:
        raise LockServiceUnavailable('Corrupt lease file: {!r}'.format(data))


def _write_state(fd, state):
    data = json.dumps(state).encode('utf-8')
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        os.ftruncate(fd, 0)
        os.write(fd, data)
    except OSError as e:
        raise LockServiceUnavailable('Cannot write lease file: {}'.format(e))
