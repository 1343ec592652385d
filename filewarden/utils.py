"""Common routines: checksums, names and timestamps."""

import datetime
import errno
import hashlib
import os
import os.path

import gevent

from filewarden.errors import OperationTimeout


_BUFFER_SIZE = 64 * 1024


def check_name(name):
    """Validates a storage file name.

    Files are stored flat, so the name must be a single path component.
    """
    if not isinstance(name, str):
        raise ValueError("Invalid file name: not string: %r" % (name,))
    if not name:
        raise ValueError("Invalid file name: empty name")
    if '/' in name or '\\' in name or '\0' in name:
        raise ValueError("Invalid file name: %r contains a separator" % name)
    if name in ('.', '..'):
        raise ValueError("Invalid file name: %r" % name)


def name_lock_id(name):
    """Returns the lock id guarding the file stored under ``name``.

    Derived from the name alone, so it is known before any file id
    has been assigned.
    """
    return 'name:' + hashlib.sha256(name.encode('utf-8')).hexdigest()


def mkdir(name):
    try:
        os.makedirs(name, 0o700)
    except OSError as e:
        if e.errno != errno.EEXIST:
            raise


def digest(stream):
    """Calculates SHA256 digest of a binary stream, reading it in chunks."""
    hash_sha256 = hashlib.sha256()
    for chunk in iter(lambda: stream.read(_BUFFER_SIZE), b''):
        hash_sha256.update(chunk)
    return hash_sha256.hexdigest()


def file_digest(source):
    """Calculates SHA256 digest of a file.

    Args:
        source: either a file-like object or a path to file
    """
    if isinstance(source, str):
        with open(source, 'rb') as f:
            return digest(f)
    return digest(source)


class DigestingReader:
    """Wraps a binary stream and hashes everything read through it."""

    def __init__(self, stream):
        self._stream = stream
        self._hash = hashlib.sha256()
        self.size = 0

    def read(self, size=-1):
        data = self._stream.read(size)
        self._hash.update(data)
        self.size += len(data)
        return data

    def hexdigest(self):
        return self._hash.hexdigest()


def iso_timestamp(ts):
    """Formats a unix timestamp as an ISO-8601 UTC string with millis."""
    dt = datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def bounded(seconds, what):
    """Returns a ``gevent.Timeout`` raising :class:`OperationTimeout`.

    ``seconds`` of ``None`` makes it a no-op.
    """
    return gevent.Timeout(
        seconds,
        OperationTimeout('{} timed out after {}s'.format(what, seconds)))
