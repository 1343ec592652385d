"""Exceptions raised by the filewarden core.

Lock and I/O failures inside a worker reject only the task that hit them,
the pool itself keeps running.
"""


class FilewardenError(Exception):
    pass


class NotFound(FilewardenError):
    """The operation referenced a file id or name with no matching record."""


class ResourceLocked(FilewardenError):
    """The file is locked by another operation.

    Callers should retry later, not immediately.
    """

    def __init__(self, key):
        super().__init__('Resource is locked: {}'.format(key))
        self.key = key


class LockUnavailable(FilewardenError):
    """Raised after acquiring a lease failed multiple times."""

    def __init__(self, key, attempts):
        super().__init__(
            'Failed to acquire lease {} after {} attempts'.format(key, attempts))
        self.key = key
        self.attempts = attempts


class LockLost(FilewardenError):
    """The lease expired (or was taken over) before it was released."""

    def __init__(self, lease):
        super().__init__('Lease {} (token {}) was lost'.format(
            lease.key, lease.fencing_token))
        self.lease = lease


class LockServiceUnavailable(FilewardenError):
    """The lock service itself failed, as opposed to the key being busy."""


class StorageIOError(FilewardenError):
    pass


class ChecksumMismatch(FilewardenError):
    def __init__(self, name, expected, actual):
        super().__init__('Checksum mismatch for {}: expected {}, got {}'
                         .format(name, expected, actual))
        self.name = name
        self.expected = expected
        self.actual = actual


class OperationTimeout(FilewardenError):
    """A call to the lock service, metadata store or storage timed out."""


class TaskCancelled(FilewardenError):
    pass
