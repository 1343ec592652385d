"""Per-file version counters.

Every successful mutation of a file bumps its counter, so readers can
tell whether what they saw is stale. Counters only grow.
"""

import logging


logger = logging.getLogger(__name__)


def version_key(file_id):
    return 'version:' + file_id


class CounterService:
    """An abstract store of integer counters."""

    def increment(self, key):
        """Atomically adds one to ``key`` (starting from 0) and returns
           the new value."""
        raise NotImplementedError

    def get(self, key):
        """Returns the current value of ``key``, 0 if it was never set."""
        raise NotImplementedError


class VersionCounter:
    """Tracks versions of files in a :class:`CounterService`.

    Increments are best-effort: a failure is logged and counted in
    ``failures`` (so that counter drift can be noticed), but never
    propagates to the operation which triggered it.
    """

    def __init__(self, counters):
        self.counters = counters
        self.failures = 0

    def increment(self, file_id):
        """Bumps the version of ``file_id``; returns it or ``None``."""
        try:
            version = self.counters.increment(version_key(file_id))
        except Exception:
            self.failures += 1
            logger.error('Failed to bump version of %s, counter may drift '
                         '(%d failures so far).', file_id, self.failures,
                         exc_info=True)
            return None
        logger.debug('Version of %s is now %d.', file_id, version)
        return version

    def get(self, file_id):
        return self.counters.get(version_key(file_id))

    def current(self, file_id):
        """Like :meth:`get`, but returns ``None`` instead of failing."""
        try:
            return self.get(file_id)
        except Exception:
            logger.warning('Could not read version of %s.', file_id,
                           exc_info=True)
            return None
