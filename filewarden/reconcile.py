"""Restores consistency between the storage directory and the metadata store.

The storage directory is the source of truth. A pass:

1. lists the files present in storage,
2. for each of them, under the file's lease, computes its checksum and
   creation date, and registers it under a new id if no record matches
   ``(file_name, checksum)``, or refreshes the record's creation date if
   one does,
3. removes every record whose ``(file_name, checksum)`` was not observed
   in step 2, after checking the disk again under the file's lease. This
   is stricter than removing only records whose name is absent from
   storage: a record of a name whose content was replaced out of band is
   dropped too, as it no longer describes any stored bytes,
4. reports how many records were inserted, updated and deleted.

Taking the per-file leases makes a pass safe to run next to the worker
pool: an upload in progress is never taken for an orphan and a delete in
progress is never registered again. A coarse lease ensures that only one
pass runs at a time.

Each per-file step is bounded by ``io_timeout``; a step which exceeds it
fails with :class:`OperationTimeout` and is counted in ``errors``.
"""

import collections
import logging

from filewarden.errors import LockUnavailable, NotFound, ResourceLocked
from filewarden.locks import lock_key
from filewarden.store.metadata_store import (FileRecord, STATUS_UPLOADED,
                                             dedup_key, new_file_id)
from filewarden.utils import bounded, file_digest, iso_timestamp, name_lock_id


logger = logging.getLogger(__name__)


_DEFAULT_LOCK_TTL_S = 30
_DEFAULT_PASS_TTL_S = 10 * 60
_DEFAULT_LOCK_RETRIES = 3

RECONCILE_LOCK_ID = 'reconcile'


ReconciliationReport = collections.namedtuple(
    'ReconciliationReport',
    ['inserted', 'updated', 'deleted', 'skipped', 'errors'])
"""Counts of records changed by a pass.

    Fields:

    * ``inserted`` files found in storage without a matching record
    * ``updated`` records whose creation date was refreshed
    * ``deleted`` records without a matching file
    * ``skipped`` files or records left alone because their lease was busy
    * ``errors`` files or records that failed, see the log
"""


class Reconciler:
    """Runs reconciliation passes.

    Args:
        storage: :class:`filewarden.storage.FileStorage`
        store: :class:`filewarden.store.MetadataStore`
        lock_manager: :class:`filewarden.locks.LockManager`
        versions: :class:`filewarden.versions.VersionCounter`
        lock_ttl: lifetime of per-file leases, in seconds
        pass_ttl: lifetime of the lease guarding the whole pass
        lock_retries: retries on a busy file lease before the file is
            skipped until the next pass
        io_timeout: bound on the work done for a single file or record,
            in seconds (``None`` disables it)
    """

    def __init__(self, storage, store, lock_manager, versions,
                 lock_ttl=_DEFAULT_LOCK_TTL_S, pass_ttl=_DEFAULT_PASS_TTL_S,
                 lock_retries=_DEFAULT_LOCK_RETRIES, io_timeout=None):
        self.storage = storage
        self.store = store
        self.lock_manager = lock_manager
        self.versions = versions
        self.lock_ttl = lock_ttl
        self.pass_ttl = pass_ttl
        self.lock_retries = lock_retries
        self.io_timeout = io_timeout

    def reconcile(self, progress=None):
        """Runs a single pass and returns a :class:`ReconciliationReport`.

        Raises :class:`ResourceLocked` if another pass is running.

        Args:
            progress: optional callable, called with the number of files
                and records processed so far
        """
        key = lock_key(RECONCILE_LOCK_ID)
        try:
            lease = self.lock_manager.acquire(key, self.pass_ttl,
                                              retry_count=0)
        except LockUnavailable:
            raise ResourceLocked(key)

        try:
            report = self._reconcile(progress or _no_progress)
        finally:
            self.lock_manager.release(lease)

        logger.info('Reconciliation done: %d inserted, %d updated, '
                    '%d deleted, %d skipped, %d errors.', *report)
        return report

    def _reconcile(self, progress):
        counts = collections.Counter()
        observed = set()
        # Names which could not be examined, their records are kept.
        unresolved = set()
        processed = 0

        with bounded(self.io_timeout, 'Listing storage'):
            names = self.storage.list()
        for name in names:
            try:
                with bounded(self.io_timeout,
                             'Reconciling file {}'.format(name)):
                    outcome = self._reconcile_file(name)
            except LockUnavailable:
                logger.info('%s is busy, skipping it in this pass.', name)
                counts['skipped'] += 1
                unresolved.add(name)
            except Exception as e:
                logger.warning('Failed to reconcile file %s: %s', name, e,
                               exc_info=True)
                counts['errors'] += 1
                unresolved.add(name)
            else:
                if outcome is not None:
                    change, key = outcome
                    observed.add(key)
                    counts[change] += 1
            processed += 1
            progress(processed)

        with bounded(self.io_timeout, 'Listing records'):
            records = self.store.find_all()
        for record in records:
            if (dedup_key(record.file_name, record.checksum) in observed
                    or record.file_name in unresolved):
                processed += 1
                progress(processed)
                continue
            try:
                with bounded(self.io_timeout,
                             'Checking record {}'.format(record.file_id)):
                    removed = self._remove_orphan(record)
                if removed:
                    counts['deleted'] += 1
            except LockUnavailable:
                logger.info('%s is busy, keeping record %s for now.',
                            record.file_name, record.file_id)
                counts['skipped'] += 1
            except Exception as e:
                logger.warning('Failed to check record %s: %s',
                               record.file_id, e, exc_info=True)
                counts['errors'] += 1
            processed += 1
            progress(processed)

        return ReconciliationReport(
            inserted=counts['inserted'],
            updated=counts['updated'],
            deleted=counts['deleted'],
            skipped=counts['skipped'],
            errors=counts['errors'])

    def _locked(self, name):
        return self.lock_manager.locked(lock_key(name_lock_id(name)),
                                        self.lock_ttl,
                                        retry_count=self.lock_retries)

    def _reconcile_file(self, name):
        """Returns ``(change, dedup_key)``, or ``None`` if the file is gone."""
        with self._locked(name):
            try:
                stat = self.storage.stat(name)
                with self.storage.read(name) as f:
                    checksum = file_digest(f)
            except NotFound:
                logger.debug('%s disappeared during reconciliation.', name)
                return None

            creation_date = iso_timestamp(stat.creation_time)
            record = self.store.find_one(file_name=name, checksum=checksum)
            if record is None:
                record = FileRecord(file_id=new_file_id(),
                                    file_name=name,
                                    checksum=checksum,
                                    creation_date=creation_date,
                                    status=STATUS_UPLOADED)
                self.store.insert(record)
                logger.info('Registered untracked file %s as %s.',
                            name, record.file_id)
                change = 'inserted'
            elif record.creation_date != creation_date:
                self.store.update({'file_id': record.file_id},
                                  {'creation_date': creation_date})
                logger.debug('Refreshed creation date of %s.', record.file_id)
                change = 'updated'
            else:
                return 'unchanged', dedup_key(name, checksum)

            self.versions.increment(record.file_id)
            return change, dedup_key(name, checksum)

    def _remove_orphan(self, record):
        """Deletes ``record`` if its file is still missing.

        Returns whether the record has been deleted.
        """
        with self._locked(record.file_name):
            current = self.store.find_by_key(record.file_id)
            if current is None:
                return False
            # An upload may have completed since the directory was listed.
            try:
                with self.storage.read(current.file_name) as f:
                    checksum = file_digest(f)
            except NotFound:
                checksum = None
            if checksum == current.checksum:
                return False

            self.store.delete({'file_id': current.file_id})
            self.versions.increment(current.file_id)
            logger.info('Removed record %s, its file %s is gone or was '
                        'replaced.', current.file_id, current.file_name)
            return True


def _no_progress(processed):
    pass
