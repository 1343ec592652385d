"""Upload, delete and status update, as executed by a worker.

Each operation has two steps:

- ``prepare`` runs before the lease is taken. It only touches private
  state (staging the upload, looking up the record to delete) and
  determines which lease the second step needs.
- ``perform`` runs while the worker holds that lease, and is the only
  place where the storage directory and the metadata store are mutated.

Leases are per file name: a name maps to a single path in the storage,
so every writer of that path has to be serialized, whatever the content.
"""

import collections
import logging

from filewarden.errors import ChecksumMismatch, NotFound
from filewarden.store.metadata_store import (FileRecord,
                                             STATUS_DELETE_PENDING,
                                             STATUS_UPLOADED, new_file_id)
from filewarden.utils import check_name, file_digest, iso_timestamp, name_lock_id


logger = logging.getLogger(__name__)


UPLOAD = 'upload'
DELETE = 'delete'
SET_STATUS = 'set_status'


UploadResult = collections.namedtuple(
    'UploadResult',
    ['file_id', 'is_new', 'file_name', 'checksum', 'creation_date',
     'version'])

DeleteResult = collections.namedtuple(
    'DeleteResult', ['file_id', 'file_name', 'version'])

StatusResult = collections.namedtuple(
    'StatusResult', ['file_id', 'file_name', 'status', 'version'])


class Prepared:
    """The outcome of ``prepare``: which lease to take and what for.

    Should be used as a context manager, leaving it discards the staged
    upload unless it has been committed.
    """

    def __init__(self, lock_id, staged=None, record=None):
        self.lock_id = lock_id
        self.staged = staged
        self.record = record

    def __enter__(self):
        return self

    def __exit__(self, _exc_type, _exc_value, _traceback):
        if self.staged is not None and not self.staged.committed:
            self.staged.discard()


class FileOperations:
    """Implements upload (with deduplication), delete and status updates.

    Args:
        storage: :class:`filewarden.storage.FileStorage`
        store: :class:`filewarden.store.MetadataStore`
        verify_writes: if set, committed files are read back and hashed
            again, a difference raises :class:`ChecksumMismatch`
    """

    def __init__(self, storage, store, verify_writes=True):
        self.storage = storage
        self.store = store
        self.verify_writes = verify_writes

    def prepare(self, task):
        if task.action == UPLOAD:
            return self.prepare_upload(task)
        elif task.action == DELETE:
            return self.prepare_delete(task)
        elif task.action == SET_STATUS:
            return self.prepare_set_status(task)
        raise ValueError('Unknown action: {}'.format(task.action))

    def perform(self, task, prepared):
        """Returns a pair ``(result, mutated_file_id)``.

        ``mutated_file_id`` is ``None`` when nothing has been changed.
        """
        if task.action == UPLOAD:
            return self.upload(task, prepared)
        elif task.action == SET_STATUS:
            return self.set_status(task, prepared)
        return self.delete(task, prepared)

    def prepare_upload(self, task):
        check_name(task.file_name)
        staged = self.storage.stage(task.payload, task.size)
        if (task.expected_checksum is not None
                and task.expected_checksum != staged.digest):
            staged.discard()
            raise ChecksumMismatch(task.file_name, task.expected_checksum,
                                   staged.digest)
        return Prepared(name_lock_id(task.file_name), staged=staged)

    def upload(self, task, prepared):
        name = task.file_name
        checksum = prepared.staged.digest

        existing = self.store.find_one(file_name=name, checksum=checksum)
        if existing is not None:
            logger.info('%s (%s) is already stored as %s.',
                        name, checksum, existing.file_id)
            return self._upload_result(existing, False), None

        # Records of older content stored under this name lose their file
        # the moment the new one is committed.
        superseded = [r for r in self.store.find_all() if r.file_name == name]

        self.storage.commit(prepared.staged, name)
        if self.verify_writes:
            self._verify(name, checksum)

        for old in superseded:
            logger.info('Content of %s replaced, dropping record %s.',
                        name, old.file_id)
            self.store.delete({'file_id': old.file_id})

        stat = self.storage.stat(name)
        record = FileRecord(file_id=new_file_id(),
                            file_name=name,
                            checksum=checksum,
                            creation_date=iso_timestamp(stat.creation_time),
                            status=STATUS_UPLOADED)
        self.store.insert(record)
        logger.info('Stored %s as %s.', name, record.file_id)
        return self._upload_result(record, True), record.file_id

    def prepare_delete(self, task):
        record = self.store.find_by_key(task.file_id)
        if record is None:
            raise NotFound('No file with id {}'.format(task.file_id))
        return Prepared(name_lock_id(record.file_name), record=record)

    def delete(self, task, prepared):
        # The record may have changed while we were waiting for the lease.
        record = self.store.find_by_key(task.file_id)
        if record is None:
            raise NotFound('No file with id {}'.format(task.file_id))

        self.store.update({'file_id': record.file_id},
                          {'status': STATUS_DELETE_PENDING})
        if not self.storage.delete(record.file_name):
            logger.warning('%s (%s) was already missing from storage.',
                           record.file_name, record.file_id)
        self.store.delete({'file_id': record.file_id})
        logger.info('Deleted %s (%s).', record.file_name, record.file_id)
        return (DeleteResult(file_id=record.file_id,
                             file_name=record.file_name,
                             version=None),
                record.file_id)

    def prepare_set_status(self, task):
        if not isinstance(task.status, str) or not task.status:
            raise ValueError('Invalid status: {!r}'.format(task.status))
        record = self.store.find_by_key(task.file_id)
        if record is None:
            raise NotFound('No file with id {}'.format(task.file_id))
        return Prepared(name_lock_id(record.file_name), record=record)

    def set_status(self, task, prepared):
        record = self.store.find_by_key(task.file_id)
        if record is None:
            raise NotFound('No file with id {}'.format(task.file_id))

        self.store.update({'file_id': record.file_id},
                          {'status': task.status})
        logger.info('Status of %s (%s) set to %r.',
                    record.file_name, record.file_id, task.status)
        return (StatusResult(file_id=record.file_id,
                             file_name=record.file_name,
                             status=task.status,
                             version=None),
                record.file_id)

    def _verify(self, name, expected):
        with self.storage.read(name) as f:
            actual = file_digest(f)
        if actual != expected:
            logger.error('%s is corrupt after write: expected %s, got %s.',
                         name, expected, actual)
            self.storage.delete(name)
            raise ChecksumMismatch(name, expected, actual)

    @staticmethod
    def _upload_result(record, is_new):
        return UploadResult(file_id=record.file_id,
                            is_new=is_new,
                            file_name=record.file_name,
                            checksum=record.checksum,
                            creation_date=record.creation_date,
                            version=None)
