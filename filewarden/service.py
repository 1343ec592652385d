"""The entry point used by the transport layer."""

import logging
import os

import gevent

from filewarden.errors import NotFound, ResourceLocked
from filewarden.operations import FileOperations
from filewarden.reconcile import Reconciler
from filewarden.utils import bounded
from filewarden.workers import Task, WorkerPool


logger = logging.getLogger(__name__)


class FileService:
    """Ties the worker pool and the reconciler to a set of collaborators.

       All collaborators are passed in, nothing is looked up globally:

         ``storage``
           a :class:`filewarden.storage.FileStorage`

         ``store``
           a :class:`filewarden.store.MetadataStore`

         ``lock_manager``
           a :class:`filewarden.locks.LockManager`

         ``versions``
           a :class:`filewarden.versions.VersionCounter`

       Tunables not given as arguments are taken from the environment:

         ``FILEWARDEN_POOL_SIZE``
           number of workers (4 by default)

         ``FILEWARDEN_LOCK_TTL``
           lease lifetime in seconds (30 by default); must bound the
           longest upload

         ``FILEWARDEN_IO_TIMEOUT``
           bound on each storage or store step of a task or of a
           reconciliation pass, and on reads, in seconds (unbounded by
           default)

         ``FILEWARDEN_RECONCILE_INTERVAL``
           seconds between periodic reconciliation passes; 0 or unset
           disables them (the pass at :meth:`start` always runs)

       Reads (:meth:`get_record`, :meth:`list_records`) take no lease and
       may observe a record in the middle of an update.
    """

    def __init__(self, storage, store, lock_manager, versions,
                 pool_size=None, lock_ttl=None, io_timeout=None,
                 reconcile_interval=None, verify_writes=True):
        if pool_size is None:
            pool_size = int(os.environ.get('FILEWARDEN_POOL_SIZE', 4))
        if lock_ttl is None:
            lock_ttl = float(os.environ.get('FILEWARDEN_LOCK_TTL', 30))
        if io_timeout is None and os.environ.get('FILEWARDEN_IO_TIMEOUT'):
            io_timeout = float(os.environ['FILEWARDEN_IO_TIMEOUT'])
        if reconcile_interval is None:
            reconcile_interval = float(
                os.environ.get('FILEWARDEN_RECONCILE_INTERVAL', 0))

        self.storage = storage
        self.store = store
        self.lock_manager = lock_manager
        self.versions = versions
        self.reconcile_interval = reconcile_interval
        self.io_timeout = io_timeout

        self.operations = FileOperations(storage, store,
                                         verify_writes=verify_writes)
        self.pool = WorkerPool(self.operations, lock_manager, versions,
                               size=pool_size, lock_ttl=lock_ttl,
                               io_timeout=io_timeout)
        self.reconciler = Reconciler(storage, store, lock_manager, versions,
                                     lock_ttl=lock_ttl, io_timeout=io_timeout)
        self._reconcile_greenlet = None

    def start(self, reconcile=True):
        """Starts the workers.

        Unless ``reconcile`` is ``False`` a reconciliation pass is run
        first. Periodic passes are scheduled if an interval is configured.
        """
        if reconcile:
            self.reconcile_logged()
        self.pool.start()
        if self.reconcile_interval > 0 and self._reconcile_greenlet is None:
            self._reconcile_greenlet = gevent.spawn(
                self._reconcile_periodically, self.reconcile_interval)

    def stop(self, timeout=None):
        if self._reconcile_greenlet is not None:
            self._reconcile_greenlet.kill()
            self._reconcile_greenlet = None
        self.pool.stop(timeout=timeout)

    def close(self):
        self.stop()
        self.store.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, _exc_type, _exc_value, _traceback):
        self.stop()

    def submit_upload(self, data, file_name, size=0, expected_checksum=None):
        """Queues an upload of the binary stream ``data`` as ``file_name``.

        Returns the :class:`filewarden.workers.Task`; its result is an
        :class:`filewarden.operations.UploadResult`. Uploading content
        identical to an already stored file of the same name returns that
        file's id with ``is_new=False``.
        """
        task = Task.upload(data, file_name, size=size,
                           expected_checksum=expected_checksum)
        self.pool.submit(task)
        return task

    def upload(self, data, file_name, size=0, expected_checksum=None,
               timeout=None):
        return self.submit_upload(data, file_name, size,
                                  expected_checksum).get(timeout)

    def submit_delete(self, file_id):
        """Queues deletion of ``file_id``.

        The task fails with :class:`filewarden.errors.NotFound` if there is
        no such file.
        """
        task = Task.delete(file_id)
        self.pool.submit(task)
        return task

    def delete(self, file_id, timeout=None):
        return self.submit_delete(file_id).get(timeout)

    def delete_all(self, timeout=None):
        """Deletes every file which has a record.

        Each file is deleted by a task of its own, under its own lease.
        Records which disappear in the meantime are skipped. Returns the
        list of :class:`filewarden.operations.DeleteResult`; if some
        deletion failed, the first failure is raised once every task has
        finished.
        """
        tasks = [self.submit_delete(record.file_id)
                 for record in self.list_records()]
        results = []
        failure = None
        for task in tasks:
            try:
                results.append(task.get(timeout))
            except NotFound:
                continue
            except Exception as e:
                if failure is None:
                    failure = e
        logger.info('Deleted %d of %d files.', len(results), len(tasks))
        if failure is not None:
            raise failure
        return results

    def submit_set_status(self, file_id, status):
        """Queues setting the free-form ``status`` of ``file_id``.

        The update is made under the file's lease and bumps its version.
        """
        task = Task.set_status(file_id, status)
        self.pool.submit(task)
        return task

    def set_status(self, file_id, status, timeout=None):
        return self.submit_set_status(file_id, status).get(timeout)

    def reconcile_now(self, progress=None):
        return self.reconciler.reconcile(progress)

    def get_record(self, file_id):
        with bounded(self.io_timeout, 'Reading record {}'.format(file_id)):
            record = self.store.find_by_key(file_id)
        if record is None:
            raise NotFound('No file with id {}'.format(file_id))
        return record

    def list_records(self):
        with bounded(self.io_timeout, 'Listing records'):
            return self.store.find_all()

    def file_version(self, file_id):
        with bounded(self.io_timeout, 'Reading version of {}'.format(file_id)):
            return self.versions.get(file_id)

    def status(self):
        return {
            'workers': len(self.pool.workers),
            'idle_workers': self.pool.idle_workers(),
            'queued_tasks': self.pool.queued(),
            'version_failures': self.versions.failures,
        }

    def reconcile_logged(self):
        """Like :meth:`reconcile_now`, but a failed pass is only logged.

        Returns the report, or ``None`` if the pass did not complete.
        """
        try:
            return self.reconcile_now()
        except ResourceLocked:
            logger.info('Another reconciliation pass is running, '
                        'skipping this one.')
        except Exception:
            logger.error('Reconciliation failed, it will be retried on the '
                         'next pass.', exc_info=True)
        return None

    def _reconcile_periodically(self, interval):
        while True:
            gevent.sleep(interval)
            self.reconcile_logged()
