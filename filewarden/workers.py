"""A fixed pool of workers executing upload, delete and status update tasks.

Tasks are handed out in submission order to whichever worker becomes idle
first. A worker then:

1. prepares the task (see :mod:`filewarden.operations`),
2. acquires the lease of the file; a busy lease fails the task with
   :class:`ResourceLocked`, which is never retried by the pool,
3. performs the operation,
4. bumps the file's version if anything was mutated,
5. releases the lease, whatever happened in 3 and 4,
6. resolves or rejects the task's result, exactly once.

Tasks on different files run concurrently. Tasks on the same file are
mutually exclusive, but not necessarily executed in submission order: a
task backing off on a busy lease may be overtaken by a later one.

Workers are greenlets, so one pool lives in a single process and thread.
"""

import logging
import uuid

import gevent
import gevent.queue
from gevent.event import AsyncResult

from filewarden.errors import (FilewardenError, LockUnavailable,
                               ResourceLocked, TaskCancelled)
from filewarden.locks import lock_key
from filewarden.operations import DELETE, SET_STATUS, UPLOAD
from filewarden.utils import bounded


logger = logging.getLogger(__name__)


_DEFAULT_POOL_SIZE = 4
_DEFAULT_LOCK_TTL_S = 30

_STOP = object()


class Task:
    """A unit of work for the pool.

    ``result`` is a :class:`gevent.event.AsyncResult` which is set (or has
    its exception set) exactly once, when the task terminates.
    """

    CREATED = 'created'
    QUEUED = 'queued'
    RUNNING = 'running'
    DONE = 'done'
    CANCELLED = 'cancelled'

    def __init__(self, action, file_id=None, file_name=None, payload=None,
                 size=0, expected_checksum=None, status=None):
        self.id = uuid.uuid4().hex
        self.action = action
        self.file_id = file_id
        self.file_name = file_name
        self.payload = payload
        self.size = size
        self.expected_checksum = expected_checksum
        self.status = status
        self.state = Task.CREATED
        self.result = AsyncResult()

    @classmethod
    def upload(cls, payload, file_name, size=0, expected_checksum=None):
        return cls(UPLOAD, file_name=file_name, payload=payload, size=size,
                   expected_checksum=expected_checksum)

    @classmethod
    def delete(cls, file_id):
        return cls(DELETE, file_id=file_id)

    @classmethod
    def set_status(cls, file_id, status):
        return cls(SET_STATUS, file_id=file_id, status=status)

    def cancel(self):
        """Drops the task if it has not been dispatched yet.

        Returns whether the task was cancelled. A running task is never
        interrupted, it always completes and releases its lease.
        """
        if self.state not in (Task.CREATED, Task.QUEUED):
            return False
        self.state = Task.CANCELLED
        self.result.set_exception(
            TaskCancelled('Task {} was cancelled'.format(self.id)))
        return True

    def get(self, timeout=None):
        """Waits for the task and returns its result (or raises)."""
        return self.result.get(timeout=timeout)

    def __repr__(self):
        return '<Task {} {} {}>'.format(
            self.id, self.action, self.file_name or self.file_id)


class Worker:
    def __init__(self, index):
        self.index = index
        self.task = None

    @property
    def busy(self):
        return self.task is not None


class WorkerPool:
    """Dispatches tasks to ``size`` workers.

    Args:
        operations: :class:`filewarden.operations.FileOperations`
        lock_manager: :class:`filewarden.locks.LockManager`
        versions: :class:`filewarden.versions.VersionCounter`
        size: number of workers
        lock_ttl: lifetime of the lease taken for each task, in seconds;
            it should comfortably exceed the longest transfer
        io_timeout: bound on every step of a task which touches the
            storage or a store, in seconds (``None`` disables it)
        max_queued: bound on the number of waiting tasks, ``submit``
            blocks when it is reached (``None`` means unbounded)
    """

    def __init__(self, operations, lock_manager, versions,
                 size=_DEFAULT_POOL_SIZE, lock_ttl=_DEFAULT_LOCK_TTL_S,
                 io_timeout=None, max_queued=None):
        if size < 1:
            raise ValueError('Pool needs at least one worker')
        self.operations = operations
        self.lock_manager = lock_manager
        self.versions = versions
        self.lock_ttl = lock_ttl
        self.io_timeout = io_timeout
        self.workers = [Worker(i) for i in range(size)]
        self._queue = gevent.queue.Queue(max_queued)
        self._greenlets = []
        self._closed = False

    def start(self):
        if self._greenlets:
            return
        self._greenlets = [gevent.spawn(self._work, worker)
                           for worker in self.workers]
        logger.info('Started %d workers.', len(self.workers))

    def stop(self, timeout=None):
        """Cancels queued tasks and waits for the running ones."""
        self._closed = True
        cancelled = 0
        while True:
            try:
                task = self._queue.get_nowait()
            except gevent.queue.Empty:
                break
            if task is not _STOP and task.cancel():
                cancelled += 1
        if cancelled:
            logger.info('Cancelled %d queued tasks.', cancelled)

        for _ in self._greenlets:
            self._queue.put(_STOP)
        gevent.joinall(self._greenlets, timeout=timeout)
        self._greenlets = []

    def submit(self, task):
        """Queues ``task`` and returns its result."""
        if self._closed:
            raise RuntimeError('Worker pool is stopped')
        if task.state != Task.CREATED:
            raise ValueError('{!r} was already submitted'.format(task))
        task.state = Task.QUEUED
        self._queue.put(task)
        logger.debug('Queued %r (%d waiting).', task, self._queue.qsize())
        return task.result

    def idle_workers(self):
        return sum(1 for worker in self.workers if not worker.busy)

    def queued(self):
        return self._queue.qsize()

    def _work(self, worker):
        while True:
            task = self._queue.get()
            if task is _STOP:
                return
            if task.state == Task.CANCELLED:
                continue

            worker.task = task
            task.state = Task.RUNNING
            try:
                self._execute(task)
            finally:
                task.state = Task.DONE
                worker.task = None
                if not task.result.ready():
                    task.result.set_exception(TaskCancelled(
                        'Worker stopped while running {}'.format(task.id)))

    def _execute(self, task):
        logger.debug('Worker picked %r.', task)
        try:
            with bounded(self.io_timeout, 'Preparing {!r}'.format(task)):
                prepared = self.operations.prepare(task)

            with prepared:
                key = lock_key(prepared.lock_id)
                try:
                    lease = self.lock_manager.acquire(key, self.lock_ttl)
                except LockUnavailable:
                    raise ResourceLocked(key)

                try:
                    with bounded(self.io_timeout,
                                 'Performing {!r}'.format(task)):
                        result, mutated_id = self.operations.perform(
                            task, prepared)
                    with bounded(self.io_timeout,
                                 'Versioning {!r}'.format(task)):
                        if mutated_id is not None:
                            version = self.versions.increment(mutated_id)
                        else:
                            version = self.versions.current(result.file_id)
                finally:
                    self.lock_manager.release(lease)
        except FilewardenError as e:
            logger.info('%r rejected: %s', task, e)
            task.result.set_exception(e)
        except Exception as e:
            logger.warning('%r failed: %s', task, e, exc_info=True)
            task.result.set_exception(e)
        else:
            task.result.set(result._replace(version=version))
