"""Tests for .reconcile module."""

import io
import os
import shutil
import tempfile
import unittest

import gevent

from filewarden.errors import ResourceLocked
from filewarden.locks import LockManager, lock_key
from filewarden.locks.memory import MemoryLockService
from filewarden.reconcile import RECONCILE_LOCK_ID, Reconciler
from filewarden.storage import FileStorage
from filewarden.store.memory import MemoryCounterService, MemoryMetadataStore
from filewarden.store.metadata_store import (FileRecord, STATUS_UPLOADED,
                                             new_file_id)
from filewarden.utils import iso_timestamp, name_lock_id
from filewarden.versions import VersionCounter


class SlowStatStorage(FileStorage):
    def stat(self, name):
        gevent.sleep(1)
        return super().stat(name)


class ReconcilerTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.storage = FileStorage(self.temp_dir)
        self.store = MemoryMetadataStore()
        self.lock_manager = LockManager(MemoryLockService(), retry_count=0,
                                        retry_delay=0, retry_jitter=0)
        self.versions = VersionCounter(MemoryCounterService())
        self.reconciler = Reconciler(self.storage, self.store,
                                     self.lock_manager, self.versions,
                                     lock_retries=0)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def add_file(self, name, data):
        return self.storage.write(name, io.BytesIO(data))

    def add_record(self, name, checksum, creation_date=None):
        if creation_date is None:
            creation_date = iso_timestamp(self.storage.stat(name).creation_time)
        record = FileRecord(file_id=new_file_id(),
                            file_name=name,
                            checksum=checksum,
                            creation_date=creation_date,
                            status=STATUS_UPLOADED)
        self.store.insert(record)
        return record

    def test_store_should_converge_to_storage(self):
        a_checksum = self.add_file('A', b'a')
        a = self.add_record('A', a_checksum)
        self.add_file('B', b'b')
        c = self.add_record('C', 'c' * 64, creation_date='2020-01-01')

        report = self.reconciler.reconcile()

        self.assertEqual((report.inserted, report.deleted), (1, 1))
        self.assertEqual(report.errors, 0)
        records = {r.file_name: r for r in self.store.find_all()}
        self.assertEqual(sorted(records), ['A', 'B'])
        self.assertEqual(records['A'].file_id, a.file_id)
        self.assertEqual(self.versions.get(c.file_id), 1)
        self.assertEqual(self.versions.get(records['B'].file_id), 1)
        self.assertEqual(self.versions.get(a.file_id), 0)

    def test_second_pass_should_change_nothing(self):
        self.add_file('A', b'a')
        self.reconciler.reconcile()

        report = self.reconciler.reconcile()

        self.assertEqual(report, (0, 0, 0, 0, 0))

    def test_stale_creation_date_should_be_refreshed(self):
        checksum = self.add_file('A', b'a')
        record = self.add_record('A', checksum, creation_date='2000-01-01')

        report = self.reconciler.reconcile()

        self.assertEqual(report.updated, 1)
        self.assertNotEqual(
            self.store.find_by_key(record.file_id).creation_date,
            '2000-01-01')

    def test_file_changed_behind_back_should_get_new_record(self):
        checksum = self.add_file('A', b'a')
        old = self.add_record('A', checksum)
        with open(os.path.join(self.temp_dir, 'files', 'A'), 'wb') as f:
            f.write(b'changed')

        report = self.reconciler.reconcile()

        self.assertEqual((report.inserted, report.deleted), (1, 1))
        records = self.store.find_all()
        self.assertEqual(len(records), 1)
        self.assertNotEqual(records[0].file_id, old.file_id)
        self.assertNotEqual(records[0].checksum, checksum)

    def test_busy_file_should_be_skipped(self):
        checksum = self.add_file('A', b'a')
        record = self.add_record('A', checksum, creation_date='2000-01-01')
        self.add_file('B', b'b')
        lease = self.lock_manager.acquire(lock_key(name_lock_id('A')), 10)

        report = self.reconciler.reconcile()

        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.inserted, 1)
        # Neither refreshed nor removed.
        self.assertEqual(self.store.find_by_key(record.file_id), record)
        self.lock_manager.release(lease)

    def test_concurrent_pass_should_be_refused(self):
        lease = self.lock_manager.acquire(lock_key(RECONCILE_LOCK_ID), 10)

        with self.assertRaises(ResourceLocked):
            self.reconciler.reconcile()
        self.lock_manager.release(lease)

        self.reconciler.reconcile()

    def test_progress_should_be_reported(self):
        self.add_file('A', b'a')
        self.add_file('B', b'b')
        self.add_record('C', 'c' * 64, creation_date='2020-01-01')
        seen = []

        self.reconciler.reconcile(progress=seen.append)

        self.assertEqual(seen, [1, 2, 3, 4, 5])

    def test_slow_file_should_time_out_and_count_as_error(self):
        checksum = self.add_file('A', b'a')
        record = self.add_record('A', checksum, creation_date='2000-01-01')
        reconciler = Reconciler(SlowStatStorage(self.temp_dir), self.store,
                                self.lock_manager, self.versions,
                                lock_retries=0, io_timeout=0.05)

        with self.assertLogs('filewarden.reconcile', 'WARNING') as cm:
            report = reconciler.reconcile()

        self.assertEqual(report.errors, 1)
        self.assertIn('timed out', '\n'.join(cm.output))
        # The record of a file which could not be examined is kept.
        self.assertEqual(self.store.find_by_key(record.file_id), record)
        self.assertIsNone(
            self.lock_manager.service.holder(lock_key(name_lock_id('A'))))
