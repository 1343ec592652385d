"""Tests for the parts of .run module which run in the manager process."""

import importlib.util
import io
import os
import shutil
import tempfile
import unittest

from filewarden.locks import LockManager, lock_key
from filewarden.locks.fcntl_service import FcntlLockService
from filewarden.reconcile import RECONCILE_LOCK_ID
from filewarden.storage import FileStorage

_HAS_BSDDB = importlib.util.find_spec('bsddb3') is not None

if _HAS_BSDDB:
    from filewarden.servers import run
    from filewarden.store.bsddb_store import db_init


@unittest.skipUnless(_HAS_BSDDB, 'bsddb3 is not installed')
class StartupReconcileTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.storage = FileStorage(self.temp_dir)
        db_init(os.path.join(self.temp_dir, 'db'))

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def records(self):
        service = run.make_file_service(self.temp_dir)
        try:
            return service.list_records()
        finally:
            service.close()

    def test_existing_files_should_be_registered(self):
        self.storage.write('a.txt', io.BytesIO(b'a'))
        self.storage.stage(io.BytesIO(b'leftover'))

        run.startup_reconcile(self.temp_dir, lock_ttl=5)

        self.assertEqual([r.file_name for r in self.records()], ['a.txt'])
        self.assertEqual(os.listdir(os.path.join(self.temp_dir, 'tmp')), [])

    def test_busy_pass_should_not_stop_startup(self):
        self.storage.write('a.txt', io.BytesIO(b'a'))
        lock_manager = LockManager(
            FcntlLockService(os.path.join(self.temp_dir, 'locks')))
        lease = lock_manager.acquire(lock_key(RECONCILE_LOCK_ID), 60)

        try:
            with self.assertLogs('filewarden.service', 'INFO') as cm:
                run.startup_reconcile(self.temp_dir, lock_ttl=5)
        finally:
            lock_manager.release(lease)

        self.assertIn('Another reconciliation pass is running',
                      '\n'.join(cm.output))
        self.assertEqual(self.records(), [])


@unittest.skipUnless(_HAS_BSDDB, 'bsddb3 is not installed')
class MakeFileServiceTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        db_init(os.path.join(self.temp_dir, 'db'))

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_calls_should_be_bounded_by_default(self):
        service = run.make_file_service(self.temp_dir)
        try:
            self.assertEqual(service.io_timeout, 5 * 60)
            self.assertEqual(service.pool.io_timeout, 5 * 60)
            self.assertEqual(service.reconciler.io_timeout, 5 * 60)
            self.assertEqual(service.lock_manager.call_timeout, 10)
        finally:
            service.close()

    def test_environment_should_override_bounds(self):
        os.environ['FILEWARDEN_IO_TIMEOUT'] = '7'
        os.environ['FILEWARDEN_LOCK_CALL_TIMEOUT'] = '3'
        try:
            service = run.make_file_service(self.temp_dir)
        finally:
            del os.environ['FILEWARDEN_IO_TIMEOUT']
            del os.environ['FILEWARDEN_LOCK_CALL_TIMEOUT']

        try:
            self.assertEqual(service.io_timeout, 7)
            self.assertEqual(service.lock_manager.call_timeout, 3)
        finally:
            service.close()
