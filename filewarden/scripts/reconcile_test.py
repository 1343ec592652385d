"""Tests for reconcile script."""

import importlib.util
import io
import os
import shutil
import tempfile
import unittest

from filewarden.storage import FileStorage

_HAS_BSDDB = importlib.util.find_spec('bsddb3') is not None

if _HAS_BSDDB:
    from filewarden.scripts import reconcile
    from filewarden.servers.run import make_file_service


@unittest.skipUnless(_HAS_BSDDB, 'bsddb3 is not installed')
class ReconcileScriptTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.storage = FileStorage(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def records(self):
        service = make_file_service(self.temp_dir)
        try:
            return service.list_records()
        finally:
            service.close()

    def test_files_should_be_registered(self):
        self.storage.write('a.txt', io.BytesIO(b'a'))
        self.storage.write('b.txt', io.BytesIO(b'b'))

        reconcile.main([self.temp_dir, '--silent'])

        self.assertEqual(sorted(r.file_name for r in self.records()),
                         ['a.txt', 'b.txt'])

    def test_records_of_removed_files_should_be_dropped(self):
        self.storage.write('a.txt', io.BytesIO(b'a'))
        reconcile.main([self.temp_dir, '--silent'])
        self.storage.delete('a.txt')

        reconcile.main([self.temp_dir, '--silent'])

        self.assertEqual(self.records(), [])

    def test_staging_leftovers_should_be_kept_by_default(self):
        self.storage.stage(io.BytesIO(b'in progress'))

        reconcile.main([self.temp_dir, '--silent'])

        staged = os.listdir(os.path.join(self.temp_dir, 'tmp'))
        self.assertEqual(len(staged), 1)

    def test_staging_leftovers_should_be_removed_on_request(self):
        self.storage.stage(io.BytesIO(b'leftover'))

        reconcile.main([self.temp_dir, '--silent', '--clean-staging'])

        self.assertEqual(os.listdir(os.path.join(self.temp_dir, 'tmp')), [])

    def test_non_storage_directory_should_be_refused(self):
        empty_dir = tempfile.mkdtemp()
        try:
            with self.assertRaises(SystemExit):
                reconcile.main([empty_dir, '--silent'])
        finally:
            shutil.rmtree(empty_dir)
