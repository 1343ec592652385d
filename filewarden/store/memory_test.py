"""Tests for .memory module."""

import unittest

import gevent

from filewarden.store.memory import MemoryCounterService, MemoryMetadataStore
from filewarden.store.metadata_store_test import (MetadataStoreContract,
                                                  make_record)


class MemoryMetadataStoreTest(MetadataStoreContract, unittest.TestCase):
    def setUp(self):
        self.store = MemoryMetadataStore()

    def test_find_all_should_keep_insertion_order(self):
        records = [make_record(name) for name in ('c', 'a', 'b')]
        for record in records:
            self.store.insert(record)

        self.assertEqual(self.store.find_all(), records)


class MemoryCounterServiceTest(unittest.TestCase):
    def test_counters_should_start_at_zero(self):
        counters = MemoryCounterService()

        self.assertEqual(counters.get('x'), 0)
        self.assertEqual(counters.increment('x'), 1)
        self.assertEqual(counters.increment('x'), 2)
        self.assertEqual(counters.get('x'), 2)
        self.assertEqual(counters.get('y'), 0)

    def test_concurrent_increments_should_not_be_lost(self):
        counters = MemoryCounterService()

        gevent.joinall([gevent.spawn(counters.increment, 'x')
                        for _ in range(100)])

        self.assertEqual(counters.get('x'), 100)
