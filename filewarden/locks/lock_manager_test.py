"""Tests for .lock_manager module, run against the in-memory service."""

import unittest

import gevent

from filewarden.errors import (LockLost, LockServiceUnavailable,
                               LockUnavailable)
from filewarden.locks import LockManager, lock_key
from filewarden.locks.memory import MemoryLockService


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FailingLockService(MemoryLockService):
    def release(self, lease):
        raise LockServiceUnavailable('release is broken')


class LockManagerTest(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.service = MemoryLockService(clock=self.clock)
        self.manager = LockManager(self.service, retry_count=3,
                                   retry_delay=0, retry_jitter=0)

    def test_busy_key_should_not_be_granted_twice(self):
        lease = self.manager.acquire(lock_key('a'), ttl=10)

        with self.assertRaises(LockUnavailable) as cm:
            self.manager.acquire(lock_key('a'), ttl=10)
        self.assertEqual(cm.exception.attempts, 4)
        self.assertEqual(self.service.holder(lock_key('a')).owner, lease.owner)

    def test_different_keys_should_not_conflict(self):
        self.manager.acquire(lock_key('a'), ttl=10)
        self.manager.acquire(lock_key('b'), ttl=10)

    def test_expired_lease_should_be_granted_again(self):
        first = self.manager.acquire(lock_key('a'), ttl=10)
        self.clock.now += 11

        second = self.manager.acquire(lock_key('a'), ttl=10)
        self.assertNotEqual(first.owner, second.owner)

    def test_lease_should_not_be_granted_again_before_ttl(self):
        first = self.manager.acquire(lock_key('a'), ttl=10)

        self.clock.now += 9.9
        with self.assertRaises(LockUnavailable):
            self.manager.acquire(lock_key('a'), ttl=10)
        self.assertEqual(self.service.holder(lock_key('a')).owner, first.owner)

        self.clock.now += 0.2
        second = self.manager.acquire(lock_key('a'), ttl=10)
        self.assertGreater(second.fencing_token, first.fencing_token)

    def test_fencing_tokens_should_grow(self):
        first = self.manager.acquire(lock_key('a'), ttl=10)
        self.manager.release(first)
        second = self.manager.acquire(lock_key('a'), ttl=10)

        self.assertGreater(second.fencing_token, first.fencing_token)

    def test_release_should_be_idempotent(self):
        lease = self.manager.acquire(lock_key('a'), ttl=10)

        self.assertTrue(self.manager.release(lease))
        self.assertFalse(self.manager.release(lease))
        self.assertIsNone(self.service.holder(lock_key('a')))

    def test_stale_release_should_not_free_new_holder(self):
        stale = self.manager.acquire(lock_key('a'), ttl=10)
        self.clock.now += 11
        fresh = self.manager.acquire(lock_key('a'), ttl=10)

        self.assertFalse(self.manager.release(stale))
        self.assertEqual(self.service.holder(lock_key('a')).owner,
                         fresh.owner)

    def test_strict_release_of_expired_lease_should_raise(self):
        lease = self.manager.acquire(lock_key('a'), ttl=10)
        self.clock.now += 11

        with self.assertRaises(LockLost):
            self.manager.release(lease, strict=True)

    def test_release_should_survive_service_failure(self):
        manager = LockManager(FailingLockService(clock=self.clock),
                              retry_count=0)
        lease = manager.acquire(lock_key('a'), ttl=10)

        self.assertFalse(manager.release(lease))
        with self.assertRaises(LockServiceUnavailable):
            manager.release(lease, strict=True)

    def test_locked_should_release_on_exception(self):
        with self.assertRaises(RuntimeError):
            with self.manager.locked(lock_key('a'), ttl=10):
                self.assertIsNotNone(self.service.holder(lock_key('a')))
                raise RuntimeError('boom')

        self.assertIsNone(self.service.holder(lock_key('a')))

    def test_waiter_should_get_lease_after_release(self):
        manager = LockManager(self.service, retry_count=100,
                              retry_delay=0.01, retry_jitter=0)
        lease = manager.acquire(lock_key('a'), ttl=10)

        waiter = gevent.spawn(manager.acquire, lock_key('a'), 10)
        gevent.sleep(0.05)
        self.assertFalse(waiter.ready())

        manager.release(lease)
        second = waiter.get(timeout=5)
        self.assertEqual(second.key, lock_key('a'))
        self.assertGreater(second.fencing_token, lease.fencing_token)
