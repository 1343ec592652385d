"""Distributed leases guarding files against concurrent modification."""

# Reexport under shorter path.
from filewarden.locks.lock_manager import Lease, LockManager, LockService, lock_key
