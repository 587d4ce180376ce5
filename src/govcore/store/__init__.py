"""
Governance store: one explicitly constructed data store, transactional
writes and per-environment locks.
"""

from .locks import PARTITION, UNPARTITIONED, LockManager, ReadWriteLock, environment_key
from .state import StoreState, entity_from_snapshot, entity_models
from .store import GovernanceStore, Transaction, replay_onto

__all__ = [
    "GovernanceStore",
    "Transaction",
    "StoreState",
    "entity_models",
    "entity_from_snapshot",
    "replay_onto",
    "LockManager",
    "ReadWriteLock",
    "environment_key",
    "PARTITION",
    "UNPARTITIONED",
]
