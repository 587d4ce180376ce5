"""
Governance Store

The single logical data store shared by every component. It is
constructed explicitly and handed to each component; nothing in govcore
reaches for a global instance.

Writes go through :meth:`GovernanceStore.transaction`:

1. acquire the requested per-environment locks (sorted, bounded wait);
2. stage writes on a fork of the current state;
3. on success, journal the batch (write-ahead, durable) and only then
   publish the new state; on any exception, discard the fork.

Readers use :meth:`GovernanceStore.snapshot` (lock-free, point in time)
or :meth:`GovernanceStore.read` when they also need to hold off writers.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional
import logging
import threading

from govcore.config import GovernanceConfig
from govcore.entity import Entity, EntityType, new_id, utcnow
from govcore.exceptions import ConcurrentModification, JournalError, ValidationError
from govcore.journal.journal import Journal
from govcore.journal.records import ChangeOperation, ChangeRecord
from govcore.store.locks import PARTITION, LockManager
from govcore.store.state import StoreState, entity_from_snapshot

logger = logging.getLogger(__name__)


class Transaction:
    """
    Staged writes of one logical mutation batch.

    ``view`` reflects the base state plus everything staged so far, so
    validation inside the batch sees earlier writes of the same batch.
    Each staged write becomes exactly one ChangeRecord at commit.
    """

    def __init__(self, store: "GovernanceStore", actor: str, base: StoreState):
        self.id = new_id("txn")
        self.actor = actor
        self.base = base
        self.view = base.fork()
        self.now = store.now()
        self._writes: list[tuple[ChangeOperation, EntityType, str, Optional[Entity], Optional[Entity]]] = []

    @property
    def writes(self) -> int:
        return len(self._writes)

    def create(self, entity: Entity, keep_timestamps: bool = False) -> Entity:
        """Stage a new entity at revision 1."""
        entity_type = entity.entity_type
        if self.view.get(entity_type, entity.id) is not None:
            raise ValidationError(f"{entity_type.value} already exists: {entity.id}")
        changes = {"revision": 1}
        if not keep_timestamps:
            changes.update(created_at=self.now, updated_at=self.now, created_by=self.actor)
        entity = entity.evolve(**changes)
        self._stage(ChangeOperation.CREATE, entity_type, entity.id, None, entity)
        return entity

    def update(self, entity: Entity) -> Entity:
        """Stage a new revision of an existing entity."""
        entity_type = entity.entity_type
        current = self.view.require(entity_type, entity.id)
        entity = entity.evolve(
            revision=current.revision + 1,
            created_at=current.created_at,
            created_by=current.created_by,
            updated_at=self.now,
        )
        self._stage(ChangeOperation.UPDATE, entity_type, entity.id, current, entity)
        return entity

    def delete(self, entity_type: EntityType, entity_id: str) -> Entity:
        """Stage removal of an entity."""
        current = self.view.require(entity_type, entity_id)
        self._stage(ChangeOperation.DELETE, entity_type, entity_id, current, None)
        return current

    def restore(self, entity_type: EntityType, entity_id: str, image: Optional[Entity]) -> None:
        """Stage an exact prior image (or absence) of an entity, unmodified."""
        current = self.view.get(entity_type, entity_id)
        if current is None and image is None:
            return
        self._stage(ChangeOperation.RESTORE, entity_type, entity_id, current, image)

    def _stage(self, operation, entity_type, entity_id, before, after) -> None:
        self._writes.append((operation, entity_type, entity_id, before, after))
        self.view.write(entity_type, entity_id, after)

    def records(self) -> list[ChangeRecord]:
        return [
            ChangeRecord(
                timestamp=self.now,
                actor=self.actor,
                operation=operation,
                entity_type=entity_type,
                entity_id=entity_id,
                before=before.snapshot() if before is not None else None,
                after=after.snapshot() if after is not None else None,
                batch_id=self.id,
            )
            for operation, entity_type, entity_id, before, after in self._writes
        ]

    def touched(self) -> set[tuple[EntityType, str]]:
        return {(t, i) for _, t, i, _, _ in self._writes}

    def staged(self) -> list[tuple[EntityType, str, Optional[Entity]]]:
        return [(t, i, after) for _, t, i, _, after in self._writes]


class GovernanceStore:
    """
    Explicitly constructed store instance.

    Args:
        config: Store configuration; defaults to an in-memory journal.
        journal: Journal to write to; built from *config* when omitted.
        clock: Source of "now" (UTC); injectable for tests.
    """

    def __init__(
        self,
        config: Optional[GovernanceConfig] = None,
        journal: Optional[Journal] = None,
        clock: Optional[Callable[[], datetime]] = None,
        state: Optional[StoreState] = None,
    ):
        self.config = config or GovernanceConfig()
        self.journal = journal if journal is not None else Journal.from_config(self.config)
        self._clock = clock or utcnow
        self._locks = LockManager(
            timeout_seconds=self.config.lock_timeout_seconds,
            max_reader_streak=self.config.max_reader_streak,
        )
        self._commit_lock = threading.Lock()
        if state is not None:
            self._state = state
        elif len(self.journal):
            self._state = _replay(StoreState(), self.journal.all())
            logger.info("Rebuilt store from %d journal records", len(self.journal))
        else:
            self._state = StoreState()

    def now(self) -> datetime:
        return self._clock()

    # ── Reads ──────────────────────────────────────────────────────

    def snapshot(self) -> StoreState:
        """The latest published state. Never blocks."""
        return self._state

    @contextmanager
    def read(self, shared: Iterable[str] = ()) -> Iterator[StoreState]:
        """Hold shared locks on *shared* and yield a consistent state."""
        with self._locks.hold(shared=shared):
            yield self._state

    # ── Writes ─────────────────────────────────────────────────────

    @contextmanager
    def transaction(
        self,
        actor: Optional[str] = None,
        exclusive: Iterable[str] = (),
        shared: Iterable[str] = (),
        partition: bool = False,
    ) -> Iterator[Transaction]:
        """Run a batch of writes atomically.

        Args:
            actor: Who is making the change (defaults to config).
            exclusive: Lock keys to hold exclusively.
            shared: Lock keys to hold shared.
            partition: Also hold the partition lock, for changes to which
                scopes belong to which environment.

        The batch commits only if the block exits normally; any exception
        discards every staged write and propagates.
        """
        exclusive = set(exclusive)
        if partition:
            exclusive.add(PARTITION)
        with self._locks.hold(exclusive=exclusive, shared=shared):
            txn = Transaction(self, actor or self.config.default_actor, self._state)
            yield txn
            if txn.writes:
                self._commit(txn)

    def _commit(self, txn: Transaction) -> None:
        with self._commit_lock:
            current = self._state
            for entity_type, entity_id in txn.touched():
                if current.entity_sequence(entity_type, entity_id) != txn.base.entity_sequence(entity_type, entity_id):
                    raise ConcurrentModification(
                        f"{entity_type.value} {entity_id} changed while transaction {txn.id} was open"
                    )
            sealed = self.journal.append_batch(txn.records())
            published = current.fork()
            for record, (entity_type, entity_id, after) in zip(sealed, txn.staged()):
                published.write(entity_type, entity_id, after, record.sequence)
            self._state = published
        logger.debug(
            "Committed %s: %d writes by %s (seq %d-%d)",
            txn.id, len(sealed), txn.actor, sealed[0].sequence, sealed[-1].sequence,
        )

    # ── Recovery ───────────────────────────────────────────────────

    @classmethod
    def from_journal(
        cls,
        records: Iterable[ChangeRecord],
        config: Optional[GovernanceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "GovernanceStore":
        """Rebuild a store by replaying *records* onto an empty state."""
        return cls(config=config, journal=Journal(records=list(records)), clock=clock)

    @classmethod
    def from_state(
        cls,
        state: StoreState,
        journal: Journal,
        config: Optional[GovernanceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "GovernanceStore":
        """Wrap an already materialised state (used by backup restore)."""
        return cls(config=config, journal=journal, clock=clock, state=state)


def replay_onto(state: StoreState, records: Iterable[ChangeRecord]) -> StoreState:
    """Apply *records* to a fork of *state* and return the result."""
    return _replay(state, records)


def _replay(state: StoreState, records: Iterable[ChangeRecord]) -> StoreState:
    forked = state.fork()
    for record in records:
        if record.sequence <= forked.sequence:
            continue
        after = None
        if record.after is not None:
            after = entity_from_snapshot(record.entity_type, record.after)
        elif record.operation not in (ChangeOperation.DELETE, ChangeOperation.RESTORE):
            raise JournalError(f"Record {record.record_id} has no after image")
        forked.write(record.entity_type, record.entity_id, after, record.sequence)
    return forked
