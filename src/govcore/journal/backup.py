"""
Backups

A backup is a full snapshot of every collection plus the journal up to
the snapshot point. Restore loads the snapshot and replays later journal
records forward, optionally stopping at a point in time.

Usage:
    backup = take_backup(store)
    write_backup(backup, "governance-backup.json")

    restored = restore(read_backup("governance-backup.json"),
                       journal=later_records, until=incident_time)
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
import json
import logging

from pydantic import BaseModel, Field

from govcore.config import GovernanceConfig
from govcore.entity import EntityType, ensure_utc, new_id, utcnow
from govcore.exceptions import JournalError
from govcore.journal.journal import Journal
from govcore.journal.records import ChangeRecord
from govcore.store.state import StoreState, entity_from_snapshot
from govcore.store.store import GovernanceStore, replay_onto

logger = logging.getLogger(__name__)


class Backup(BaseModel):
    """Point-in-time snapshot of a store.

    Attributes:
        sequence: Journal sequence the snapshot reflects.
        head_hash: Hash of the journal record at ``sequence``.
        collections: Entity images keyed by entity type value.
        journal: Every record up to and including ``sequence``.
    """

    backup_id: str = Field(default_factory=lambda: new_id("bak"))
    taken_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0
    head_hash: str = ""
    collections: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    journal: list[ChangeRecord] = Field(default_factory=list)


def take_backup(store: GovernanceStore) -> Backup:
    """Snapshot every collection and the journal at one consistent point."""
    state = store.snapshot()
    records = [r for r in store.journal.all() if r.sequence <= state.sequence]
    backup = Backup(
        taken_at=store.now(),
        sequence=state.sequence,
        head_hash=records[-1].record_hash if records else "",
        collections=state.snapshot_collections(),
        journal=records,
    )
    logger.info(
        "Took backup %s at sequence %d (%d records)",
        backup.backup_id, backup.sequence, len(records),
    )
    return backup


def write_backup(backup: Backup, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(backup.model_dump_json(indent=2), encoding="utf-8")
    return path


def read_backup(path: str | Path) -> Backup:
    path = Path(path)
    try:
        return Backup.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise JournalError(f"Could not read backup {path}: {exc}") from exc


def state_from_backup(backup: Backup) -> StoreState:
    """Materialise the snapshot part of a backup."""
    collections = {
        t: {
            image["id"]: entity_from_snapshot(t, image)
            for image in backup.collections.get(t.value, [])
        }
        for t in EntityType
    }
    sequences: dict[tuple[EntityType, str], int] = {}
    for record in backup.journal:
        sequences[(record.entity_type, record.entity_id)] = record.sequence
    return StoreState(collections, sequences, backup.sequence)


def verify_backup(backup: Backup) -> tuple[bool, Optional[str]]:
    """Check the journal chain and that replaying it yields the snapshot."""
    journal = Journal(records=backup.journal)
    ok, error = journal.verify_chain()
    if not ok:
        return False, error
    if journal.last_sequence != backup.sequence:
        return False, f"Journal ends at {journal.last_sequence}, snapshot is at {backup.sequence}"
    replayed = replay_onto(StoreState(), backup.journal)
    if replayed.snapshot_collections() != state_from_backup(backup).snapshot_collections():
        return False, "Replaying the journal does not reproduce the snapshot"
    return True, None


def restore(
    backup: Backup,
    journal: Iterable[ChangeRecord] = (),
    until: Optional[datetime] = None,
    config: Optional[GovernanceConfig] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> GovernanceStore:
    """Rebuild a store from *backup* plus later *journal* records.

    Args:
        backup: Snapshot to start from.
        journal: Records written after the snapshot (earlier ones are
            ignored, so the full live journal can be passed).
        until: Stop before the first record later than this instant.
        config: Configuration for the restored store.
        clock: Clock for the restored store.
    """
    until = ensure_utc(until)
    tail = []
    for record in sorted(journal, key=lambda r: r.sequence):
        if record.sequence <= backup.sequence:
            continue
        if until is not None and record.timestamp > until:
            break
        if record.sequence != backup.sequence + len(tail) + 1:
            raise JournalError(
                f"Journal gap: expected sequence {backup.sequence + len(tail) + 1}, "
                f"got {record.sequence}"
            )
        tail.append(record)

    state = replay_onto(state_from_backup(backup), tail)
    restored_journal = Journal(records=[*backup.journal, *tail])
    ok, error = restored_journal.verify_chain()
    if not ok:
        raise JournalError(f"Restored journal chain is broken: {error}")
    logger.info(
        "Restored backup %s to sequence %d (%d records replayed)",
        backup.backup_id, state.sequence, len(tail),
    )
    return GovernanceStore.from_state(state, restored_journal, config=config, clock=clock)
