"""
Change Journal

Append-only, hash-chained record of every mutation. The journal is the
single source of truth for backups and point-in-time recovery; it is
never compacted or rewritten.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional
import logging
import threading

from govcore.config import GovernanceConfig
from govcore.entity import EntityType, ensure_utc
from govcore.exceptions import JournalError
from govcore.journal.records import ChangeRecord
from govcore.journal.sinks import JournalSink, JsonlJournalSink, MemoryJournalSink

logger = logging.getLogger(__name__)


class Journal:
    """
    Complete change journal.

    Features:
    - Write-ahead: a batch is durable in the sink before ``append_batch``
      returns
    - Tamper-evident hash chain, verifiable offline
    - Indexed querying by entity
    """

    def __init__(self, sink: Optional[JournalSink] = None, records: Iterable[ChangeRecord] = ()):
        self._sink = sink or MemoryJournalSink()
        self._records: list[ChangeRecord] = []
        self._by_entity: dict[str, list[int]] = {}
        self._lock = threading.Lock()
        for record in records:
            self._index(record)

    @classmethod
    def open(cls, sink: JournalSink) -> "Journal":
        """Open a journal over a sink, loading what it already holds."""
        journal = cls(sink, records=sink.load())
        ok, error = journal.verify_chain()
        if not ok:
            raise JournalError(f"Journal chain is broken: {error}")
        return journal

    @classmethod
    def from_config(cls, config: GovernanceConfig) -> "Journal":
        if config.journal_backend == "jsonl":
            return cls.open(JsonlJournalSink(config.journal_path, fsync=config.journal_fsync))
        return cls(MemoryJournalSink())

    def __len__(self) -> int:
        return len(self._records)

    @property
    def last_sequence(self) -> int:
        return self._records[-1].sequence if self._records else 0

    @property
    def head_hash(self) -> str:
        return self._records[-1].record_hash if self._records else ""

    # ── Write operations ──────────────────────────────────────

    def append(self, record: ChangeRecord) -> ChangeRecord:
        """Append a single record. See :meth:`append_batch`."""
        return self.append_batch([record])[0]

    def append_batch(self, records: list[ChangeRecord]) -> list[ChangeRecord]:
        """Sequence, chain and durably persist *records* as one unit.

        Returns:
            The sealed records, with ``sequence``, ``previous_hash`` and
            ``record_hash`` filled in.

        Raises:
            JournalError: if the sink rejects the batch; nothing is
                appended in that case.
        """
        with self._lock:
            sealed = []
            sequence = self.last_sequence
            previous = self.head_hash
            for record in records:
                sequence += 1
                record = record.model_copy(update={"sequence": sequence, "previous_hash": previous})
                record = record.model_copy(update={"record_hash": record.compute_hash()})
                sealed.append(record)
                previous = record.record_hash
            try:
                self._sink.write(sealed)
            except JournalError:
                raise
            except Exception as exc:
                raise JournalError(f"Journal sink rejected batch: {exc}") from exc
            for record in sealed:
                self._index(record)
        return sealed

    def _index(self, record: ChangeRecord) -> None:
        position = len(self._records)
        self._records.append(record)
        self._by_entity.setdefault(record.entity_id, []).append(position)

    # ── Read operations ───────────────────────────────────────

    def query(
        self,
        entity_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        entity_type: Optional[EntityType] = None,
    ) -> list[ChangeRecord]:
        """Records matching the filters, in sequence order.

        Args:
            entity_id: Only records about this entity.
            start: Inclusive lower bound on ``timestamp``.
            end: Inclusive upper bound on ``timestamp``.
            entity_type: Only records about this kind of entity.
        """
        start, end = ensure_utc(start), ensure_utc(end)
        with self._lock:
            if entity_id is not None:
                candidates = [self._records[i] for i in self._by_entity.get(entity_id, [])]
            else:
                candidates = list(self._records)
        return [
            r for r in candidates
            if (start is None or r.timestamp >= start)
            and (end is None or r.timestamp <= end)
            and (entity_type is None or r.entity_type == entity_type)
        ]

    def records_since(self, sequence: int) -> list[ChangeRecord]:
        """Records with a sequence strictly greater than *sequence*."""
        with self._lock:
            return [r for r in self._records if r.sequence > sequence]

    def all(self) -> list[ChangeRecord]:
        with self._lock:
            return list(self._records)

    def verify_chain(self) -> tuple[bool, Optional[str]]:
        """Verify every record's hash, its link, and gap-free sequencing.

        Returns:
            A tuple of ``(is_valid, error_message)``.
        """
        previous_hash = ""
        previous_sequence: Optional[int] = None
        for i, record in enumerate(self._records):
            if not record.verify_hash():
                return False, f"Record {i} ({record.record_id}) hash mismatch"
            if i and record.previous_hash != previous_hash:
                return False, f"Record {i} ({record.record_id}) chain broken"
            if previous_sequence is not None and record.sequence != previous_sequence + 1:
                return False, f"Record {i} ({record.record_id}) sequence gap"
            previous_hash = record.record_hash
            previous_sequence = record.sequence
        return True, None
