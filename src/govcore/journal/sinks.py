"""
Journal Sinks

Durable destinations for change records. A sink's ``write`` must not
return until the batch would survive a process crash; the store only
publishes a mutation after ``write`` returns.
"""

from abc import ABC, abstractmethod
from pathlib import Path
import logging
import os

from govcore.exceptions import JournalError
from govcore.journal.records import ChangeRecord

logger = logging.getLogger(__name__)


class JournalSink(ABC):
    """Abstract journal sink."""

    @abstractmethod
    def write(self, records: list[ChangeRecord]) -> None:
        """Persist a batch of records, all or nothing."""

    @abstractmethod
    def load(self) -> list[ChangeRecord]:
        """Return every persisted record in sequence order."""


class MemoryJournalSink(JournalSink):
    """
    In-memory sink.

    Data is lost on restart. Suitable for development and testing only.
    """

    def __init__(self) -> None:
        self._records: list[ChangeRecord] = []

    def write(self, records: list[ChangeRecord]) -> None:
        self._records.extend(records)

    def load(self) -> list[ChangeRecord]:
        return list(self._records)


class JsonlJournalSink(JournalSink):
    """
    Append-only JSON-lines file.

    Each batch is written with a single ``write`` call, flushed and
    (optionally) fsynced. The file is never rewritten in place.
    """

    def __init__(self, path: str | Path, fsync: bool = True):
        self._path = Path(path)
        self._fsync = fsync

    @property
    def path(self) -> Path:
        return self._path

    def write(self, records: list[ChangeRecord]) -> None:
        payload = "".join(r.model_dump_json() + "\n" for r in records)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())
        except OSError as exc:
            raise JournalError(f"Could not append to journal {self._path}: {exc}") from exc
        logger.debug("Appended %d records to %s", len(records), self._path)

    def load(self) -> list[ChangeRecord]:
        if not self._path.exists():
            return []
        records = []
        with open(self._path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(ChangeRecord.model_validate_json(line))
                except ValueError as exc:
                    raise JournalError(
                        f"Corrupt journal line {line_no} in {self._path}: {exc}"
                    ) from exc
        logger.debug("Loaded %d records from %s", len(records), self._path)
        return records
