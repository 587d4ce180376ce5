"""
Audit/Backup Journal

Append-only, hash-chained change records. Backups and restore live in
``govcore.journal.backup``.
"""

from .records import ChangeOperation, ChangeRecord
from .journal import Journal
from .sinks import JournalSink, JsonlJournalSink, MemoryJournalSink

__all__ = [
    "ChangeOperation",
    "ChangeRecord",
    "Journal",
    "JournalSink",
    "JsonlJournalSink",
    "MemoryJournalSink",
]
