"""
Change Records

Append-only audit entries, one per successful mutation, chained by hash
so that any rewrite of history is detectable offline.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import hashlib
import json
import uuid

from pydantic import BaseModel, Field, field_validator

from govcore.entity import EntityType, ensure_utc, utcnow


class ChangeOperation(str, Enum):
    """Kind of mutation a record describes."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"


class ChangeRecord(BaseModel):
    """
    Single journal entry.

    Every record is:
    - Sequenced (store-wide, gap-free)
    - Attributed to an actor
    - Chained to the previous record via hash

    ``before``/``after`` are full JSON snapshots of the entity; ``after`` is
    ``None`` for deletions and ``before`` is ``None`` for creations.
    """

    record_id: str = Field(default_factory=lambda: f"chg_{uuid.uuid4().hex[:16]}")
    sequence: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str
    operation: ChangeOperation
    entity_type: EntityType
    entity_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None

    # All records written by one transaction share a batch id.
    batch_id: str = ""

    previous_hash: str = ""
    record_hash: str = ""

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def compute_hash(self) -> str:
        """SHA-256 over the record's canonical fields."""
        data = {
            "record_id": self.record_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "operation": self.operation.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "batch_id": self.batch_id,
            "previous_hash": self.previous_hash,
        }
        canonical = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def verify_hash(self) -> bool:
        return self.record_hash == self.compute_hash()
