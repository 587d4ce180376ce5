"""
Promotion records

A PromotionRequest moves governance artifacts from a lower-tier
environment to a higher-tier one through an explicit state machine::

    Draft -> Previewed -> Applied -> RolledBack
                  \\-> Failed

Previewed may be re-entered (re-preview) any number of times.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field

from govcore.entity import Entity, EntityType, utcnow


class PromotionStatus(str, Enum):
    DRAFT = "Draft"
    PREVIEWED = "Previewed"
    APPLIED = "Applied"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"


ALLOWED_TRANSITIONS: dict[PromotionStatus, frozenset[PromotionStatus]] = {
    PromotionStatus.DRAFT: frozenset({PromotionStatus.PREVIEWED}),
    PromotionStatus.PREVIEWED: frozenset({
        PromotionStatus.PREVIEWED,
        PromotionStatus.APPLIED,
        PromotionStatus.FAILED,
    }),
    PromotionStatus.APPLIED: frozenset({PromotionStatus.ROLLED_BACK}),
    PromotionStatus.ROLLED_BACK: frozenset(),
    PromotionStatus.FAILED: frozenset(),
}

PROMOTABLE_TYPES = frozenset({
    EntityType.POLICY_DEFINITION,
    EntityType.POLICY_SET,
    EntityType.ASSIGNMENT,
})


class ChangeKind(str, Enum):
    NEW = "New"
    CHANGED = "Changed"
    UNCHANGED = "Unchanged"


class EntityRef(BaseModel):
    entity_type: EntityType
    entity_id: str


class DiffEntry(BaseModel):
    """Comparison of one selected entity with its counterpart at the target.

    Attributes:
        target_id: Existing counterpart id, or the id the counterpart will
            get when the entry is ``New``.
        before: Content of the existing counterpart (``None`` when new).
        after: Content the counterpart will have after apply.
        source_revision: Revision of the source entity that was compared.
        target_revision: Revision of the counterpart (0 when new).
        dependency: The entity was not selected but is a source catalog
            entry a selected entity uses.
    """

    entity_type: EntityType
    source_id: str
    name: str
    target_id: str
    change: ChangeKind
    changed_fields: list[str] = Field(default_factory=list)
    before: Optional[dict[str, Any]] = None
    after: dict[str, Any]
    source_revision: int
    target_revision: int = 0
    dependency: bool = False


class ImpactLine(BaseModel):
    """How one assignment shows up in a resource's effective policy set."""

    assignment_id: str
    assignment_name: str
    policy_key: str
    enforcement_mode: str
    effective: bool
    suppressed: bool


class ImpactItem(BaseModel):
    """A resource whose effective policy set would change."""

    resource: str
    before: list[ImpactLine] = Field(default_factory=list)
    after: list[ImpactLine] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    changed: list[str] = Field(default_factory=list)


class StatusTransition(BaseModel):
    status: PromotionStatus
    at: datetime = Field(default_factory=utcnow)
    actor: str
    note: Optional[str] = None


class AppliedChange(BaseModel):
    """Exact before/after images captured when a change was applied."""

    entity_type: EntityType
    entity_id: str
    change: ChangeKind
    before: Optional[dict[str, Any]] = None
    after: dict[str, Any]


class PromotionRequest(Entity):
    """
    Record of one promotion between two environments.

    The selected entities never change after the request is drafted; the
    diff, impact and digest are replaced by each preview.
    """

    entity_type: ClassVar[EntityType] = EntityType.PROMOTION_REQUEST
    id_prefix: ClassVar[str] = "prm"

    source_environment_id: str
    target_environment_id: str
    entities: list[EntityRef] = Field(..., min_length=1)
    status: PromotionStatus = PromotionStatus.DRAFT

    diff: list[DiffEntry] = Field(default_factory=list)
    preview_digest: Optional[str] = None
    impact: list[ImpactItem] = Field(default_factory=list)

    applied_changes: list[AppliedChange] = Field(default_factory=list)
    transitions: list[StatusTransition] = Field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def can_transition(self, status: PromotionStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def timestamp_of(self, status: PromotionStatus) -> Optional[datetime]:
        """When the request last entered *status*."""
        for transition in reversed(self.transitions):
            if transition.status == status:
                return transition.at
        return None
