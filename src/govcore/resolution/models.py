"""
Resolution results

What applies to a resource, why, and what could not be determined.
Nothing is hidden: overridden and suppressed entries stay in the result
with the reason they do not take effect.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from govcore.assignments.models import EnforcementMode
from govcore.catalog.models import PolicyEffect
from govcore.entity import EntityType


class GapKind(str, Enum):
    """Why part of a resolution could not be determined."""

    UNPARSEABLE_SCOPE = "unparseable_scope"
    INVALID_HIERARCHY = "invalid_hierarchy"
    NO_ENVIRONMENT = "no_environment"
    NO_ASSIGNMENTS = "no_assignments"
    DANGLING_REFERENCE = "dangling_reference"
    INVALID_PARAMETERS = "invalid_parameters"


class Gap(BaseModel):
    """A governance gap: a finding, never an exception."""

    kind: GapKind
    message: str
    entity_id: Optional[str] = None


class Suppression(BaseModel):
    """The exemption that suppresses an entry or member."""

    exemption_id: str
    exemption_name: str
    category: str
    justification: str
    expires_at: Optional[datetime] = None


class EffectiveMember(BaseModel):
    """One member of an assigned policy set."""

    reference_id: str
    definition_id: str
    definition_name: Optional[str] = None
    effect: Optional[PolicyEffect] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    reporting_only: bool = False
    suppressed: bool = False
    suppression: Optional[Suppression] = None


class EffectiveAssignment(BaseModel):
    """
    One candidate assignment for a resource.

    Attributes:
        effective: The winner for its policy (most specific target).
        overridden_by: Id of the winning assignment when this one lost.
        specificity: ``(level rank, depth)``; environment targets are
            ``(0, 0)``.
        reporting_only: ``Audit`` mode downgraded an enforcing effect.
        suppressed: An unexpired exemption suppresses the whole entry.
    """

    assignment_id: str
    assignment_name: str
    policy_key: str
    policy_type: EntityType
    policy_id: str
    policy_name: str
    policy_version: int
    target: str
    specificity: tuple[int, int]
    created_at: datetime
    enforcement_mode: EnforcementMode
    effect: Optional[PolicyEffect] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    members: list[EffectiveMember] = Field(default_factory=list)

    effective: bool = False
    overridden_by: Optional[str] = None
    reporting_only: bool = False
    suppressed: bool = False
    suppression: Optional[Suppression] = None


class EffectivePolicySet(BaseModel):
    """Everything that applies to one resource at one point in time."""

    resource: str
    environment_id: Optional[str] = None
    environment_name: Optional[str] = None
    matched_scope: Optional[str] = None
    evaluated_at: datetime
    state_sequence: int = 0
    entries: list[EffectiveAssignment] = Field(default_factory=list)
    gaps: list[Gap] = Field(default_factory=list)

    @property
    def effective(self) -> list[EffectiveAssignment]:
        """Winning entries that are not suppressed."""
        return [e for e in self.entries if e.effective and not e.suppressed]

    @property
    def overridden(self) -> list[EffectiveAssignment]:
        return [e for e in self.entries if not e.effective]

    @property
    def suppressed(self) -> list[EffectiveAssignment]:
        return [e for e in self.entries if e.suppressed]

    def entry(self, assignment_id: str) -> Optional[EffectiveAssignment]:
        for entry in self.entries:
            if entry.assignment_id == assignment_id:
                return entry
        return None

    def winner(self, policy_key: str) -> Optional[EffectiveAssignment]:
        for entry in self.entries:
            if entry.policy_key == policy_key and entry.effective:
                return entry
        return None

    def signature(self) -> str:
        """Digest of the result, ignoring when it was computed."""
        data = self.model_dump(mode="json", exclude={"evaluated_at", "state_sequence"})
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()
