"""
Assignment and exemption entities.

Both bind a catalog entry (definition or set) to exactly one target,
which is either an environment or a raw scope.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from govcore.entity import Entity, EntityType, ensure_utc
from govcore.registry.scope import canonical_scope


class EnforcementMode(str, Enum):
    """``Audit`` reports what ``Enforce`` would block."""

    AUDIT = "Audit"
    ENFORCE = "Enforce"


class ExemptionCategory(str, Enum):
    WAIVER = "Waiver"
    MITIGATED = "Mitigated"


class PolicyRef(BaseModel):
    """Reference to exactly one catalog entry."""

    definition_id: Optional[str] = None
    set_id: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "PolicyRef":
        if (self.definition_id is None) == (self.set_id is None):
            raise ValueError("Reference exactly one of definition_id or set_id")
        return self

    @property
    def key(self) -> str:
        """Stable key used to group bindings of the same policy."""
        if self.definition_id is not None:
            return f"definition:{self.definition_id}"
        return f"set:{self.set_id}"

    @property
    def entity_id(self) -> str:
        return self.definition_id or self.set_id or ""

    @property
    def entity_type(self) -> EntityType:
        if self.definition_id is not None:
            return EntityType.POLICY_DEFINITION
        return EntityType.POLICY_SET


class Target(BaseModel):
    """An environment or a scope (a single resource is a scope too)."""

    environment_id: Optional[str] = None
    scope: Optional[str] = None

    @field_validator("scope")
    @classmethod
    def _canonical(cls, value: Optional[str]) -> Optional[str]:
        return canonical_scope(value) if value is not None else None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Target":
        if (self.environment_id is None) == (self.scope is None):
            raise ValueError("Target exactly one of environment_id or scope")
        return self

    @property
    def key(self) -> str:
        if self.environment_id is not None:
            return f"environment:{self.environment_id}"
        return f"scope:{self.scope}"

    def __str__(self) -> str:
        return self.environment_id or self.scope or ""


class Assignment(Entity):
    """
    Binding of a definition or set to a target.

    Attributes:
        name: Name, unique per target.
        policy: Assigned definition or set.
        target: Environment or scope the assignment applies to.
        parameters: Values for the assigned entry's parameters.
        enforcement_mode: ``Audit`` or ``Enforce``.
        promoted_from: Assignment this one was promoted from.
    """

    entity_type: ClassVar[EntityType] = EntityType.ASSIGNMENT
    id_prefix: ClassVar[str] = "asg"

    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = None
    policy: PolicyRef
    target: Target
    parameters: dict[str, Any] = Field(default_factory=dict)
    enforcement_mode: EnforcementMode = EnforcementMode.ENFORCE

    promoted_from: Optional[str] = None
    provider_id: Optional[str] = None


class Exemption(Entity):
    """
    Time-bounded suppression of a policy for a target.

    ``member_reference_ids`` narrows a set exemption to some of the set's
    members; empty means the whole set.
    """

    entity_type: ClassVar[EntityType] = EntityType.EXEMPTION
    id_prefix: ClassVar[str] = "exm"

    name: str = Field(..., min_length=1, max_length=256)
    policy: PolicyRef
    member_reference_ids: list[str] = Field(default_factory=list)
    target: Target
    category: ExemptionCategory
    justification: str = Field(..., min_length=1)
    expires_at: Optional[datetime] = None
    no_expiry: bool = False

    provider_id: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @field_validator("justification")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Justification must not be blank")
        return value

    @model_validator(mode="after")
    def _expiry(self) -> "Exemption":
        if self.no_expiry and self.expires_at is not None:
            raise ValueError("Set either expires_at or no_expiry, not both")
        if not self.no_expiry and self.expires_at is None:
            raise ValueError("An exemption needs expires_at or an explicit no_expiry")
        if self.member_reference_ids and self.policy.set_id is None:
            raise ValueError("member_reference_ids only applies to policy set exemptions")
        return self

    def is_active(self, at: datetime) -> bool:
        """Unexpired at *at*."""
        if self.no_expiry:
            return True
        return self.expires_at is not None and self.expires_at > ensure_utc(at)
