"""
Catalog entities

Policy definitions and policy sets (initiatives). Rule payloads are
opaque documents: the catalog checks their shape, never their meaning.
"""

import json
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from govcore.entity import Entity, EntityType


class PolicyOrigin(str, Enum):
    """Who owns a catalog entry."""

    CUSTOM = "custom"
    PROVIDER = "provider"


class PolicyEffect(str, Enum):
    """Effect a policy has on a non-compliant resource."""

    DENY = "deny"
    AUDIT = "audit"
    APPEND = "append"
    MODIFY = "modify"
    AUDIT_IF_NOT_EXISTS = "auditIfNotExists"
    DEPLOY_IF_NOT_EXISTS = "deployIfNotExists"
    DENY_ACTION = "denyAction"
    DISABLED = "disabled"

    @property
    def enforcing(self) -> bool:
        """Whether the effect changes or blocks a request rather than reporting."""
        return self in ENFORCING_EFFECTS


ENFORCING_EFFECTS = frozenset({
    PolicyEffect.DENY,
    PolicyEffect.APPEND,
    PolicyEffect.MODIFY,
    PolicyEffect.DEPLOY_IF_NOT_EXISTS,
    PolicyEffect.DENY_ACTION,
})


class ParameterType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ParameterSpec(BaseModel):
    """Declared parameter of a definition or set."""

    type: ParameterType = ParameterType.STRING
    description: Optional[str] = None
    default: Any = None
    allowed_values: Optional[list[Any]] = None

    @property
    def required(self) -> bool:
        return self.default is None


def _check_json_document(value: Any, what: str) -> Any:
    try:
        json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{what} must be JSON-serialisable: {exc}") from exc
    return value


class PolicyDefinition(Entity):
    """
    A single policy.

    Custom definitions are owned and versioned here; provider definitions
    are read-only mirrors of an external catalog.

    Attributes:
        name: Stable name, unique per origin environment.
        effect: Effect applied when the rule matches.
        rule: Opaque rule document.
        version: Content version, bumped whenever the substance changes.
        origin_environment_id: Environment the definition was authored in.
        promoted_from: Definition this one was promoted from.
        provider_id: Identifier assigned by the cloud provider.
    """

    entity_type: ClassVar[EntityType] = EntityType.POLICY_DEFINITION
    id_prefix: ClassVar[str] = "pd"

    name: str = Field(..., min_length=1, max_length=256)
    display_name: Optional[str] = None
    description: Optional[str] = None
    origin: PolicyOrigin = PolicyOrigin.CUSTOM
    effect: PolicyEffect
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    rule: dict[str, Any]
    version: int = Field(default=1, ge=1)

    origin_environment_id: Optional[str] = None
    promoted_from: Optional[str] = None
    provider_id: Optional[str] = None

    @field_validator("rule")
    @classmethod
    def _rule_shape(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value:
            raise ValueError("Rule payload must be a non-empty mapping")
        return _check_json_document(value, "Rule payload")

    @model_validator(mode="after")
    def _check_defaults(self) -> "PolicyDefinition":
        for name, param in self.parameters.items():
            if param.default is not None and param.allowed_values is not None:
                if param.default not in param.allowed_values:
                    raise ValueError(f"Default for parameter '{name}' is not an allowed value")
        return self


class PolicySetMember(BaseModel):
    """One definition inside a policy set, with its bound parameters."""

    reference_id: str = Field(..., min_length=1)
    definition_id: str
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters")
    @classmethod
    def _json(cls, value: dict[str, Any]) -> dict[str, Any]:
        return _check_json_document(value, "Member parameters")


class PolicySet(Entity):
    """
    An ordered collection of definitions assigned as one unit.
    """

    entity_type: ClassVar[EntityType] = EntityType.POLICY_SET
    id_prefix: ClassVar[str] = "ps"

    name: str = Field(..., min_length=1, max_length=256)
    display_name: Optional[str] = None
    description: Optional[str] = None
    origin: PolicyOrigin = PolicyOrigin.CUSTOM
    members: list[PolicySetMember] = Field(..., min_length=1)
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    version: int = Field(default=1, ge=1)

    origin_environment_id: Optional[str] = None
    promoted_from: Optional[str] = None
    provider_id: Optional[str] = None

    @field_validator("members")
    @classmethod
    def _unique_references(cls, value: list[PolicySetMember]) -> list[PolicySetMember]:
        refs = [m.reference_id for m in value]
        if len(set(refs)) != len(refs):
            raise ValueError("Member reference ids must be unique within a set")
        return value

    def member(self, reference_id: str) -> Optional[PolicySetMember]:
        for m in self.members:
            if m.reference_id == reference_id:
                return m
        return None

    def definition_ids(self) -> list[str]:
        return [m.definition_id for m in self.members]
