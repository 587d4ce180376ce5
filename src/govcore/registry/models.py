"""Registry entities: environments and management-group placements."""

from typing import ClassVar, Optional

from pydantic import Field, field_validator, model_validator

from govcore.entity import Entity, EntityType
from govcore.registry.scope import ScopeLevel, canonical_scope, parse_scope


class Environment(Entity):
    """
    A named, tiered grouping of scopes.

    Attributes:
        name: Unique display name (e.g. ``Dev``).
        tier: Promotion order; changes flow from lower to higher tiers.
        scopes: Canonical scope ids registered to this environment.
        description: Free text.
    """

    entity_type: ClassVar[EntityType] = EntityType.ENVIRONMENT
    id_prefix: ClassVar[str] = "env"

    name: str = Field(..., min_length=1, max_length=128)
    tier: int
    scopes: list[str] = Field(default_factory=list)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Environment name must not be blank")
        return value

    @field_validator("scopes")
    @classmethod
    def _canonical_scopes(cls, value: list[str]) -> list[str]:
        scopes = [canonical_scope(s) for s in value]
        if len(set(scopes)) != len(scopes):
            raise ValueError("Environment lists the same scope twice")
        return scopes


class ScopePlacement(Entity):
    """
    Records that a subscription or management group sits under a
    management group. The entity id is the child scope id.
    """

    entity_type: ClassVar[EntityType] = EntityType.SCOPE_PLACEMENT
    id_prefix: ClassVar[str] = "place"

    parent: str

    @model_validator(mode="after")
    def _check_levels(self) -> "ScopePlacement":
        child = parse_scope(self.id)
        parent = parse_scope(self.parent)
        if child.id != self.id:
            raise ValueError("Placement id must be a canonical scope id")
        if child.level not in (ScopeLevel.SUBSCRIPTION, ScopeLevel.MANAGEMENT_GROUP):
            raise ValueError("Only subscriptions and management groups can be placed")
        if parent.level != ScopeLevel.MANAGEMENT_GROUP:
            raise ValueError("Placement parent must be a management group")
        if parent.id == child.id:
            raise ValueError("A management group cannot contain itself")
        return self

    @field_validator("parent")
    @classmethod
    def _canonical_parent(cls, value: str) -> str:
        return canonical_scope(value)
