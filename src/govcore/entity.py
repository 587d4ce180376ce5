"""
Entity base

Common shape of every persisted governance entity: a stable id, a
revision counter bumped on every write, and audit timestamps.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from govcore.exceptions import ValidationError


class EntityType(str, Enum):
    """Independently keyed collections held by the store."""

    ENVIRONMENT = "environment"
    SCOPE_PLACEMENT = "scope_placement"
    POLICY_DEFINITION = "policy_definition"
    POLICY_SET = "policy_set"
    ASSIGNMENT = "assignment"
    EXEMPTION = "exemption"
    PROMOTION_REQUEST = "promotion_request"


# Fields that describe where/when an entity was written rather than what it says.
BOOKKEEPING_FIELDS = frozenset({
    "id",
    "revision",
    "created_at",
    "created_by",
    "updated_at",
    "promoted_from",
    "provider_id",
    "origin_environment_id",
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so every comparison is well defined."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


E = TypeVar("E", bound="Entity")


class Entity(BaseModel):
    """
    Base class for stored entities.

    Entities are frozen: the store shares them between point-in-time
    snapshots, so a change is always a new instance built with ``evolve``.
    """

    model_config = ConfigDict(frozen=True)

    entity_type: ClassVar[EntityType]
    id_prefix: ClassVar[str] = "ent"

    id: str = ""
    revision: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = "system"
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _assign_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = {**data, "id": new_id(cls.id_prefix)}
        return data

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def evolve(self: E, **changes: Any) -> E:
        """Return a validated copy with *changes* applied."""
        data = self.model_dump()
        data.update(changes)
        try:
            return type(self).model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {type(self).__name__}: {describe(exc)}") from exc

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe dump used for journal before/after images."""
        return self.model_dump(mode="json")

    def content(self) -> dict[str, Any]:
        """The entity's substance, without bookkeeping fields."""
        return {
            k: v for k, v in self.model_dump(mode="json").items()
            if k not in BOOKKEEPING_FIELDS
        }


M = TypeVar("M", bound=BaseModel)


def build(model: type[M], **data: Any) -> M:
    """Construct *model*, reporting bad input as a govcore ValidationError."""
    try:
        return model(**data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {model.__name__}: {describe(exc)}") from exc


def describe(exc: PydanticValidationError) -> str:
    """One-line summary of a pydantic validation error."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "value"
        parts.append(f"{location}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)
