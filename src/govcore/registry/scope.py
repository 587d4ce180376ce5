"""
Scopes

Parsing and canonicalisation of cloud resource scope identifiers.

A scope names one node of the management hierarchy::

    /providers/Microsoft.Management/managementGroups/{mg}
    /subscriptions/{sub}
    /subscriptions/{sub}/resourceGroups/{rg}
    /subscriptions/{sub}/resourceGroups/{rg}/providers/{ns}/{type}/{name}[/{type}/{name}...]

Identifiers compare case-insensitively, so the canonical form is
lower-cased with no trailing slash.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from govcore.exceptions import ValidationError

_MG_SEGMENTS = ["providers", "microsoft.management", "managementgroups"]


class ScopeLevel(str, Enum):
    """Level of a scope in the management hierarchy."""

    MANAGEMENT_GROUP = "managementGroup"
    SUBSCRIPTION = "subscription"
    RESOURCE_GROUP = "resourceGroup"
    RESOURCE = "resource"


# Environment-level targets rank below every concrete scope.
ENVIRONMENT_RANK = 0

LEVEL_RANK = {
    ScopeLevel.MANAGEMENT_GROUP: 1,
    ScopeLevel.SUBSCRIPTION: 2,
    ScopeLevel.RESOURCE_GROUP: 3,
    ScopeLevel.RESOURCE: 4,
}


@dataclass(frozen=True)
class Scope:
    """A parsed scope.

    Attributes:
        id: Canonical identifier.
        level: Hierarchy level.
        name: Last name segment (management group, subscription, group or
            resource name).
        parent_id: Parent derivable from the identifier itself. ``None`` for
            subscriptions and management groups, whose parents come from
            recorded placements.
    """

    id: str
    level: ScopeLevel
    name: str
    parent_id: Optional[str] = None

    @property
    def subscription(self) -> Optional[str]:
        if self.level == ScopeLevel.MANAGEMENT_GROUP:
            return None
        return self.id.split("/")[2]

    def __str__(self) -> str:
        return self.id


def parse_scope(raw: str) -> Scope:
    """Parse *raw* into a canonical :class:`Scope`.

    Raises:
        ValidationError: if *raw* is not a recognisable scope identifier.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Scope must be a non-empty string")

    text = raw.strip().lower().rstrip("/")
    if not text.startswith("/"):
        raise ValidationError(f"Scope must start with '/': {raw!r}")

    parts = text.split("/")[1:]
    if any(not p for p in parts):
        raise ValidationError(f"Scope has an empty segment: {raw!r}")

    if parts[:3] == _MG_SEGMENTS:
        if len(parts) != 4:
            raise ValidationError(f"Malformed management group scope: {raw!r}")
        return Scope(id=text, level=ScopeLevel.MANAGEMENT_GROUP, name=parts[3])

    if parts[0] != "subscriptions" or len(parts) < 2:
        raise ValidationError(f"Unrecognised scope: {raw!r}")
    if len(parts) == 2:
        return Scope(id=text, level=ScopeLevel.SUBSCRIPTION, name=parts[1])

    if parts[2] != "resourcegroups" or len(parts) < 4:
        raise ValidationError(
            f"Resources must be addressed inside a resource group: {raw!r}"
        )
    subscription_id = "/" + "/".join(parts[:2])
    if len(parts) == 4:
        return Scope(
            id=text,
            level=ScopeLevel.RESOURCE_GROUP,
            name=parts[3],
            parent_id=subscription_id,
        )

    # providers/{ns}/{type}/{name} followed by optional {type}/{name} pairs
    if parts[4] != "providers" or len(parts) < 8 or (len(parts) - 8) % 2:
        raise ValidationError(f"Malformed resource scope: {raw!r}")
    if len(parts) == 8:
        parent = "/" + "/".join(parts[:4])
    else:
        parent = "/" + "/".join(parts[:-2])
    return Scope(id=text, level=ScopeLevel.RESOURCE, name=parts[-1], parent_id=parent)


def canonical_scope(raw: str) -> str:
    """Return the canonical form of a scope identifier."""
    return parse_scope(raw).id


def management_group_scope(name: str) -> str:
    return canonical_scope(f"/providers/Microsoft.Management/managementGroups/{name}")


def subscription_scope(subscription: str) -> str:
    return canonical_scope(f"/subscriptions/{subscription}")


def resource_group_scope(subscription: str, resource_group: str) -> str:
    return canonical_scope(f"/subscriptions/{subscription}/resourceGroups/{resource_group}")


def resource_scope(
    subscription: str,
    resource_group: str,
    name: str,
    namespace: str = "Microsoft.Storage",
    resource_type: str = "storageAccounts",
) -> str:
    return canonical_scope(
        f"/subscriptions/{subscription}/resourceGroups/{resource_group}"
        f"/providers/{namespace}/{resource_type}/{name}"
    )
