"""
Scope & Environment Registry

Scope parsing, the management-group hierarchy, and the partition of
scopes into environments.
"""

from .scope import (
    Scope,
    ScopeLevel,
    parse_scope,
    canonical_scope,
    management_group_scope,
    subscription_scope,
    resource_group_scope,
    resource_scope,
)
from .hierarchy import ScopeIndex, ScopeTrie, PartitionViolation
from .models import Environment, ScopePlacement
from .registry import EnvironmentRegistry, target_environment_id

__all__ = [
    "Scope",
    "ScopeLevel",
    "parse_scope",
    "canonical_scope",
    "management_group_scope",
    "subscription_scope",
    "resource_group_scope",
    "resource_scope",
    "ScopeIndex",
    "ScopeTrie",
    "PartitionViolation",
    "Environment",
    "ScopePlacement",
    "EnvironmentRegistry",
    "target_environment_id",
]
