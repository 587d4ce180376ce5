"""
Policy Catalog

Custom and provider policy definitions, policy sets and their parameter
schemas.
"""

from .models import (
    ENFORCING_EFFECTS,
    ParameterSpec,
    ParameterType,
    PolicyDefinition,
    PolicyEffect,
    PolicyOrigin,
    PolicySet,
    PolicySetMember,
)
from .parameters import validate_parameters
from .catalog import PolicyCatalog, check_member_parameters, referencing_entities

__all__ = [
    "ENFORCING_EFFECTS",
    "ParameterSpec",
    "ParameterType",
    "PolicyDefinition",
    "PolicyEffect",
    "PolicyOrigin",
    "PolicySet",
    "PolicySetMember",
    "validate_parameters",
    "PolicyCatalog",
    "check_member_parameters",
    "referencing_entities",
]
