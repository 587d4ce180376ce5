"""
govcore - Policy Governance Core

Environments · Catalog · Assignments · Resolution · Promotion · Journal

Partitions cloud resource scopes into environments, resolves the
effective policy set of any resource, and promotes policy changes
between environment tiers with preview, atomic apply and rollback.

Version: 0.1.0
"""

__version__ = "0.1.0"

# Errors and configuration
from .exceptions import (
    GovCoreError,
    ValidationError,
    NotFoundError,
    ScopeOverlap,
    ReferentialConflict,
    StaleStateError,
    StalePreview,
    StalePromotion,
    ConcurrentModification,
    PromotionFailed,
    LockTimeout,
    JournalError,
)
from .config import GovernanceConfig, TieBreakRule
from .entity import EntityType

# Scope & Environment Registry
from .registry import (
    Environment,
    EnvironmentRegistry,
    Scope,
    ScopeLevel,
    ScopePlacement,
    canonical_scope,
    management_group_scope,
    parse_scope,
    resource_group_scope,
    resource_scope,
    subscription_scope,
)

# Store and journal
from .store import GovernanceStore
from .journal import ChangeOperation, ChangeRecord, Journal

# Catalog, assignments, resolution, promotion
from .catalog import PolicyCatalog, PolicyDefinition, PolicyEffect, PolicyOrigin, PolicySet
from .assignments import (
    Assignment,
    AssignmentStore,
    EnforcementMode,
    Exemption,
    ExemptionCategory,
    PolicyRef,
    Target,
)
from .resolution import EffectivePolicySet, Gap, GapKind, ResolutionEngine
from .promotion import ChangeKind, PromotionEngine, PromotionRequest, PromotionStatus

# Reporting and external boundaries
from .compliance import ComplianceReport, ComplianceReporter
from .importer import ImportBatch, Importer
from .sync import ProviderSync
from .core import GovernanceCore

__all__ = [
    "__version__",
    # Errors
    "GovCoreError",
    "ValidationError",
    "NotFoundError",
    "ScopeOverlap",
    "ReferentialConflict",
    "StaleStateError",
    "StalePreview",
    "StalePromotion",
    "ConcurrentModification",
    "PromotionFailed",
    "LockTimeout",
    "JournalError",
    # Configuration
    "GovernanceConfig",
    "TieBreakRule",
    "EntityType",
    # Registry
    "Environment",
    "EnvironmentRegistry",
    "Scope",
    "ScopeLevel",
    "ScopePlacement",
    "canonical_scope",
    "management_group_scope",
    "parse_scope",
    "resource_group_scope",
    "resource_scope",
    "subscription_scope",
    # Store
    "GovernanceStore",
    "ChangeOperation",
    "ChangeRecord",
    "Journal",
    # Catalog
    "PolicyCatalog",
    "PolicyDefinition",
    "PolicyEffect",
    "PolicyOrigin",
    "PolicySet",
    # Assignments
    "Assignment",
    "AssignmentStore",
    "EnforcementMode",
    "Exemption",
    "ExemptionCategory",
    "PolicyRef",
    "Target",
    # Resolution
    "EffectivePolicySet",
    "Gap",
    "GapKind",
    "ResolutionEngine",
    # Promotion
    "ChangeKind",
    "PromotionEngine",
    "PromotionRequest",
    "PromotionStatus",
    # Reporting and boundaries
    "ComplianceReport",
    "ComplianceReporter",
    "ImportBatch",
    "Importer",
    "ProviderSync",
    "GovernanceCore",
]
