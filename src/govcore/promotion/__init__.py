"""
Promotion

Diffed, previewed, atomic and reversible transfer of governance
artifacts between environment tiers.
"""

from .models import (
    ALLOWED_TRANSITIONS,
    PROMOTABLE_TYPES,
    AppliedChange,
    ChangeKind,
    DiffEntry,
    EntityRef,
    ImpactItem,
    ImpactLine,
    PromotionRequest,
    PromotionStatus,
    StatusTransition,
)
from .engine import PromotionEngine, diff_digest, planned_id

__all__ = [
    "ALLOWED_TRANSITIONS",
    "PROMOTABLE_TYPES",
    "AppliedChange",
    "ChangeKind",
    "DiffEntry",
    "EntityRef",
    "ImpactItem",
    "ImpactLine",
    "PromotionRequest",
    "PromotionStatus",
    "StatusTransition",
    "PromotionEngine",
    "diff_digest",
    "planned_id",
]
