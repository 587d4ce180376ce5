"""
Assignment & Exemption Store

Assignments bind catalog entries to targets; exemptions suppress them
for a while.
"""

from .models import (
    Assignment,
    EnforcementMode,
    Exemption,
    ExemptionCategory,
    PolicyRef,
    Target,
)
from .assignments import AssignmentStore, target_covers, targets_intersect

__all__ = [
    "Assignment",
    "EnforcementMode",
    "Exemption",
    "ExemptionCategory",
    "PolicyRef",
    "Target",
    "AssignmentStore",
    "target_covers",
    "targets_intersect",
]
