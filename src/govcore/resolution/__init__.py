"""
Effective Policy Resolution
"""

from .models import (
    EffectiveAssignment,
    EffectiveMember,
    EffectivePolicySet,
    Gap,
    GapKind,
    Suppression,
)
from .engine import ResolutionEngine

__all__ = [
    "EffectiveAssignment",
    "EffectiveMember",
    "EffectivePolicySet",
    "Gap",
    "GapKind",
    "Suppression",
    "ResolutionEngine",
]
