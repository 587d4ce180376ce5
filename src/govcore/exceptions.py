# Copyright (c) govcore Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for govcore.

All govcore exceptions inherit from GovCoreError, enabling consistent
error handling by the translator, sync adapter, importer and UI layers.
``Gap`` is deliberately absent: it is a finding returned by resolution,
never raised.
"""

from typing import Optional


class GovCoreError(Exception):
    """Base exception for all govcore errors."""


class ValidationError(GovCoreError, ValueError):
    """Malformed input; the caller can fix it and retry."""


class NotFoundError(GovCoreError, KeyError):
    """A referenced entity does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class ScopeOverlap(GovCoreError):
    """A scope change would put one resource in two environments."""

    def __init__(self, message: str, scope: str = "", conflicting_environment_id: str = ""):
        super().__init__(message)
        self.scope = scope
        self.conflicting_environment_id = conflicting_environment_id


class ReferentialConflict(GovCoreError):
    """Deletion blocked by an active reference."""

    def __init__(self, message: str, referenced_by: Optional[list[str]] = None):
        super().__init__(message)
        self.referenced_by = referenced_by or []


class StaleStateError(GovCoreError):
    """Concurrency-detected staleness; re-read and retry."""


class StalePreview(StaleStateError):
    """The preview no longer matches the current state."""


class StalePromotion(StaleStateError):
    """A promotion can no longer be rolled back cleanly."""


class ConcurrentModification(StaleStateError):
    """An entity changed underneath a transaction."""


class PromotionFailed(GovCoreError):
    """Promotion apply aborted; every write in the batch was reverted."""

    def __init__(self, message: str, request_id: str = ""):
        super().__init__(message)
        self.request_id = request_id


class LockTimeout(GovCoreError):
    """An environment lock could not be acquired in time."""


class JournalError(GovCoreError):
    """The change journal could not be written or verified."""


__all__ = [
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
]
