"""
Assignment & Exemption Store

Binds catalog entries to environments and scopes, and records
time-bounded exemptions against those bindings.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from govcore.assignments.models import (
    Assignment,
    EnforcementMode,
    Exemption,
    ExemptionCategory,
    PolicyRef,
    Target,
)
from govcore.catalog.parameters import validate_parameters
from govcore.entity import EntityType, build, ensure_utc
from govcore.exceptions import NotFoundError, ValidationError
from govcore.registry.hierarchy import ScopeIndex
from govcore.registry.registry import target_environment_id
from govcore.store.locks import PARTITION, environment_key

if TYPE_CHECKING:
    from govcore.store.state import StoreState
    from govcore.store.store import GovernanceStore, Transaction

logger = logging.getLogger(__name__)

_ASSIGNMENT_FIELDS = ("description", "parameters", "enforcement_mode")
_EXEMPTION_FIELDS = ("expires_at", "no_expiry", "justification", "category")


def target_covers(index: ScopeIndex, target: Target, scope: str) -> bool:
    """Whether *target* applies to the resource at *scope*."""
    if target.environment_id is not None:
        return index.environment_for(scope) == target.environment_id
    return index.is_ancestor_or_self(target.scope, scope)


def targets_intersect(index: ScopeIndex, a: Target, b: Target) -> bool:
    """Whether some resource is covered by both targets."""
    if a.environment_id is not None and b.environment_id is not None:
        return a.environment_id == b.environment_id
    if a.environment_id is not None:
        return a.environment_id in index.environments_intersecting(b.scope)
    if b.environment_id is not None:
        return b.environment_id in index.environments_intersecting(a.scope)
    return index.related(a.scope, b.scope)


class AssignmentStore:
    """CRUD for assignments and exemptions, with referential checks."""

    def __init__(self, store: GovernanceStore) -> None:
        self._store = store

    # ── Assignments ─────────────────────────────────────────────────

    def create_assignment(
        self,
        name: str,
        policy: PolicyRef | dict[str, Any],
        target: Target | dict[str, Any],
        parameters: Optional[dict[str, Any]] = None,
        enforcement_mode: EnforcementMode | str = EnforcementMode.ENFORCE,
        description: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Assignment:
        """Assign a definition or set to an environment or scope.

        Raises:
            NotFoundError: the catalog entry or target environment is missing.
            ValidationError: bad parameters or a duplicate name on the target.
        """
        assignment = build(
            Assignment,
            name=name,
            policy=policy,
            target=target,
            parameters=parameters or {},
            enforcement_mode=enforcement_mode,
            description=description,
        )
        with self._store.transaction(actor, **self._lock_keys(assignment)) as txn:
            assignment = self.stage_assignment(txn, assignment)
        logger.info(
            "Created assignment %s (%s) of %s at %s",
            assignment.name, assignment.id, assignment.policy.key, assignment.target,
        )
        return assignment

    def stage_assignment(self, txn: Transaction, assignment: Assignment) -> Assignment:
        """Validate and stage a new assignment inside an open transaction."""
        self._check_target(txn.view, assignment.target)
        self._check_assignment(txn.view, assignment)
        return txn.create(assignment)

    def update_assignment(self, assignment_id: str, actor: Optional[str] = None, **changes: Any) -> Assignment:
        """Change ``description``, ``parameters`` or ``enforcement_mode``."""
        unknown = set(changes) - set(_ASSIGNMENT_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update assignment fields: {', '.join(sorted(unknown))}")
        current = self.get_assignment(assignment_id)
        with self._store.transaction(actor, **self._lock_keys(current)) as txn:
            assignment = txn.view.require(EntityType.ASSIGNMENT, assignment_id)
            updated = assignment.evolve(**changes)
            if updated.content() == assignment.content():
                return assignment
            self._check_assignment(txn.view, updated)
            assignment = txn.update(updated)
        logger.info("Updated assignment %s: %s", assignment.id, sorted(changes))
        return assignment

    def delete_assignment(self, assignment_id: str, actor: Optional[str] = None) -> Assignment:
        current = self.get_assignment(assignment_id)
        with self._store.transaction(actor, **self._lock_keys(current)) as txn:
            removed = txn.delete(EntityType.ASSIGNMENT, assignment_id)
        logger.info("Deleted assignment %s (%s)", removed.name, removed.id)
        return removed

    # ── Exemptions ──────────────────────────────────────────────────

    def create_exemption(
        self,
        name: str,
        policy: PolicyRef | dict[str, Any],
        target: Target | dict[str, Any],
        category: ExemptionCategory | str,
        justification: str,
        expires_at: Optional[datetime] = None,
        no_expiry: bool = False,
        member_reference_ids: Optional[list[str]] = None,
        actor: Optional[str] = None,
    ) -> Exemption:
        """Exempt a target from a policy.

        The policy must already be assigned somewhere that overlaps the
        target, and the exemption must not already be expired.

        Raises:
            ValidationError: no matching assignment, unknown set members,
                or an expiry in the past.
        """
        exemption = build(
            Exemption,
            name=name,
            policy=policy,
            target=target,
            category=category,
            justification=justification,
            expires_at=expires_at,
            no_expiry=no_expiry,
            member_reference_ids=member_reference_ids or [],
        )
        with self._store.transaction(actor, **self._lock_keys(exemption)) as txn:
            exemption = self.stage_exemption(txn, exemption)
        logger.info(
            "Created exemption %s (%s) for %s at %s, %s",
            exemption.name, exemption.id, exemption.policy.key, exemption.target,
            "no expiry" if exemption.no_expiry else f"expires {exemption.expires_at.isoformat()}",
        )
        return exemption

    def stage_exemption(self, txn: Transaction, exemption: Exemption) -> Exemption:
        """Validate and stage a new exemption inside an open transaction."""
        self._check_target(txn.view, exemption.target)
        self._check_exemption(txn.view, exemption, txn.now)
        return txn.create(exemption)

    def update_exemption(self, exemption_id: str, actor: Optional[str] = None, **changes: Any) -> Exemption:
        """Change expiry, justification or category."""
        unknown = set(changes) - set(_EXEMPTION_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update exemption fields: {', '.join(sorted(unknown))}")
        if changes.get("expires_at") is not None:
            changes.setdefault("no_expiry", False)
        elif changes.get("no_expiry"):
            changes.setdefault("expires_at", None)
        current = self.get_exemption(exemption_id)
        with self._store.transaction(actor, **self._lock_keys(current)) as txn:
            exemption = txn.view.require(EntityType.EXEMPTION, exemption_id)
            updated = exemption.evolve(**changes)
            if updated.content() == exemption.content():
                return exemption
            if not updated.is_active(txn.now):
                raise ValidationError("Exemption expiry must be in the future")
            exemption = txn.update(updated)
        logger.info("Updated exemption %s: %s", exemption.id, sorted(changes))
        return exemption

    def delete_exemption(self, exemption_id: str, actor: Optional[str] = None) -> Exemption:
        current = self.get_exemption(exemption_id)
        with self._store.transaction(actor, **self._lock_keys(current)) as txn:
            removed = txn.delete(EntityType.EXEMPTION, exemption_id)
        logger.info("Deleted exemption %s (%s)", removed.name, removed.id)
        return removed

    # ── Queries ─────────────────────────────────────────────────────

    def get_assignment(self, assignment_id: str) -> Assignment:
        assignment = self._store.snapshot().get(EntityType.ASSIGNMENT, assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment not found: {assignment_id}")
        return assignment

    def get_exemption(self, exemption_id: str) -> Exemption:
        exemption = self._store.snapshot().get(EntityType.EXEMPTION, exemption_id)
        if exemption is None:
            raise NotFoundError(f"Exemption not found: {exemption_id}")
        return exemption

    def list_assignments(self, environment_id: Optional[str] = None) -> list[Assignment]:
        """All assignments, or those whose target lies in *environment_id*."""
        view = self._store.snapshot()
        return [
            a for a in view.all(EntityType.ASSIGNMENT)
            if environment_id is None or target_environment_id(view, a.target) == environment_id
        ]

    def list_exemptions(self, environment_id: Optional[str] = None) -> list[Exemption]:
        view = self._store.snapshot()
        return [
            e for e in view.all(EntityType.EXEMPTION)
            if environment_id is None or target_environment_id(view, e.target) == environment_id
        ]

    def assignments_for_target(self, target: Target | dict[str, Any]) -> list[Assignment]:
        """Assignments made directly at *target* (no inheritance)."""
        if not isinstance(target, Target):
            target = build(Target, **target)
        return list(self._store.snapshot().by_target(EntityType.ASSIGNMENT).get(target.key, []))

    def active_exemptions(self, at: Optional[datetime] = None) -> list[Exemption]:
        """Exemptions not yet expired at *at* (default: now)."""
        at = ensure_utc(at) if at is not None else self._store.now()
        return [e for e in self._store.snapshot().all(EntityType.EXEMPTION) if e.is_active(at)]

    # ── Validation ──────────────────────────────────────────────────

    def _lock_keys(self, entity) -> dict[str, list[str]]:
        view = self._store.snapshot()
        shared = [PARTITION]
        catalog_entry = view.get(entity.policy.entity_type, entity.policy.entity_id)
        if catalog_entry is not None:
            shared.append(environment_key(catalog_entry.origin_environment_id))
        return {
            "exclusive": [environment_key(target_environment_id(view, entity.target))],
            "shared": shared,
        }

    @staticmethod
    def _check_target(view: StoreState, target: Target) -> None:
        if target.environment_id is not None:
            if view.get(EntityType.ENVIRONMENT, target.environment_id) is None:
                raise NotFoundError(f"Environment not found: {target.environment_id}")
        else:
            # Reject hierarchies that cannot be walked (placement cycles).
            view.scope_index.ancestors(target.scope)

    @staticmethod
    def _check_assignment(view: StoreState, assignment: Assignment) -> None:
        policy = assignment.policy
        entry = view.get(policy.entity_type, policy.entity_id)
        if entry is None:
            raise NotFoundError(f"{policy.entity_type.value} not found: {policy.entity_id}")
        validate_parameters(entry.parameters, assignment.parameters, owner=f"assignment {assignment.name}")
        for other in view.by_target(EntityType.ASSIGNMENT).get(assignment.target.key, []):
            if other.id != assignment.id and other.name == assignment.name:
                raise ValidationError(
                    f"An assignment named {assignment.name!r} already exists at {assignment.target}"
                )

    @staticmethod
    def _check_exemption(view: StoreState, exemption: Exemption, now: datetime) -> None:
        if not exemption.is_active(now):
            raise ValidationError("Exemption expiry must be in the future")
        policy = exemption.policy
        entry = view.get(policy.entity_type, policy.entity_id)
        if entry is None:
            raise NotFoundError(f"{policy.entity_type.value} not found: {policy.entity_id}")
        if exemption.member_reference_ids:
            known = {m.reference_id for m in entry.members}
            unknown = sorted(set(exemption.member_reference_ids) - known)
            if unknown:
                raise ValidationError(f"Unknown set members for {entry.name}: {', '.join(unknown)}")
        index = view.scope_index
        matching = [
            a for a in view.all(EntityType.ASSIGNMENT)
            if a.policy.key == policy.key and targets_intersect(index, a.target, exemption.target)
        ]
        if not matching:
            raise ValidationError(
                f"No assignment of {policy.key} covers {exemption.target}; nothing to exempt"
            )
