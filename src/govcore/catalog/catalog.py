"""
Policy Catalog

Stores policy definitions and policy sets with their versions. Custom
entries are owned here and versioned; provider entries are read-only
mirrors that only the sync path may write.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Optional

from govcore.catalog.models import (
    ParameterSpec,
    PolicyDefinition,
    PolicyOrigin,
    PolicySet,
    PolicySetMember,
)
from govcore.catalog.parameters import validate_parameters
from govcore.entity import EntityType, build
from govcore.exceptions import NotFoundError, ReferentialConflict, ValidationError
from govcore.journal.records import ChangeRecord
from govcore.store.locks import environment_key

if TYPE_CHECKING:
    from govcore.store.state import StoreState
    from govcore.store.store import GovernanceStore, Transaction

logger = logging.getLogger(__name__)

# Member parameter values of the form [parameters('name')] forward a set parameter.
PARAMETER_REFERENCE = re.compile(r"^\[parameters\('([^']+)'\)\]$")

_DEFINITION_CONTENT = ("display_name", "description", "effect", "parameters", "rule")
_SET_CONTENT = ("display_name", "description", "members", "parameters")


def referencing_entities(
    view: StoreState, entity_type: EntityType, entity_id: str, at: datetime
) -> list[str]:
    """Ids of assignments, unexpired exemptions and sets that use a catalog entry."""
    field = "definition_id" if entity_type == EntityType.POLICY_DEFINITION else "set_id"
    refs = [
        a.id for a in view.all(EntityType.ASSIGNMENT)
        if getattr(a.policy, field) == entity_id
    ]
    refs.extend(
        e.id for e in view.all(EntityType.EXEMPTION)
        if getattr(e.policy, field) == entity_id and e.is_active(at)
    )
    if entity_type == EntityType.POLICY_DEFINITION:
        refs.extend(
            s.id for s in view.all(EntityType.POLICY_SET)
            if entity_id in s.definition_ids()
        )
    return refs


class PolicyCatalog:
    """Create, version and retire policy definitions and sets."""

    def __init__(self, store: GovernanceStore) -> None:
        self._store = store

    # ── Definitions ─────────────────────────────────────────────────

    def create_definition(
        self,
        name: str,
        effect: str,
        rule: dict[str, Any],
        parameters: Optional[dict[str, Any]] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        origin_environment_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PolicyDefinition:
        """Create a custom definition.

        Args:
            name: Unique name within the origin environment.
            effect: Policy effect (``deny``, ``audit``, ...).
            rule: Opaque rule document.
            parameters: Parameter schema, name -> :class:`ParameterSpec`
                (or its dict form).
            origin_environment_id: Environment the definition is authored in;
                ``None`` for shared catalog entries.
        """
        definition = build(
            PolicyDefinition,
            name=name,
            effect=effect,
            rule=rule,
            parameters=parameters or {},
            display_name=display_name,
            description=description,
            origin=PolicyOrigin.CUSTOM,
            origin_environment_id=origin_environment_id,
        )
        with self._store.transaction(actor, exclusive=[environment_key(origin_environment_id)]) as txn:
            definition = self.stage_definition(txn, definition)
        logger.info("Created definition %s (%s)", definition.name, definition.id)
        return definition

    def stage_definition(self, txn: Transaction, definition: PolicyDefinition) -> PolicyDefinition:
        """Validate and stage a new definition inside an open transaction."""
        self._check_environment(txn.view, definition.origin_environment_id)
        self._check_unique(txn.view, EntityType.POLICY_DEFINITION, definition)
        return txn.create(definition)

    def update_definition(
        self,
        definition_id: str,
        actor: Optional[str] = None,
        **changes: Any,
    ) -> PolicyDefinition:
        """Change a custom definition's content.

        Accepted keywords: ``display_name``, ``description``, ``effect``,
        ``parameters``, ``rule``. Content changes bump ``version``.

        Raises:
            ValidationError: unknown fields, or the definition is a
                provider mirror.
        """
        unknown = set(changes) - set(_DEFINITION_CONTENT)
        if unknown:
            raise ValidationError(f"Cannot update definition fields: {', '.join(sorted(unknown))}")
        current = self.get_definition(definition_id)
        with self._store.transaction(
            actor, exclusive=[environment_key(current.origin_environment_id)]
        ) as txn:
            definition = txn.view.require(EntityType.POLICY_DEFINITION, definition_id)
            if definition.origin == PolicyOrigin.PROVIDER:
                raise ValidationError(f"Provider definition {definition.name} is read-only")
            updated = definition.evolve(**changes)
            if updated.content() == definition.content():
                return definition
            self._check_assignments_still_valid(txn.view, updated)
            definition = txn.update(updated.evolve(version=definition.version + 1))
        logger.info("Updated definition %s to version %d", definition.name, definition.version)
        return definition

    def delete_definition(self, definition_id: str, actor: Optional[str] = None) -> PolicyDefinition:
        """Delete a definition nothing refers to.

        Raises:
            ReferentialConflict: an assignment, unexpired exemption or set
                still references the definition.
        """
        current = self.get_definition(definition_id)
        with self._store.transaction(
            actor, exclusive=[environment_key(current.origin_environment_id)]
        ) as txn:
            refs = referencing_entities(txn.view, EntityType.POLICY_DEFINITION, definition_id, txn.now)
            if refs:
                raise ReferentialConflict(
                    f"Definition {current.name} is still referenced by {', '.join(refs)}",
                    referenced_by=refs,
                )
            removed = txn.delete(EntityType.POLICY_DEFINITION, definition_id)
        logger.info("Deleted definition %s (%s)", removed.name, removed.id)
        return removed

    def mirror_provider_definition(
        self,
        txn: Transaction,
        provider_id: str,
        name: str,
        effect: str,
        rule: dict[str, Any],
        parameters: Optional[dict[str, Any]] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[PolicyDefinition]:
        """Create or refresh a read-only provider definition.

        Returns the staged entity, or ``None`` when the mirror is already
        up to date.
        """
        existing = next(
            (d for d in txn.view.all(EntityType.POLICY_DEFINITION)
             if d.origin == PolicyOrigin.PROVIDER and d.provider_id == provider_id),
            None,
        )
        fields = dict(
            name=name,
            effect=effect,
            rule=rule,
            parameters=parameters or {},
            display_name=display_name,
            description=description,
        )
        if existing is None:
            definition = build(
                PolicyDefinition, origin=PolicyOrigin.PROVIDER, provider_id=provider_id, **fields
            )
            self._check_unique(txn.view, EntityType.POLICY_DEFINITION, definition)
            return txn.create(definition)
        refreshed = existing.evolve(**fields)
        if refreshed.content() == existing.content():
            return None
        return txn.update(refreshed.evolve(version=existing.version + 1))

    # ── Sets ────────────────────────────────────────────────────────

    def create_set(
        self,
        name: str,
        members: Iterable[PolicySetMember | dict[str, Any]],
        parameters: Optional[dict[str, Any]] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        origin_environment_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PolicySet:
        """Create a custom policy set over existing definitions."""
        policy_set = build(
            PolicySet,
            name=name,
            members=list(members),
            parameters=parameters or {},
            display_name=display_name,
            description=description,
            origin=PolicyOrigin.CUSTOM,
            origin_environment_id=origin_environment_id,
        )
        with self._store.transaction(
            actor,
            exclusive=[environment_key(origin_environment_id)],
            shared=self._member_lock_keys(policy_set),
        ) as txn:
            policy_set = self.stage_set(txn, policy_set)
        logger.info("Created policy set %s (%s, %d members)", policy_set.name, policy_set.id, len(policy_set.members))
        return policy_set

    def stage_set(self, txn: Transaction, policy_set: PolicySet) -> PolicySet:
        """Validate and stage a new set inside an open transaction."""
        self._check_environment(txn.view, policy_set.origin_environment_id)
        self._check_unique(txn.view, EntityType.POLICY_SET, policy_set)
        self._check_members(txn.view, policy_set)
        return txn.create(policy_set)

    def update_set(self, set_id: str, actor: Optional[str] = None, **changes: Any) -> PolicySet:
        """Change a custom set. Accepted keywords: ``display_name``,
        ``description``, ``members``, ``parameters``."""
        unknown = set(changes) - set(_SET_CONTENT)
        if unknown:
            raise ValidationError(f"Cannot update set fields: {', '.join(sorted(unknown))}")
        current = self.get_set(set_id)
        proposed = current.evolve(**changes)
        with self._store.transaction(
            actor,
            exclusive=[environment_key(current.origin_environment_id)],
            shared=self._member_lock_keys(proposed),
        ) as txn:
            policy_set = txn.view.require(EntityType.POLICY_SET, set_id)
            if policy_set.origin == PolicyOrigin.PROVIDER:
                raise ValidationError(f"Provider set {policy_set.name} is read-only")
            updated = policy_set.evolve(**changes)
            if updated.content() == policy_set.content():
                return policy_set
            self._check_members(txn.view, updated)
            self._check_assignments_still_valid(txn.view, updated)
            policy_set = txn.update(updated.evolve(version=policy_set.version + 1))
        logger.info("Updated policy set %s to version %d", policy_set.name, policy_set.version)
        return policy_set

    def delete_set(self, set_id: str, actor: Optional[str] = None) -> PolicySet:
        current = self.get_set(set_id)
        with self._store.transaction(
            actor, exclusive=[environment_key(current.origin_environment_id)]
        ) as txn:
            refs = referencing_entities(txn.view, EntityType.POLICY_SET, set_id, txn.now)
            if refs:
                raise ReferentialConflict(
                    f"Policy set {current.name} is still referenced by {', '.join(refs)}",
                    referenced_by=refs,
                )
            removed = txn.delete(EntityType.POLICY_SET, set_id)
        logger.info("Deleted policy set %s (%s)", removed.name, removed.id)
        return removed

    # ── Queries ─────────────────────────────────────────────────────

    def get_definition(self, definition_id: str) -> PolicyDefinition:
        definition = self._store.snapshot().get(EntityType.POLICY_DEFINITION, definition_id)
        if definition is None:
            raise NotFoundError(f"Policy definition not found: {definition_id}")
        return definition

    def get_set(self, set_id: str) -> PolicySet:
        policy_set = self._store.snapshot().get(EntityType.POLICY_SET, set_id)
        if policy_set is None:
            raise NotFoundError(f"Policy set not found: {set_id}")
        return policy_set

    def find_definition(self, name: str, origin_environment_id: Optional[str] = None) -> Optional[PolicyDefinition]:
        for definition in self._store.snapshot().all(EntityType.POLICY_DEFINITION):
            if definition.name == name and definition.origin_environment_id == origin_environment_id:
                return definition
        return None

    def list_definitions(
        self,
        origin: Optional[PolicyOrigin] = None,
        environment_id: Optional[str] = None,
    ) -> list[PolicyDefinition]:
        return [
            d for d in self._store.snapshot().all(EntityType.POLICY_DEFINITION)
            if (origin is None or d.origin == origin)
            and (environment_id is None or d.origin_environment_id == environment_id)
        ]

    def list_sets(self, environment_id: Optional[str] = None) -> list[PolicySet]:
        return [
            s for s in self._store.snapshot().all(EntityType.POLICY_SET)
            if environment_id is None or s.origin_environment_id == environment_id
        ]

    def history(self, entity_id: str) -> list[ChangeRecord]:
        """Every journaled change to a definition or set, oldest first."""
        return [
            r for r in self._store.journal.query(entity_id=entity_id)
            if r.entity_type in (EntityType.POLICY_DEFINITION, EntityType.POLICY_SET)
        ]

    def versions(self, entity_id: str) -> list[dict[str, Any]]:
        """Distinct content versions of a catalog entry, from the journal."""
        seen: dict[int, dict[str, Any]] = {}
        for record in self.history(entity_id):
            if record.after is not None:
                seen[record.after["version"]] = record.after
        return [seen[v] for v in sorted(seen)]

    # ── Validation ──────────────────────────────────────────────────

    @staticmethod
    def _check_environment(view: StoreState, environment_id: Optional[str]) -> None:
        if environment_id is not None and view.get(EntityType.ENVIRONMENT, environment_id) is None:
            raise NotFoundError(f"Environment not found: {environment_id}")

    @staticmethod
    def _check_unique(view: StoreState, entity_type: EntityType, entity) -> None:
        for other in view.all(entity_type):
            if (
                other.id != entity.id
                and other.name == entity.name
                and other.origin == entity.origin
                and other.origin_environment_id == entity.origin_environment_id
            ):
                raise ValidationError(
                    f"A {entity_type.value} named {entity.name!r} already exists here ({other.id})"
                )

    def _member_lock_keys(self, policy_set: PolicySet) -> list[str]:
        view = self._store.snapshot()
        keys = []
        for definition_id in policy_set.definition_ids():
            definition = view.get(EntityType.POLICY_DEFINITION, definition_id)
            if definition is not None:
                keys.append(environment_key(definition.origin_environment_id))
        return keys

    @staticmethod
    def _check_members(view: StoreState, policy_set: PolicySet) -> None:
        for member in policy_set.members:
            definition = view.get(EntityType.POLICY_DEFINITION, member.definition_id)
            if definition is None:
                raise NotFoundError(
                    f"Set member {member.reference_id} references unknown definition {member.definition_id}"
                )
            check_member_parameters(definition, member, policy_set.parameters)

    @staticmethod
    def _check_assignments_still_valid(view: StoreState, entry) -> None:
        field = "definition_id" if entry.entity_type == EntityType.POLICY_DEFINITION else "set_id"
        for assignment in view.all(EntityType.ASSIGNMENT):
            if getattr(assignment.policy, field) == entry.id:
                validate_parameters(
                    entry.parameters, assignment.parameters, owner=f"assignment {assignment.name}"
                )


def check_member_parameters(
    definition: PolicyDefinition,
    member: PolicySetMember,
    set_parameters: dict[str, ParameterSpec],
) -> None:
    """Validate a set member's bindings against its definition's schema.

    Values of the form ``[parameters('x')]`` forward set parameter ``x``
    and are checked for existence only.
    """
    literals: dict[str, Any] = {}
    forwarded: set[str] = set()
    for name, value in member.parameters.items():
        match = PARAMETER_REFERENCE.match(value) if isinstance(value, str) else None
        if match:
            if match.group(1) not in set_parameters:
                raise ValidationError(
                    f"Member {member.reference_id} forwards unknown set parameter {match.group(1)!r}"
                )
            if name not in definition.parameters:
                raise ValidationError(f"Unknown parameters for member {member.reference_id}: {name}")
            forwarded.add(name)
        else:
            literals[name] = value
    schema = {k: v for k, v in definition.parameters.items() if k not in forwarded}
    validate_parameters(schema, literals, owner=f"member {member.reference_id}")
