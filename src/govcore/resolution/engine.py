"""
Effective Policy Resolution Engine

Computes, for a resource, every assignment that reaches it through its
environment or its scope ancestry, decides which one wins per policy,
and applies exemptions and enforcement modes.

Precedence, most specific first::

    resource > resource group > subscription > management group > environment

Within a level a deeper node wins (a child management group beats its
parent). Two assignments of the same policy at the same node are ordered
by ``created_at`` according to :class:`TieBreakRule`, then by id.

Resolution reads one point-in-time state and never raises on data:
anything it cannot determine becomes a :class:`Gap`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Optional

from govcore.assignments.assignments import target_covers
from govcore.assignments.models import Assignment, EnforcementMode, Exemption
from govcore.catalog.catalog import PARAMETER_REFERENCE
from govcore.catalog.models import PolicyDefinition, PolicySet
from govcore.catalog.parameters import validate_parameters
from govcore.config import GovernanceConfig, TieBreakRule
from govcore.entity import EntityType, ensure_utc
from govcore.exceptions import ValidationError
from govcore.registry.hierarchy import ScopeIndex
from govcore.registry.scope import ENVIRONMENT_RANK, parse_scope
from govcore.resolution.models import (
    EffectiveAssignment,
    EffectiveMember,
    EffectivePolicySet,
    Gap,
    GapKind,
    Suppression,
)

if TYPE_CHECKING:
    from govcore.store.state import StoreState
    from govcore.store.store import GovernanceStore

logger = logging.getLogger(__name__)


class ResolutionEngine:
    """
    Resolves effective policy sets.

    Args:
        store: Store to read committed state from.
        config: Overrides the store's configuration (tie-break rule).
    """

    def __init__(self, store: GovernanceStore, config: Optional[GovernanceConfig] = None) -> None:
        self._store = store
        self._config = config or store.config

    @property
    def tie_break(self) -> TieBreakRule:
        return self._config.tie_break

    def resolve(self, resource: str, at: Optional[datetime] = None) -> EffectivePolicySet:
        """Resolve *resource* against the latest committed state."""
        return self.resolve_in(self._store.snapshot(), resource, at)

    def resolve_many(
        self,
        resources: Iterable[str],
        at: Optional[datetime] = None,
    ) -> dict[str, EffectivePolicySet]:
        """Resolve several resources against the same point-in-time state."""
        view = self._store.snapshot()
        at = ensure_utc(at) if at is not None else self._store.now()
        return {resource: self.resolve_in(view, resource, at) for resource in resources}

    def resolve_in(
        self,
        view: StoreState,
        resource: str,
        at: Optional[datetime] = None,
    ) -> EffectivePolicySet:
        """Resolve *resource* against an explicit state.

        Used with sandbox projections to compute what a pending change
        would do without committing it.
        """
        at = ensure_utc(at) if at is not None else self._store.now()
        result = EffectivePolicySet(resource=resource, evaluated_at=at, state_sequence=view.sequence)

        try:
            scope = parse_scope(resource)
        except ValidationError as exc:
            result.gaps.append(Gap(kind=GapKind.UNPARSEABLE_SCOPE, message=str(exc)))
            return result
        result.resource = scope.id

        index = view.scope_index
        try:
            chain = index.ancestors(scope.id)
        except ValidationError as exc:
            result.gaps.append(Gap(kind=GapKind.INVALID_HIERARCHY, message=str(exc)))
            return result

        match = index.environment_match(scope.id)
        environment_id = None
        if match is None:
            result.gaps.append(Gap(
                kind=GapKind.NO_ENVIRONMENT,
                message=f"No environment covers {scope.id}",
            ))
        else:
            result.matched_scope, environment_id = match
            env = view.get(EntityType.ENVIRONMENT, environment_id)
            result.environment_id = environment_id
            result.environment_name = env.name if env is not None else None

        candidates = self._candidates(view, chain, environment_id)
        if not candidates and environment_id is not None:
            result.gaps.append(Gap(
                kind=GapKind.NO_ASSIGNMENTS,
                message=f"Environment {result.environment_name or environment_id} has no assignments reaching {scope.id}",
                entity_id=environment_id,
            ))

        entries = []
        for assignment in candidates:
            entry = self._entry(view, index, assignment, result.gaps)
            if entry is not None:
                entries.append(entry)

        self._rank(entries)
        self._exempt(view, index, scope.id, entries, at)
        entries.sort(key=lambda e: (e.policy_key, not e.effective, [-s for s in e.specificity], e.assignment_id))
        result.entries = entries

        logger.debug(
            "Resolved %s: %d candidate(s), %d effective, %d gap(s)",
            scope.id, len(entries), len(result.effective), len(result.gaps),
        )
        return result

    # ── Steps ───────────────────────────────────────────────────────

    @staticmethod
    def _candidates(view: StoreState, chain: list[str], environment_id: Optional[str]) -> list[Assignment]:
        by_target = view.by_target(EntityType.ASSIGNMENT)
        candidates: list[Assignment] = []
        if environment_id is not None:
            candidates.extend(by_target.get(f"environment:{environment_id}", []))
        for scope_id in chain:
            candidates.extend(by_target.get(f"scope:{scope_id}", []))
        return candidates

    def _entry(
        self,
        view: StoreState,
        index: ScopeIndex,
        assignment: Assignment,
        gaps: list[Gap],
    ) -> Optional[EffectiveAssignment]:
        policy = assignment.policy
        catalog_entry = view.get(policy.entity_type, policy.entity_id)
        if catalog_entry is None:
            gaps.append(Gap(
                kind=GapKind.DANGLING_REFERENCE,
                message=f"Assignment {assignment.name} references missing {policy.entity_type.value} {policy.entity_id}",
                entity_id=assignment.id,
            ))
            return None

        parameters = self._parameters(catalog_entry.parameters, assignment.parameters, assignment, gaps)
        if assignment.target.environment_id is not None:
            specificity = (ENVIRONMENT_RANK, 0)
        else:
            specificity = index.specificity(assignment.target.scope)

        entry = EffectiveAssignment(
            assignment_id=assignment.id,
            assignment_name=assignment.name,
            policy_key=policy.key,
            policy_type=policy.entity_type,
            policy_id=policy.entity_id,
            policy_name=catalog_entry.name,
            policy_version=catalog_entry.version,
            target=str(assignment.target),
            specificity=specificity,
            created_at=assignment.created_at,
            enforcement_mode=assignment.enforcement_mode,
            parameters=parameters,
        )
        audit = assignment.enforcement_mode == EnforcementMode.AUDIT
        if isinstance(catalog_entry, PolicyDefinition):
            entry.effect = catalog_entry.effect
            entry.reporting_only = audit and catalog_entry.effect.enforcing
        else:
            entry.members = self._members(view, catalog_entry, parameters, audit, assignment, gaps)
            entry.reporting_only = any(m.reporting_only for m in entry.members)
        return entry

    @staticmethod
    def _parameters(schema, values: dict[str, Any], assignment: Assignment, gaps: list[Gap]) -> dict[str, Any]:
        try:
            return validate_parameters(schema, values, owner=f"assignment {assignment.name}")
        except ValidationError as exc:
            gaps.append(Gap(kind=GapKind.INVALID_PARAMETERS, message=str(exc), entity_id=assignment.id))
            return dict(values)

    def _members(
        self,
        view: StoreState,
        policy_set: PolicySet,
        set_parameters: dict[str, Any],
        audit: bool,
        assignment: Assignment,
        gaps: list[Gap],
    ) -> list[EffectiveMember]:
        members = []
        for member in policy_set.members:
            definition = view.get(EntityType.POLICY_DEFINITION, member.definition_id)
            if definition is None:
                gaps.append(Gap(
                    kind=GapKind.DANGLING_REFERENCE,
                    message=f"Set {policy_set.name} member {member.reference_id} references missing definition {member.definition_id}",
                    entity_id=policy_set.id,
                ))
                members.append(EffectiveMember(reference_id=member.reference_id, definition_id=member.definition_id))
                continue
            bound = {}
            for name, value in member.parameters.items():
                ref = PARAMETER_REFERENCE.match(value) if isinstance(value, str) else None
                bound[name] = set_parameters.get(ref.group(1)) if ref else value
            members.append(EffectiveMember(
                reference_id=member.reference_id,
                definition_id=definition.id,
                definition_name=definition.name,
                effect=definition.effect,
                parameters=self._parameters(definition.parameters, bound, assignment, gaps),
                reporting_only=audit and definition.effect.enforcing,
            ))
        return members

    def _rank(self, entries: list[EffectiveAssignment]) -> None:
        """Mark the winner per policy and point the rest at it."""
        groups: dict[str, list[EffectiveAssignment]] = {}
        for entry in entries:
            groups.setdefault(entry.policy_key, []).append(entry)
        for group in groups.values():
            ordered = sorted(group, key=lambda e: e.assignment_id)
            ordered.sort(key=lambda e: e.created_at, reverse=self.tie_break == TieBreakRule.MOST_RECENT)
            ordered.sort(key=lambda e: e.specificity, reverse=True)
            winner = ordered[0]
            winner.effective = True
            for loser in ordered[1:]:
                loser.overridden_by = winner.assignment_id

    @staticmethod
    def _exempt(
        view: StoreState,
        index: ScopeIndex,
        scope_id: str,
        entries: list[EffectiveAssignment],
        at: datetime,
    ) -> None:
        exemptions: dict[str, list[Exemption]] = {}
        for exemption in sorted(view.all(EntityType.EXEMPTION), key=lambda e: e.id):
            if exemption.is_active(at) and target_covers(index, exemption.target, scope_id):
                exemptions.setdefault(exemption.policy.key, []).append(exemption)

        for entry in entries:
            for exemption in exemptions.get(entry.policy_key, []):
                suppression = Suppression(
                    exemption_id=exemption.id,
                    exemption_name=exemption.name,
                    category=exemption.category.value,
                    justification=exemption.justification,
                    expires_at=exemption.expires_at,
                )
                if not exemption.member_reference_ids:
                    if not entry.suppressed:
                        entry.suppressed = True
                        entry.suppression = suppression
                    continue
                for member in entry.members:
                    if member.reference_id in exemption.member_reference_ids and not member.suppressed:
                        member.suppressed = True
                        member.suppression = suppression
            if entry.members and not entry.suppressed and all(m.suppressed for m in entry.members):
                entry.suppressed = True
                entry.suppression = entry.members[0].suppression
