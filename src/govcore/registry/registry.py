"""
Environment Registry

Owns the partition of scopes into environments. The invariant: no
resource is covered, directly or through an ancestor, by two different
environments. Every change that could break it runs under the partition
lock and is checked against the scope trie before it is staged.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from govcore.entity import EntityType, build
from govcore.exceptions import NotFoundError, ReferentialConflict, ScopeOverlap, ValidationError
from govcore.registry.hierarchy import ScopeIndex
from govcore.registry.models import Environment, ScopePlacement
from govcore.registry.scope import canonical_scope
from govcore.store.locks import environment_key

if TYPE_CHECKING:
    from govcore.store.state import StoreState
    from govcore.store.store import GovernanceStore

logger = logging.getLogger(__name__)


def target_environment_id(view: StoreState, target) -> Optional[str]:
    """Environment a target belongs to (``None`` for unpartitioned scopes)."""
    if target.environment_id is not None:
        return target.environment_id
    return view.scope_index.environment_for(target.scope)


class EnvironmentRegistry:
    """Create, edit and query environments and the scope hierarchy."""

    def __init__(self, store: GovernanceStore) -> None:
        self._store = store

    # ── Environment CRUD ────────────────────────────────────────────

    def create_environment(
        self,
        name: str,
        tier: int,
        scopes: Iterable[str] = (),
        description: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Environment:
        """Create an environment owning *scopes*.

        Raises:
            ValidationError: bad input or a duplicate name.
            ScopeOverlap: a scope overlaps another environment's scopes.
        """
        env = build(Environment, name=name, tier=tier, scopes=list(scopes), description=description)
        with self._store.transaction(actor, exclusive=[environment_key(env.id)], partition=True) as txn:
            self._check_unique_name(txn.view, env.name)
            index = txn.view.scope_index
            for scope in env.scopes:
                self._check_overlap(txn.view, index, scope, env.id)
            env = txn.create(env)
        logger.info("Created environment %s (%s, tier %d)", env.name, env.id, env.tier)
        return env

    def update_environment(
        self,
        environment_id: str,
        name: Optional[str] = None,
        tier: Optional[int] = None,
        description: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Environment:
        """Rename, re-tier or re-describe an environment."""
        with self._store.transaction(actor, exclusive=[environment_key(environment_id)]) as txn:
            env = self._require(txn.view, environment_id)
            changes = {}
            if name is not None and name != env.name:
                self._check_unique_name(txn.view, name.strip())
                changes["name"] = name
            if tier is not None:
                changes["tier"] = tier
            if description is not None:
                changes["description"] = description
            if not changes:
                return env
            env = txn.update(env.evolve(**changes))
        logger.info("Updated environment %s: %s", env.id, sorted(changes))
        return env

    def delete_environment(self, environment_id: str, actor: Optional[str] = None) -> Environment:
        """Delete an environment that no longer owns scopes or references.

        Raises:
            ReferentialConflict: scopes are still registered, or an
                assignment, exemption, catalog entry or open promotion
                refers to the environment.
        """
        with self._store.transaction(
            actor, exclusive=[environment_key(environment_id)], partition=True
        ) as txn:
            env = self._require(txn.view, environment_id)
            if env.scopes:
                raise ReferentialConflict(
                    f"Environment {env.name} still owns {len(env.scopes)} scope(s); "
                    "remove or reassign them first",
                    referenced_by=list(env.scopes),
                )
            refs = self._references(txn.view, environment_id)
            if refs:
                raise ReferentialConflict(
                    f"Environment {env.name} is referenced by {len(refs)} entit(ies)",
                    referenced_by=refs,
                )
            txn.delete(EntityType.ENVIRONMENT, environment_id)
        logger.info("Deleted environment %s (%s)", env.name, env.id)
        return env

    # ── Scope membership ────────────────────────────────────────────

    def add_scope_to_environment(
        self,
        environment_id: str,
        scope: str,
        actor: Optional[str] = None,
    ) -> Environment:
        """Register *scope* to an environment.

        Raises:
            ScopeOverlap: the scope, an ancestor, or a descendant already
                resolves to a different environment.
            ValidationError: the scope is malformed or already registered here.
        """
        scope = canonical_scope(scope)
        with self._store.transaction(
            actor, exclusive=[environment_key(environment_id)], partition=True
        ) as txn:
            env = self._require(txn.view, environment_id)
            if scope in env.scopes:
                raise ValidationError(f"Scope {scope} is already registered to {env.name}")
            self._check_overlap(txn.view, txn.view.scope_index, scope, env.id)
            env = txn.update(env.evolve(scopes=[*env.scopes, scope]))
        logger.info("Added scope %s to environment %s", scope, env.name)
        return env

    def remove_scope_from_environment(
        self,
        environment_id: str,
        scope: str,
        actor: Optional[str] = None,
    ) -> Environment:
        scope = canonical_scope(scope)
        with self._store.transaction(
            actor, exclusive=[environment_key(environment_id)], partition=True
        ) as txn:
            env = self._require(txn.view, environment_id)
            if scope not in env.scopes:
                raise NotFoundError(f"Scope {scope} is not registered to {env.name}")
            env = txn.update(env.evolve(scopes=[s for s in env.scopes if s != scope]))
        logger.info("Removed scope %s from environment %s", scope, env.name)
        return env

    # ── Hierarchy ───────────────────────────────────────────────────

    def place_scope(self, child: str, parent: str, actor: Optional[str] = None) -> ScopePlacement:
        """Record that a subscription or management group sits under *parent*.

        Moving a scope moves everything below it, so the whole partition
        is re-checked against the new tree.
        """
        child, parent = canonical_scope(child), canonical_scope(parent)
        placement = build(ScopePlacement, id=child, parent=parent)
        with self._store.transaction(actor, partition=True) as txn:
            existing = txn.view.get(EntityType.SCOPE_PLACEMENT, child)
            if existing is not None and existing.parent == parent:
                return existing
            if existing is None:
                placement = txn.create(placement)
            else:
                placement = txn.update(existing.evolve(parent=parent))
            index = txn.view.scope_index
            index.ancestors(child)
            violations = index.check_partition()
            if violations:
                v = violations[0]
                raise ScopeOverlap(
                    f"Placing {child} under {parent} puts {v.scope} "
                    f"({self._env_name(txn.view, v.environment_id)}) below {v.ancestor_scope} "
                    f"({self._env_name(txn.view, v.ancestor_environment_id)})",
                    scope=v.scope,
                    conflicting_environment_id=v.ancestor_environment_id,
                )
        logger.info("Placed %s under %s", child, parent)
        return placement

    def unplace_scope(self, child: str, actor: Optional[str] = None) -> ScopePlacement:
        child = canonical_scope(child)
        with self._store.transaction(actor, partition=True) as txn:
            removed = txn.delete(EntityType.SCOPE_PLACEMENT, child)
        logger.info("Removed placement of %s", child)
        return removed

    def ancestors(self, scope: str) -> list[str]:
        """*scope* and its ancestors, most specific first."""
        return self._store.snapshot().scope_index.ancestors(canonical_scope(scope))

    # ── Queries ─────────────────────────────────────────────────────

    def get_environment(self, environment_id: str) -> Environment:
        return self._require(self._store.snapshot(), environment_id)

    def find_environment(self, name: str) -> Optional[Environment]:
        return _find_by_name(self._store.snapshot(), name)

    def list_environments(self) -> list[Environment]:
        """All environments ordered by tier, then name."""
        return sorted(
            self._store.snapshot().all(EntityType.ENVIRONMENT),
            key=lambda e: (e.tier, e.name),
        )

    def resolve_environment_for_resource(self, scope: str) -> Optional[Environment]:
        """Environment owning the closest registered ancestor of *scope*.

        Returns ``None`` (not found) when no registered scope covers it;
        callers must report that as a governance gap, not treat it as
        "nothing applies".
        """
        view = self._store.snapshot()
        environment_id = view.scope_index.environment_for(canonical_scope(scope))
        if environment_id is None:
            return None
        return view.get(EntityType.ENVIRONMENT, environment_id)

    # ── Internals ───────────────────────────────────────────────────

    @staticmethod
    def _require(view: StoreState, environment_id: str) -> Environment:
        env = view.get(EntityType.ENVIRONMENT, environment_id)
        if env is None:
            raise NotFoundError(f"Environment not found: {environment_id}")
        return env

    @staticmethod
    def _check_unique_name(view: StoreState, name: str) -> None:
        if _find_by_name(view, name) is not None:
            raise ValidationError(f"An environment named {name!r} already exists")

    def _check_overlap(self, view: StoreState, index: ScopeIndex, scope: str, environment_id: str) -> None:
        conflicts = index.conflicts(scope, environment_id)
        if conflicts:
            other_scope, other_env = conflicts[0]
            raise ScopeOverlap(
                f"Scope {scope} overlaps {other_scope}, which belongs to environment "
                f"{self._env_name(view, other_env)}",
                scope=scope,
                conflicting_environment_id=other_env,
            )

    @staticmethod
    def _env_name(view: StoreState, environment_id: str) -> str:
        env = view.get(EntityType.ENVIRONMENT, environment_id)
        return env.name if env else environment_id

    @staticmethod
    def _references(view: StoreState, environment_id: str) -> list[str]:
        from govcore.promotion.models import PromotionStatus

        refs = []
        for entity_type in (EntityType.ASSIGNMENT, EntityType.EXEMPTION):
            refs.extend(
                e.id for e in view.by_target(entity_type).get(f"environment:{environment_id}", [])
            )
        for entity_type in (EntityType.POLICY_DEFINITION, EntityType.POLICY_SET):
            refs.extend(
                e.id for e in view.all(entity_type) if e.origin_environment_id == environment_id
            )
        for request in view.all(EntityType.PROMOTION_REQUEST):
            if environment_id in (request.source_environment_id, request.target_environment_id):
                if request.status in (PromotionStatus.DRAFT, PromotionStatus.PREVIEWED):
                    refs.append(request.id)
        return refs


def _find_by_name(view: StoreState, name: str) -> Optional[Environment]:
    wanted = name.strip().lower()
    for env in view.all(EntityType.ENVIRONMENT):
        if env.name.lower() == wanted:
            return env
    return None
