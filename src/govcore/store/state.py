"""
Store State

A point-in-time view of every collection. Published states are never
mutated: a transaction forks the current state, stages its writes on the
fork, and the commit publishes a new state. Readers holding an older
state keep a consistent view for as long as they like.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Optional, TypeVar

from govcore.entity import Entity, EntityType
from govcore.exceptions import NotFoundError
from govcore.registry.hierarchy import ScopeIndex

_REGISTRY_TYPES = frozenset({EntityType.ENVIRONMENT, EntityType.SCOPE_PLACEMENT})

T = TypeVar("T")


def entity_models() -> dict[EntityType, type[Entity]]:
    """Model class for every collection."""
    # Imported here: the component packages import the store themselves.
    from govcore.assignments.models import Assignment, Exemption
    from govcore.catalog.models import PolicyDefinition, PolicySet
    from govcore.promotion.models import PromotionRequest
    from govcore.registry.models import Environment, ScopePlacement

    return {
        EntityType.ENVIRONMENT: Environment,
        EntityType.SCOPE_PLACEMENT: ScopePlacement,
        EntityType.POLICY_DEFINITION: PolicyDefinition,
        EntityType.POLICY_SET: PolicySet,
        EntityType.ASSIGNMENT: Assignment,
        EntityType.EXEMPTION: Exemption,
        EntityType.PROMOTION_REQUEST: PromotionRequest,
    }


def entity_from_snapshot(entity_type: EntityType, snapshot: dict[str, Any]) -> Entity:
    """Rebuild an entity from a journal/backup image."""
    return entity_models()[entity_type].model_validate(snapshot)


class StoreState:
    """
    Immutable-by-convention view over all collections.

    Attributes:
        sequence: Journal sequence of the last record reflected here.
    """

    def __init__(
        self,
        collections: Optional[dict[EntityType, dict[str, Entity]]] = None,
        entity_sequences: Optional[dict[tuple[EntityType, str], int]] = None,
        sequence: int = 0,
    ):
        self._collections = {t: dict((collections or {}).get(t, {})) for t in EntityType}
        self._entity_sequences = dict(entity_sequences or {})
        self.sequence = sequence
        self._owned: set[Any] = set(EntityType) | {"sequences"}
        self._memo: dict[str, tuple[frozenset[EntityType], Any]] = {}

    # ── Reads ──────────────────────────────────────────────────────

    def get(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        return self._collections[entity_type].get(entity_id)

    def require(self, entity_type: EntityType, entity_id: str) -> Entity:
        entity = self.get(entity_type, entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type.value} not found: {entity_id}")
        return entity

    def all(self, entity_type: EntityType) -> list[Entity]:
        """Entities of one type, oldest first (ties broken by id)."""
        return sorted(
            self._collections[entity_type].values(),
            key=lambda e: (e.created_at, e.id),
        )

    def count(self, entity_type: EntityType) -> int:
        return len(self._collections[entity_type])

    def entity_sequence(self, entity_type: EntityType, entity_id: str) -> int:
        """Journal sequence of the last write to an entity (0 if never written)."""
        return self._entity_sequences.get((entity_type, entity_id), 0)

    def memo(self, name: str, depends_on: Iterable[EntityType], build: Callable[[], T]) -> T:
        """Cache a derived index until one of *depends_on* is written."""
        cached = self._memo.get(name)
        if cached is None:
            cached = (frozenset(depends_on), build())
            self._memo[name] = cached
        return cached[1]

    @property
    def scope_index(self) -> ScopeIndex:
        return self.memo("scope_index", _REGISTRY_TYPES, self._build_scope_index)

    def _build_scope_index(self) -> ScopeIndex:
        registrations = [
            (scope, env.id)
            for env in self._collections[EntityType.ENVIRONMENT].values()
            for scope in env.scopes
        ]
        placements = {
            p.id: p.parent
            for p in self._collections[EntityType.SCOPE_PLACEMENT].values()
        }
        return ScopeIndex(registrations, placements)

    def by_target(self, entity_type: EntityType) -> dict[str, list[Entity]]:
        """Assignments or exemptions grouped by ``target.key``."""

        def build() -> dict[str, list[Entity]]:
            grouped: dict[str, list[Entity]] = {}
            for entity in self.all(entity_type):
                grouped.setdefault(entity.target.key, []).append(entity)
            return grouped

        return self.memo(f"by_target:{entity_type.value}", {entity_type}, build)

    def snapshot_collections(self) -> dict[str, list[dict[str, Any]]]:
        """Full JSON image of every collection, for backups and comparisons."""
        return {
            t.value: [e.snapshot() for e in sorted(self._collections[t].values(), key=lambda e: e.id)]
            for t in EntityType
        }

    # ── Copy-on-write ──────────────────────────────────────────────

    def fork(self) -> "StoreState":
        """A writable copy sharing storage with this state until written."""
        child = StoreState.__new__(StoreState)
        child._collections = dict(self._collections)
        child._entity_sequences = self._entity_sequences
        child.sequence = self.sequence
        child._owned = set()
        child._memo = dict(self._memo)
        return child

    def write(
        self,
        entity_type: EntityType,
        entity_id: str,
        entity: Optional[Entity],
        sequence: Optional[int] = None,
    ) -> None:
        """Put (or, with ``entity=None``, remove) an entity on this fork."""
        if entity_type not in self._owned:
            self._collections[entity_type] = dict(self._collections[entity_type])
            self._owned.add(entity_type)
        if entity is None:
            self._collections[entity_type].pop(entity_id, None)
        else:
            self._collections[entity_type][entity_id] = entity
        if sequence is not None:
            if "sequences" not in self._owned:
                self._entity_sequences = dict(self._entity_sequences)
                self._owned.add("sequences")
            self._entity_sequences[(entity_type, entity_id)] = sequence
            self.sequence = max(self.sequence, sequence)
        self._memo = {
            name: cached for name, cached in self._memo.items()
            if entity_type not in cached[0]
        }
