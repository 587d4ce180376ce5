"""
Scope Hierarchy

Ancestor/descendant queries over the scope tree and the trie that backs
the environment partition check.

The tree is the structural hierarchy carried by scope identifiers
(resource -> resource group -> subscription) extended upward by recorded
placements (subscription -> management group -> parent management
group). Paths run root first, so a trie keyed by path answers both
"closest registered ancestor" and "registered descendants" in one walk.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Optional

from govcore.exceptions import ValidationError
from govcore.registry.scope import LEVEL_RANK, Scope, parse_scope

# Longer placement chains than this indicate a cycle.
MAX_PLACEMENT_DEPTH = 16


class _TrieNode:
    __slots__ = ("children", "owner", "scope_id")

    def __init__(self, scope_id: Optional[str] = None):
        self.children: dict[str, _TrieNode] = {}
        self.owner: Optional[str] = None
        self.scope_id = scope_id


class ScopeTrie:
    """Trie keyed by scope path; each node may be owned by one environment."""

    def __init__(self) -> None:
        self._root = _TrieNode()
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def insert(self, path: tuple[str, ...], owner: str) -> None:
        node = self._root
        for scope_id in path:
            node = node.children.setdefault(scope_id, _TrieNode(scope_id))
        if node.owner is None:
            self._size += 1
        node.owner = owner

    def owner_at(self, path: tuple[str, ...]) -> Optional[str]:
        node = self._find(path)
        return node.owner if node else None

    def owners_on_path(self, path: tuple[str, ...]) -> list[tuple[str, str]]:
        """Registered ``(scope_id, owner)`` pairs along *path*, root first."""
        found = []
        node = self._root
        for scope_id in path:
            node = node.children.get(scope_id)
            if node is None:
                break
            if node.owner is not None:
                found.append((scope_id, node.owner))
        return found

    def closest_owner(self, path: tuple[str, ...]) -> Optional[tuple[str, str]]:
        """The deepest registered node on *path*, i.e. the most specific match."""
        owners = self.owners_on_path(path)
        return owners[-1] if owners else None

    def owners_below(self, path: tuple[str, ...]) -> list[tuple[str, str]]:
        """Registered strict descendants of *path*."""
        node = self._find(path)
        if node is None:
            return []
        return list(self._walk(node))

    def items(self) -> list[tuple[str, str]]:
        return list(self._walk(self._root))

    def _find(self, path: tuple[str, ...]) -> Optional[_TrieNode]:
        node = self._root
        for scope_id in path:
            node = node.children.get(scope_id)
            if node is None:
                return None
        return node

    def _walk(self, node: _TrieNode) -> Iterator[tuple[str, str]]:
        stack = list(node.children.values())
        while stack:
            current = stack.pop()
            if current.owner is not None:
                yield current.scope_id, current.owner
            stack.extend(current.children.values())


@dataclass(frozen=True)
class PartitionViolation:
    """Two environments that both cover the same resources."""

    scope: str
    environment_id: str
    ancestor_scope: str
    ancestor_environment_id: str


class ScopeIndex:
    """
    Read-only index over registered environments and placements.

    Built once per committed store state; every query is answered from
    the trie without scanning environments.
    """

    def __init__(
        self,
        registrations: Iterable[tuple[str, str]],
        placements: Mapping[str, str],
    ):
        """Build the index.

        Args:
            registrations: ``(scope_id, environment_id)`` pairs.
            placements: child scope id -> parent management group id.
        """
        self._placements = dict(placements)
        self._registered: dict[str, str] = {}
        self._trie = ScopeTrie()
        for scope_id, environment_id in registrations:
            self._registered[scope_id] = environment_id
            self._trie.insert(self.path(scope_id), environment_id)

    # ── Tree navigation ─────────────────────────────────────────────

    def parent(self, scope: Scope) -> Optional[str]:
        if scope.parent_id is not None:
            return scope.parent_id
        return self._placements.get(scope.id)

    def ancestors(self, scope_id: str) -> list[str]:
        """*scope_id* and its ancestors, most specific first."""
        scope = parse_scope(scope_id)
        chain = [scope.id]
        placed = 0
        while True:
            parent_id = self.parent(scope)
            if parent_id is None:
                return chain
            if scope.parent_id is None:
                placed += 1
                if placed > MAX_PLACEMENT_DEPTH or parent_id in chain:
                    raise ValidationError(f"Placement cycle above {scope_id}")
            chain.append(parent_id)
            scope = parse_scope(parent_id)

    def path(self, scope_id: str) -> tuple[str, ...]:
        """Root-first path to *scope_id*."""
        return tuple(reversed(self.ancestors(scope_id)))

    def is_ancestor_or_self(self, ancestor_id: str, scope_id: str) -> bool:
        return ancestor_id in self.ancestors(scope_id)

    def related(self, a: str, b: str) -> bool:
        """Whether one scope contains the other."""
        return self.is_ancestor_or_self(a, b) or self.is_ancestor_or_self(b, a)

    def specificity(self, scope_id: str) -> tuple[int, int]:
        """Sort key: higher is more specific (level first, then depth)."""
        chain = self.ancestors(scope_id)
        return LEVEL_RANK[parse_scope(scope_id).level], len(chain)

    # ── Registrations ───────────────────────────────────────────────

    @property
    def registered(self) -> dict[str, str]:
        return dict(self._registered)

    def registered_owner(self, scope_id: str) -> Optional[str]:
        return self._registered.get(scope_id)

    def environment_for(self, scope_id: str) -> Optional[str]:
        """Environment owning the closest registered ancestor-or-self."""
        match = self._trie.closest_owner(self.path(scope_id))
        return match[1] if match else None

    def environment_match(self, scope_id: str) -> Optional[tuple[str, str]]:
        """``(registered_scope_id, environment_id)`` of the closest match."""
        return self._trie.closest_owner(self.path(scope_id))

    def scopes_of(self, environment_id: str) -> list[str]:
        return [s for s, e in self._registered.items() if e == environment_id]

    def conflicts(self, scope_id: str, environment_id: str) -> list[tuple[str, str]]:
        """Registrations in *other* environments that overlap *scope_id*."""
        path = self.path(scope_id)
        overlapping = self._trie.owners_on_path(path) + self._trie.owners_below(path)
        return [(s, e) for s, e in overlapping if e != environment_id]

    def environments_intersecting(self, scope_id: str) -> set[str]:
        """Environments owning any scope above, at, or below *scope_id*."""
        path = self.path(scope_id)
        overlapping = self._trie.owners_on_path(path) + self._trie.owners_below(path)
        return {e for _, e in overlapping}

    def check_partition(self) -> list[PartitionViolation]:
        """Every registration with a registered ancestor in another environment."""
        violations = []
        for scope_id, environment_id in sorted(self._registered.items()):
            for ancestor_id in self.ancestors(scope_id)[1:]:
                owner = self._registered.get(ancestor_id)
                if owner is not None and owner != environment_id:
                    violations.append(PartitionViolation(
                        scope=scope_id,
                        environment_id=environment_id,
                        ancestor_scope=ancestor_id,
                        ancestor_environment_id=owner,
                    ))
        return violations
