"""
Governance Core

Wires every component to one explicitly constructed store.

Usage:
    core = GovernanceCore()
    dev = core.registry.create_environment("Dev", tier=0, scopes=[subscription_scope("s1")])
    definition = core.catalog.create_definition("require-tag", "deny", {"if": {}, "then": {}})
    core.assignments.create_assignment(
        "require-tag", {"definition_id": definition.id}, {"environment_id": dev.id},
    )
    core.resolver.resolve("/subscriptions/s1/resourceGroups/rg1")
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from govcore.assignments.assignments import AssignmentStore
from govcore.catalog.catalog import PolicyCatalog
from govcore.compliance import ComplianceReporter
from govcore.config import GovernanceConfig
from govcore.importer import Importer
from govcore.journal.backup import Backup, read_backup, restore, take_backup, write_backup
from govcore.journal.journal import Journal
from govcore.promotion.engine import PromotionEngine
from govcore.registry.registry import EnvironmentRegistry
from govcore.resolution.engine import ResolutionEngine
from govcore.store.store import GovernanceStore
from govcore.sync import ProviderSync

logger = logging.getLogger(__name__)


class GovernanceCore:
    """
    One store plus the components operating on it.

    Args:
        store: Existing store to wrap; a new one is built from *config*
            when omitted.
        config: Configuration for a new store.
        clock: Clock for a new store (tests inject a fixed one).
    """

    def __init__(
        self,
        store: Optional[GovernanceStore] = None,
        config: Optional[GovernanceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store or GovernanceStore(config=config, clock=clock)
        self.registry = EnvironmentRegistry(self.store)
        self.catalog = PolicyCatalog(self.store)
        self.assignments = AssignmentStore(self.store)
        self.resolver = ResolutionEngine(self.store)
        self.promotions = PromotionEngine(self.store, resolver=self.resolver)
        self.compliance = ComplianceReporter(self.store, resolver=self.resolver)
        self.importer = Importer(self.store)
        self.sync = ProviderSync(self.store)

    @property
    def config(self) -> GovernanceConfig:
        return self.store.config

    @property
    def journal(self) -> Journal:
        return self.store.journal

    @classmethod
    def from_config_file(cls, path: str | Path) -> "GovernanceCore":
        """Build a core from a YAML configuration file.

        With the jsonl journal backend, existing records are replayed so
        the core resumes where it left off.
        """
        return cls(config=GovernanceConfig.from_yaml(path))

    @classmethod
    def from_backup(
        cls,
        backup: Backup | str | Path,
        until: Optional[datetime] = None,
        config: Optional[GovernanceConfig] = None,
    ) -> "GovernanceCore":
        """Restore a core from a backup, optionally to a point in time."""
        if not isinstance(backup, Backup):
            backup = read_backup(backup)
        if until is not None:
            # Point-in-time recovery replays from an empty store up to *until*.
            empty = Backup(taken_at=backup.taken_at)
            store = restore(empty, journal=backup.journal, until=until, config=config)
        else:
            store = restore(backup, config=config)
        return cls(store=store)

    def backup(self, path: Optional[str | Path] = None) -> Backup:
        """Snapshot the store, writing it to *path* when given."""
        snapshot = take_backup(self.store)
        if path is not None:
            write_backup(snapshot, path)
            logger.info("Wrote backup %s to %s", snapshot.backup_id, path)
        return snapshot
