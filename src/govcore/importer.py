"""
Bulk Import

Creates catalog entries, assignments and exemptions from one structured
batch: one ChangeRecord per entity, and either the whole batch commits
or nothing does.

Entries may name each other through a batch-local ``ref``; any reference
that is not a ref in the batch is taken to be an existing entity id.

Usage:
    batch = ImportBatch.from_yaml("baseline.yaml")
    result = importer.import_batch(batch, actor="import-tool")
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from govcore.assignments.assignments import AssignmentStore
from govcore.assignments.models import Assignment, EnforcementMode, Exemption, ExemptionCategory
from govcore.catalog.catalog import PolicyCatalog
from govcore.catalog.models import ParameterSpec, PolicyDefinition, PolicyOrigin, PolicySet
from govcore.entity import EntityType, build, describe
from govcore.exceptions import ValidationError
from govcore.store.locks import PARTITION, UNPARTITIONED, environment_key

if TYPE_CHECKING:
    from govcore.store.store import GovernanceStore

logger = logging.getLogger(__name__)


class _PolicyTarget(BaseModel):
    """Mixin fields naming a policy and a target."""

    definition: Optional[str] = None
    set: Optional[str] = None
    environment_id: Optional[str] = None
    scope: Optional[str] = None

    @model_validator(mode="after")
    def _one_each(self):
        if (self.definition is None) == (self.set is None):
            raise ValueError("Name exactly one of definition or set")
        if (self.environment_id is None) == (self.scope is None):
            raise ValueError("Name exactly one of environment_id or scope")
        return self


class DefinitionImport(BaseModel):
    ref: Optional[str] = None
    name: str
    effect: str
    rule: dict[str, Any]
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    display_name: Optional[str] = None
    description: Optional[str] = None
    origin_environment_id: Optional[str] = None


class SetMemberImport(BaseModel):
    reference_id: str
    definition: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class SetImport(BaseModel):
    ref: Optional[str] = None
    name: str
    members: list[SetMemberImport]
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    display_name: Optional[str] = None
    description: Optional[str] = None
    origin_environment_id: Optional[str] = None


class AssignmentImport(_PolicyTarget):
    ref: Optional[str] = None
    name: str
    description: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    enforcement_mode: EnforcementMode = EnforcementMode.ENFORCE


class ExemptionImport(_PolicyTarget):
    name: str
    category: ExemptionCategory
    justification: str
    expires_at: Optional[datetime] = None
    no_expiry: bool = False
    member_reference_ids: list[str] = Field(default_factory=list)


class ImportBatch(BaseModel):
    """One atomic import."""

    definitions: list[DefinitionImport] = Field(default_factory=list)
    sets: list[SetImport] = Field(default_factory=list)
    assignments: list[AssignmentImport] = Field(default_factory=list)
    exemptions: list[ExemptionImport] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_refs(self) -> "ImportBatch":
        refs = [
            item.ref for item in [*self.definitions, *self.sets, *self.assignments]
            if item.ref is not None
        ]
        duplicates = sorted({r for r in refs if refs.count(r) > 1})
        if duplicates:
            raise ValueError(f"Duplicate refs in batch: {', '.join(duplicates)}")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportBatch":
        try:
            return cls.model_validate(data or {})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid import batch: {describe(exc)}") from exc

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ImportBatch":
        """Load a batch from a YAML document."""
        with open(Path(path), "r") as f:
            return cls.from_dict(yaml.safe_load(f))

    @classmethod
    def from_json(cls, path: str | Path) -> "ImportBatch":
        with open(Path(path), "r") as f:
            return cls.from_dict(json.load(f))

    def __len__(self) -> int:
        return len(self.definitions) + len(self.sets) + len(self.assignments) + len(self.exemptions)


class ImportResult(BaseModel):
    """Ids created by a batch, by type, plus the ref -> id map."""

    batch_id: str
    created: dict[EntityType, list[str]] = Field(default_factory=dict)
    refs: dict[str, str] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.created.values())


class Importer:
    """Applies import batches through the regular validation path."""

    def __init__(self, store: GovernanceStore) -> None:
        self._store = store
        self._catalog = PolicyCatalog(store)
        self._assignments = AssignmentStore(store)

    def import_batch(self, batch: ImportBatch, actor: Optional[str] = None) -> ImportResult:
        """Create everything in *batch* in one transaction.

        Raises:
            ValidationError, NotFoundError, ScopeOverlap: the first invalid
                entry; nothing from the batch is kept.
        """
        if not len(batch):
            raise ValidationError("Import batch is empty")
        with self._store.transaction(actor, exclusive=self._lock_keys(batch), shared=[PARTITION]) as txn:
            refs: dict[str, str] = {}
            created: dict[EntityType, list[str]] = {t: [] for t in (
                EntityType.POLICY_DEFINITION, EntityType.POLICY_SET,
                EntityType.ASSIGNMENT, EntityType.EXEMPTION,
            )}

            for item in batch.definitions:
                definition = self._catalog.stage_definition(txn, build(
                    PolicyDefinition,
                    origin=PolicyOrigin.CUSTOM,
                    **item.model_dump(exclude={"ref"}),
                ))
                self._remember(refs, item.ref, definition.id)
                created[EntityType.POLICY_DEFINITION].append(definition.id)

            for item in batch.sets:
                members = [
                    {**m.model_dump(exclude={"definition"}), "definition_id": refs.get(m.definition, m.definition)}
                    for m in item.members
                ]
                policy_set = self._catalog.stage_set(txn, build(
                    PolicySet,
                    origin=PolicyOrigin.CUSTOM,
                    members=members,
                    **item.model_dump(exclude={"ref", "members"}),
                ))
                self._remember(refs, item.ref, policy_set.id)
                created[EntityType.POLICY_SET].append(policy_set.id)

            for item in batch.assignments:
                assignment = self._assignments.stage_assignment(txn, build(
                    Assignment,
                    name=item.name,
                    description=item.description,
                    policy=_policy(item, refs),
                    target={"environment_id": item.environment_id, "scope": item.scope},
                    parameters=item.parameters,
                    enforcement_mode=item.enforcement_mode,
                ))
                self._remember(refs, item.ref, assignment.id)
                created[EntityType.ASSIGNMENT].append(assignment.id)

            for item in batch.exemptions:
                exemption = self._assignments.stage_exemption(txn, build(
                    Exemption,
                    name=item.name,
                    policy=_policy(item, refs),
                    target={"environment_id": item.environment_id, "scope": item.scope},
                    category=item.category,
                    justification=item.justification,
                    expires_at=item.expires_at,
                    no_expiry=item.no_expiry,
                    member_reference_ids=item.member_reference_ids,
                ))
                created[EntityType.EXEMPTION].append(exemption.id)

            result = ImportResult(batch_id=txn.id, created=created, refs=refs)
        logger.info("Imported batch %s: %d entit(ies) by %s", result.batch_id, result.total, txn.actor)
        return result

    @staticmethod
    def _remember(refs: dict[str, str], ref: Optional[str], entity_id: str) -> None:
        if ref is not None:
            refs[ref] = entity_id

    def _lock_keys(self, batch: ImportBatch) -> list[str]:
        view = self._store.snapshot()
        keys = {UNPARTITIONED}
        for item in [*batch.definitions, *batch.sets]:
            keys.add(environment_key(item.origin_environment_id))
        for item in [*batch.assignments, *batch.exemptions]:
            if item.environment_id is not None:
                keys.add(environment_key(item.environment_id))
            else:
                try:
                    keys.add(environment_key(view.scope_index.environment_for(item.scope)))
                except ValidationError:
                    # Staging reports the malformed scope.
                    continue
        return sorted(keys)


def _policy(item: _PolicyTarget, refs: dict[str, str]) -> dict[str, Optional[str]]:
    if item.definition is not None:
        return {"definition_id": refs.get(item.definition, item.definition), "set_id": None}
    return {"definition_id": None, "set_id": refs.get(item.set, item.set)}
