"""
Promotion Engine

Moves definitions, sets and assignments from a lower-tier environment to
a higher-tier one through ``Draft -> Previewed -> Applied``:

* **preview** diffs every selected entity, plus the source catalog entries
  it uses, against its counterpart at the target (matched by lineage,
  else by name) and resolves the target's resources in a sandbox
  projection to itemise what would change;
* **apply** recomputes the diff under the target's exclusive lock and
  refuses if it no longer matches the preview byte for byte, then writes
  everything in one transaction or nothing at all;
* **rollback** puts back the exact images captured at apply time, unless
  something has written those entities since.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any, Iterable, Optional

from govcore.catalog.catalog import check_member_parameters, referencing_entities
from govcore.catalog.models import PolicyOrigin
from govcore.catalog.parameters import validate_parameters
from govcore.entity import Entity, EntityType, build
from govcore.exceptions import (
    NotFoundError,
    PromotionFailed,
    ReferentialConflict,
    StalePreview,
    StalePromotion,
    ValidationError,
)
from govcore.promotion.models import (
    PROMOTABLE_TYPES,
    AppliedChange,
    ChangeKind,
    DiffEntry,
    EntityRef,
    ImpactItem,
    ImpactLine,
    PromotionRequest,
    PromotionStatus,
    StatusTransition,
)
from govcore.registry.registry import target_environment_id
from govcore.resolution.engine import ResolutionEngine
from govcore.resolution.models import EffectivePolicySet
from govcore.store.locks import PARTITION, environment_key
from govcore.store.state import entity_from_snapshot, entity_models

if TYPE_CHECKING:
    from govcore.store.state import StoreState
    from govcore.store.store import GovernanceStore, Transaction

logger = logging.getLogger(__name__)

# Dependency order: catalog entries before the sets and assignments using them.
_APPLY_ORDER = {
    EntityType.POLICY_DEFINITION: 0,
    EntityType.POLICY_SET: 1,
    EntityType.ASSIGNMENT: 2,
}

# Compared and copied content excludes the per-environment content version.
_NOT_PROMOTED = ("version",)


def _promotion_key(request_id: str) -> str:
    return f"promotion:{request_id}"


def diff_digest(diff: list[DiffEntry]) -> str:
    """Digest identifying a diff snapshot exactly."""
    payload = json.dumps([entry.model_dump(mode="json") for entry in diff], sort_keys=True)
    return hashlib.sha256(payload.encode()).hexdigest()


def planned_id(entity_type: EntityType, request_id: str, source_id: str) -> str:
    """Id a new counterpart gets; stable across preview and apply."""
    prefix = entity_models()[entity_type].id_prefix
    digest = hashlib.sha256(f"{request_id}:{source_id}".encode()).hexdigest()
    return f"{prefix}_{digest[:16]}"


class PromotionEngine:
    """
    Drives promotion requests through their state machine.

    Args:
        store: The shared governance store.
        resolver: Resolution engine used for impact previews.
    """

    def __init__(self, store: GovernanceStore, resolver: Optional[ResolutionEngine] = None) -> None:
        self._store = store
        self._resolver = resolver or ResolutionEngine(store)

    # ── Draft ───────────────────────────────────────────────────────

    def create_request(
        self,
        source_environment_id: str,
        target_environment_id: str,
        entities: Iterable[EntityRef | tuple[EntityType | str, str] | dict[str, Any]],
        actor: Optional[str] = None,
    ) -> PromotionRequest:
        """Draft a promotion of *entities* from source to target.

        Raises:
            NotFoundError: an environment or selected entity does not exist.
            ValidationError: the target is not a higher tier, or an entity
                cannot be promoted (provider entry, not owned by the source,
                assignment targeting a raw scope).
        """
        refs = _normalise_refs(entities)
        with self._store.transaction(
            actor,
            shared=[environment_key(source_environment_id), environment_key(target_environment_id)],
        ) as txn:
            view = txn.view
            source = view.get(EntityType.ENVIRONMENT, source_environment_id)
            target = view.get(EntityType.ENVIRONMENT, target_environment_id)
            if source is None:
                raise NotFoundError(f"Environment not found: {source_environment_id}")
            if target is None:
                raise NotFoundError(f"Environment not found: {target_environment_id}")
            if target.tier <= source.tier:
                raise ValidationError(
                    f"Promotion must go to a higher tier: {source.name} is tier {source.tier}, "
                    f"{target.name} is tier {target.tier}"
                )
            for ref in refs:
                self._check_promotable(view, ref, source_environment_id)
            request = build(
                PromotionRequest,
                source_environment_id=source_environment_id,
                target_environment_id=target_environment_id,
                entities=refs,
                transitions=[StatusTransition(status=PromotionStatus.DRAFT, at=txn.now, actor=txn.actor)],
            )
            request = txn.create(request)
        logger.info(
            "Drafted promotion %s: %s -> %s, %d entit(ies)",
            request.id, source.name, target.name, len(refs),
        )
        return request

    # ── Preview ─────────────────────────────────────────────────────

    def preview(
        self,
        request_id: str,
        resources: Optional[Iterable[str]] = None,
        actor: Optional[str] = None,
    ) -> PromotionRequest:
        """Compute the diff and impact of a request and record them.

        Args:
            request_id: A ``Draft`` or ``Previewed`` request.
            resources: Resources to assess; defaults to every scope
                registered to the target environment.
        """
        view = self._store.snapshot()
        request = self._require(view, request_id)
        if not request.can_transition(PromotionStatus.PREVIEWED):
            raise ValidationError(f"Cannot preview a request in status {request.status.value}")

        diff = self._diff(view, request)
        digest = diff_digest(diff)
        impact = self._impact(view, request, diff, resources)

        with self._store.transaction(actor, exclusive=[_promotion_key(request_id)]) as txn:
            current = self._require(txn.view, request_id)
            if current.revision != request.revision:
                raise StalePreview(f"Promotion {request_id} changed while it was being previewed")
            request = txn.update(current.evolve(
                status=PromotionStatus.PREVIEWED,
                diff=diff,
                preview_digest=digest,
                impact=impact,
                transitions=[
                    *current.transitions,
                    StatusTransition(status=PromotionStatus.PREVIEWED, at=txn.now, actor=txn.actor),
                ],
            ))
        logger.info(
            "Previewed promotion %s: %s; %d resource(s) affected",
            request_id, _summary(diff), len(impact),
        )
        return request

    # ── Apply ───────────────────────────────────────────────────────

    def apply(self, request_id: str, actor: Optional[str] = None) -> PromotionRequest:
        """Apply a previewed request atomically.

        Raises:
            StalePreview: the request is not (or no longer) previewed, or
                source/target changed since the preview.
            PromotionFailed: a write failed; nothing was applied and the
                request is now ``Failed``.
        """
        request = self._require(self._store.snapshot(), request_id)
        stage = "check"
        try:
            with self._store.transaction(actor, **self._apply_locks(request)) as txn:
                request = self._require(txn.view, request_id)
                if request.status == PromotionStatus.DRAFT:
                    raise ValidationError(f"Promotion {request_id} must be previewed before it is applied")
                if request.status != PromotionStatus.PREVIEWED:
                    raise StalePreview(
                        f"Preview of promotion {request_id} was already consumed "
                        f"(status {request.status.value}); create a new request"
                    )
                diff = self._diff(txn.view, request)
                if diff_digest(diff) != request.preview_digest:
                    raise StalePreview(
                        f"Source or target changed since promotion {request_id} was previewed; preview again"
                    )
                stage = "write"
                applied = self._write(txn, request, diff)
                request = txn.update(request.evolve(
                    status=PromotionStatus.APPLIED,
                    applied_changes=applied,
                    transitions=[
                        *request.transitions,
                        StatusTransition(status=PromotionStatus.APPLIED, at=txn.now, actor=txn.actor),
                    ],
                ))
        except Exception as exc:
            if stage != "write":
                if isinstance(exc, StalePreview):
                    logger.warning("Refused to apply promotion %s: %s", request_id, exc)
                raise
            reason = f"{type(exc).__name__}: {exc}"
            self._fail(request_id, reason, actor)
            raise PromotionFailed(
                f"Promotion {request_id} failed and was reverted: {reason}", request_id=request_id
            ) from exc
        logger.info("Applied promotion %s: %d change(s)", request_id, len(request.applied_changes))
        return request

    def _fail(self, request_id: str, reason: str, actor: Optional[str]) -> None:
        with self._store.transaction(actor, exclusive=[_promotion_key(request_id)]) as txn:
            request = self._require(txn.view, request_id)
            txn.update(request.evolve(
                status=PromotionStatus.FAILED,
                failure_reason=reason,
                transitions=[
                    *request.transitions,
                    StatusTransition(status=PromotionStatus.FAILED, at=txn.now, actor=txn.actor, note=reason),
                ],
            ))
        logger.warning("Promotion %s failed: %s", request_id, reason)

    def _write(self, txn: Transaction, request: PromotionRequest, diff: list[DiffEntry]) -> list[AppliedChange]:
        applied = []
        for entry in diff:
            if entry.change == ChangeKind.UNCHANGED:
                continue
            if entry.change == ChangeKind.NEW:
                written = txn.create(self._materialise(entry, request, None))
                before = None
            else:
                counterpart = txn.view.require(entry.entity_type, entry.target_id)
                written = txn.update(self._materialise(entry, request, counterpart))
                before = counterpart.snapshot()
            self._validate_written(txn.view, written)
            applied.append(AppliedChange(
                entity_type=entry.entity_type,
                entity_id=written.id,
                change=entry.change,
                before=before,
                after=written.snapshot(),
            ))
        return applied

    @staticmethod
    def _validate_written(view: StoreState, entity: Entity) -> None:
        if entity.entity_type == EntityType.POLICY_SET:
            for member in entity.members:
                definition = view.get(EntityType.POLICY_DEFINITION, member.definition_id)
                if definition is None:
                    raise NotFoundError(f"Set {entity.name} member references missing definition {member.definition_id}")
                check_member_parameters(definition, member, entity.parameters)
        elif entity.entity_type == EntityType.ASSIGNMENT:
            catalog_entry = view.get(entity.policy.entity_type, entity.policy.entity_id)
            if catalog_entry is None:
                raise NotFoundError(f"Assignment {entity.name} references missing {entity.policy.key}")
            validate_parameters(catalog_entry.parameters, entity.parameters, owner=f"assignment {entity.name}")

    # ── Rollback ────────────────────────────────────────────────────

    def rollback(self, request_id: str, actor: Optional[str] = None) -> PromotionRequest:
        """Restore every entity the request touched to its pre-apply image.

        Raises:
            ValidationError: the request is not ``Applied``.
            StalePromotion: a touched entity was written after the apply.
            ReferentialConflict: an entity the request created is now used
                by an assignment, unexpired exemption or set outside it.
        """
        request = self._require(self._store.snapshot(), request_id)
        with self._store.transaction(actor, **self._apply_locks(request)) as txn:
            request = self._require(txn.view, request_id)
            if request.status != PromotionStatus.APPLIED:
                raise ValidationError(f"Only applied promotions can be rolled back (status {request.status.value})")
            for change in request.applied_changes:
                current = txn.view.get(change.entity_type, change.entity_id)
                if current is None or current.snapshot() != change.after:
                    logger.warning(
                        "Refused rollback of promotion %s: %s %s changed after apply",
                        request_id, change.entity_type.value, change.entity_id,
                    )
                    raise StalePromotion(
                        f"{change.entity_type.value} {change.entity_id} was changed after promotion "
                        f"{request_id} was applied; it cannot be rolled back"
                    )
            self._check_unreferenced(txn, request)
            for change in reversed(request.applied_changes):
                image = None
                if change.before is not None:
                    image = entity_from_snapshot(change.entity_type, change.before)
                txn.restore(change.entity_type, change.entity_id, image)
            request = txn.update(request.evolve(
                status=PromotionStatus.ROLLED_BACK,
                transitions=[
                    *request.transitions,
                    StatusTransition(status=PromotionStatus.ROLLED_BACK, at=txn.now, actor=txn.actor),
                ],
            ))
        logger.info("Rolled back promotion %s: %d change(s) restored", request_id, len(request.applied_changes))
        return request

    @staticmethod
    def _check_unreferenced(txn: Transaction, request: PromotionRequest) -> None:
        """Catalog entries the request created must be unused outside it."""
        touched = {change.entity_id for change in request.applied_changes}
        for change in request.applied_changes:
            if change.before is not None or change.entity_type == EntityType.ASSIGNMENT:
                continue
            refs = [
                ref for ref in referencing_entities(txn.view, change.entity_type, change.entity_id, txn.now)
                if ref not in touched
            ]
            if refs:
                logger.warning(
                    "Refused rollback of promotion %s: %s %s is referenced by %s",
                    request.id, change.entity_type.value, change.entity_id, ", ".join(refs),
                )
                raise ReferentialConflict(
                    f"{change.entity_type.value} {change.entity_id} created by promotion {request.id} "
                    f"is now referenced by {', '.join(refs)}; it cannot be rolled back",
                    referenced_by=refs,
                )

    # ── Queries ─────────────────────────────────────────────────────

    def get_request(self, request_id: str) -> PromotionRequest:
        return self._require(self._store.snapshot(), request_id)

    def list_requests(
        self,
        status: Optional[PromotionStatus] = None,
        environment_id: Optional[str] = None,
    ) -> list[PromotionRequest]:
        return [
            r for r in self._store.snapshot().all(EntityType.PROMOTION_REQUEST)
            if (status is None or r.status == status)
            and (environment_id is None or environment_id in (r.source_environment_id, r.target_environment_id))
        ]

    # ── Diff ────────────────────────────────────────────────────────

    def _diff(self, view: StoreState, request: PromotionRequest) -> list[DiffEntry]:
        """Compare every selected entity and its dependencies with their target counterparts."""
        selected = {(r.entity_type, r.entity_id) for r in request.entities}
        for ref in request.entities:
            if view.get(ref.entity_type, ref.entity_id) is None:
                raise NotFoundError(f"Selected {ref.entity_type.value} no longer exists: {ref.entity_id}")
        refs = sorted(
            _with_dependencies(view, request),
            key=lambda r: (_APPLY_ORDER[r.entity_type], r.entity_id),
        )
        # Counterpart ids at the target for every promoted entity, so
        # references between them can be rewritten.
        mapping: dict[str, str] = {}
        sources: list[tuple[Entity, Optional[Entity]]] = []
        for ref in refs:
            source = view.require(ref.entity_type, ref.entity_id)
            counterpart = self._counterpart(view, source, request.target_environment_id)
            mapping[source.id] = (
                counterpart.id if counterpart is not None
                else planned_id(ref.entity_type, request.id, source.id)
            )
            sources.append((source, counterpart))

        diff = []
        for source, counterpart in sources:
            dependency = (source.entity_type, source.id) not in selected
            after = self._translate(view, source, request, mapping)
            before = _promoted_content(counterpart) if counterpart is not None else None
            if before is None:
                change, changed = ChangeKind.NEW, sorted(after)
            else:
                changed = sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))
                change = ChangeKind.CHANGED if changed else ChangeKind.UNCHANGED
            diff.append(DiffEntry(
                entity_type=source.entity_type,
                source_id=source.id,
                name=source.name,
                target_id=mapping[source.id],
                change=change,
                changed_fields=changed,
                before=before,
                after=after,
                source_revision=source.revision,
                target_revision=counterpart.revision if counterpart is not None else 0,
                dependency=dependency,
            ))
        return diff

    @staticmethod
    def _counterpart(view: StoreState, source: Entity, target_environment_id: str) -> Optional[Entity]:
        """Lineage match first, then a same-named entity of the same type.

        Assignments only match environment-level assignments of the target;
        one on a scope inside it is a different assignment.
        """
        if source.entity_type == EntityType.ASSIGNMENT:
            in_target = [
                e for e in view.all(EntityType.ASSIGNMENT)
                if e.target.environment_id == target_environment_id
            ]
        else:
            in_target = [
                e for e in view.all(source.entity_type)
                if _environment_of(view, e) == target_environment_id
            ]
        for entity in in_target:
            if entity.promoted_from == source.id:
                return entity
        for entity in in_target:
            if entity.name == source.name:
                return entity
        return None

    def _translate(
        self,
        view: StoreState,
        source: Entity,
        request: PromotionRequest,
        mapping: dict[str, str],
    ) -> dict[str, Any]:
        """Source content as it should read at the target."""
        content = _promoted_content(source)
        if source.entity_type == EntityType.POLICY_SET:
            content["members"] = [
                {**member, "definition_id": self._target_ref(
                    view, EntityType.POLICY_DEFINITION, member["definition_id"], request, mapping
                )}
                for member in content["members"]
            ]
        elif source.entity_type == EntityType.ASSIGNMENT:
            policy = source.policy
            field = "definition_id" if policy.definition_id is not None else "set_id"
            content["policy"] = {
                "definition_id": None,
                "set_id": None,
                field: self._target_ref(view, policy.entity_type, policy.entity_id, request, mapping),
            }
            content["target"] = {"environment_id": request.target_environment_id, "scope": None}
        return content

    def _target_ref(
        self,
        view: StoreState,
        entity_type: EntityType,
        entity_id: str,
        request: PromotionRequest,
        mapping: dict[str, str],
    ) -> str:
        """Id a reference should point at once it lives in the target."""
        if entity_id in mapping:
            return mapping[entity_id]
        entry = view.get(entity_type, entity_id)
        if entry is None:
            raise NotFoundError(f"{entity_type.value} not found: {entity_id}")
        if entry.origin == PolicyOrigin.PROVIDER or entry.origin_environment_id in (None, request.target_environment_id):
            return entry.id
        counterpart = self._counterpart(view, entry, request.target_environment_id)
        if counterpart is None:
            raise ValidationError(
                f"{entity_type.value} {entry.name} belongs to another environment and is not "
                "present in the target environment"
            )
        return counterpart.id

    def _materialise(self, entry: DiffEntry, request: PromotionRequest, counterpart: Optional[Entity]) -> Entity:
        data = dict(entry.after, promoted_from=entry.source_id)
        if entry.entity_type in (EntityType.POLICY_DEFINITION, EntityType.POLICY_SET):
            data["origin_environment_id"] = request.target_environment_id
        if counterpart is None:
            return build(entity_models()[entry.entity_type], id=entry.target_id, **data)
        if entry.entity_type in (EntityType.POLICY_DEFINITION, EntityType.POLICY_SET):
            data["version"] = counterpart.version + 1
        return counterpart.evolve(**data)

    # ── Impact ──────────────────────────────────────────────────────

    def _impact(
        self,
        view: StoreState,
        request: PromotionRequest,
        diff: list[DiffEntry],
        resources: Optional[Iterable[str]],
    ) -> list[ImpactItem]:
        """Resolve target resources before and after a sandboxed apply."""
        if not any(e.change != ChangeKind.UNCHANGED for e in diff):
            return []
        projection = view.fork()
        now = self._store.now()
        for entry in diff:
            if entry.change == ChangeKind.UNCHANGED:
                continue
            counterpart = view.get(entry.entity_type, entry.target_id) if entry.change == ChangeKind.CHANGED else None
            entity = self._materialise(entry, request, counterpart)
            if counterpart is None:
                entity = entity.evolve(created_at=now, updated_at=now)
            projection.write(entry.entity_type, entity.id, entity)

        if resources is None:
            resources = sorted(view.scope_index.scopes_of(request.target_environment_id))
        items = []
        for resource in resources:
            before = _lines(self._resolver.resolve_in(view, resource, now))
            after = _lines(self._resolver.resolve_in(projection, resource, now))
            added = sorted(set(after) - set(before))
            removed = sorted(set(before) - set(after))
            changed = sorted(k for k in set(before) & set(after) if before[k] != after[k])
            if added or removed or changed:
                items.append(ImpactItem(
                    resource=resource,
                    before=list(before.values()),
                    after=list(after.values()),
                    added=added,
                    removed=removed,
                    changed=changed,
                ))
        return items

    # ── Internals ───────────────────────────────────────────────────

    @staticmethod
    def _require(view: StoreState, request_id: str) -> PromotionRequest:
        request = view.get(EntityType.PROMOTION_REQUEST, request_id)
        if request is None:
            raise NotFoundError(f"Promotion request not found: {request_id}")
        return request

    @staticmethod
    def _apply_locks(request: PromotionRequest) -> dict[str, list[str]]:
        return {
            "exclusive": [environment_key(request.target_environment_id), _promotion_key(request.id)],
            "shared": [environment_key(request.source_environment_id), PARTITION],
        }

    @staticmethod
    def _check_promotable(view: StoreState, ref: EntityRef, source_environment_id: str) -> None:
        if ref.entity_type not in PROMOTABLE_TYPES:
            raise ValidationError(f"{ref.entity_type.value} entities cannot be promoted")
        entity = view.get(ref.entity_type, ref.entity_id)
        if entity is None:
            raise NotFoundError(f"{ref.entity_type.value} not found: {ref.entity_id}")
        if ref.entity_type == EntityType.ASSIGNMENT:
            if entity.target.environment_id is None:
                raise ValidationError(
                    f"Assignment {entity.name} targets scope {entity.target.scope}; "
                    "only environment-level assignments can be promoted"
                )
        elif entity.origin == PolicyOrigin.PROVIDER:
            raise ValidationError(f"Provider entry {entity.name} is shared by every environment")
        if _environment_of(view, entity) != source_environment_id:
            raise ValidationError(f"{ref.entity_type.value} {entity.name} does not belong to the source environment")


def _with_dependencies(view: StoreState, request: PromotionRequest) -> list[EntityRef]:
    """Selected entities plus the source catalog entries they use."""
    refs = {(r.entity_type, r.entity_id): r for r in request.entities}
    pending = list(refs.values())
    while pending:
        ref = pending.pop()
        entity = view.require(ref.entity_type, ref.entity_id)
        if entity.entity_type == EntityType.ASSIGNMENT:
            used = [(entity.policy.entity_type, entity.policy.entity_id)]
        elif entity.entity_type == EntityType.POLICY_SET:
            used = [(EntityType.POLICY_DEFINITION, d) for d in entity.definition_ids()]
        else:
            used = []
        for key in used:
            if key in refs:
                continue
            dependency = view.get(*key)
            if (
                dependency is None
                or dependency.origin != PolicyOrigin.CUSTOM
                or dependency.origin_environment_id != request.source_environment_id
            ):
                continue
            refs[key] = EntityRef(entity_type=key[0], entity_id=key[1])
            pending.append(refs[key])
    return list(refs.values())


def _environment_of(view: StoreState, entity: Entity) -> Optional[str]:
    if entity.entity_type == EntityType.ASSIGNMENT:
        return target_environment_id(view, entity.target)
    return entity.origin_environment_id


def _promoted_content(entity: Entity) -> dict[str, Any]:
    return {k: v for k, v in entity.content().items() if k not in _NOT_PROMOTED}


def _lines(result: EffectivePolicySet) -> dict[str, ImpactLine]:
    return {
        entry.assignment_id: ImpactLine(
            assignment_id=entry.assignment_id,
            assignment_name=entry.assignment_name,
            policy_key=entry.policy_key,
            enforcement_mode=entry.enforcement_mode.value,
            effective=entry.effective,
            suppressed=entry.suppressed,
        )
        for entry in result.entries
    }


def _summary(diff: list[DiffEntry]) -> str:
    counts = {kind: 0 for kind in ChangeKind}
    for entry in diff:
        counts[entry.change] += 1
    return ", ".join(f"{counts[kind]} {kind.value.lower()}" for kind in ChangeKind)


def _normalise_refs(entities) -> list[EntityRef]:
    refs: dict[tuple[EntityType, str], EntityRef] = {}
    for item in entities:
        if isinstance(item, EntityRef):
            ref = item
        elif isinstance(item, tuple):
            ref = build(EntityRef, entity_type=item[0], entity_id=item[1])
        else:
            ref = build(EntityRef, **item)
        refs.setdefault((ref.entity_type, ref.entity_id), ref)
    if not refs:
        raise ValidationError("A promotion needs at least one entity")
    return list(refs.values())
