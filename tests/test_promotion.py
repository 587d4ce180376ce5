"""Tests for promotion: preview, apply, rollback and failure handling."""

import pytest

from govcore.entity import EntityType
from govcore.exceptions import (
    NotFoundError,
    PromotionFailed,
    ReferentialConflict,
    StalePreview,
    StalePromotion,
    ValidationError,
)
from govcore.promotion import ChangeKind, PromotionEngine, PromotionStatus, diff_digest, planned_id
from govcore.registry.scope import subscription_scope

S2 = subscription_scope("s2")


@pytest.fixture
def dev_assignment(core, dev_prod, require_tag):
    dev, _ = dev_prod
    return core.assignments.create_assignment(
        "require-owner-tag", {"definition_id": require_tag.id}, {"environment_id": dev.id},
        enforcement_mode="Audit",
    )


@pytest.fixture
def request_(core, dev_prod, require_tag, dev_assignment):
    dev, prod = dev_prod
    return core.promotions.create_request(
        dev.id, prod.id,
        [(EntityType.POLICY_DEFINITION, require_tag.id), (EntityType.ASSIGNMENT, dev_assignment.id)],
        actor="alice",
    )


def _without_requests(collections):
    return {k: v for k, v in collections.items() if k != EntityType.PROMOTION_REQUEST.value}


class TestCreateRequest:
    def test_draft(self, request_, dev_prod):
        dev, prod = dev_prod
        assert request_.status == PromotionStatus.DRAFT
        assert request_.source_environment_id == dev.id
        assert request_.target_environment_id == prod.id
        assert [t.status for t in request_.transitions] == [PromotionStatus.DRAFT]
        assert request_.transitions[0].actor == "alice"

    def test_target_must_be_higher_tier(self, core, dev_prod, require_tag):
        dev, prod = dev_prod
        with pytest.raises(ValidationError, match="higher tier"):
            core.promotions.create_request(prod.id, dev.id, [("policy_definition", require_tag.id)])

    def test_unknown_entities_and_environments(self, core, dev_prod, require_tag):
        dev, prod = dev_prod
        with pytest.raises(NotFoundError):
            core.promotions.create_request(dev.id, "env_missing", [("policy_definition", require_tag.id)])
        with pytest.raises(NotFoundError):
            core.promotions.create_request(dev.id, prod.id, [("policy_definition", "pd_missing")])
        with pytest.raises(ValidationError):
            core.promotions.create_request(dev.id, prod.id, [])

    def test_scope_assignment_not_promotable(self, core, dev_prod, require_tag):
        dev, prod = dev_prod
        scoped = core.assignments.create_assignment(
            "rg", {"definition_id": require_tag.id}, {"scope": "/subscriptions/s1/resourceGroups/rg1"}
        )
        with pytest.raises(ValidationError, match="environment-level"):
            core.promotions.create_request(dev.id, prod.id, [("assignment", scoped.id)])

    def test_entity_must_belong_to_source(self, core, dev_prod):
        dev, prod = dev_prod
        shared = core.catalog.create_definition("shared", "audit", {"if": {}, "then": {"effect": "audit"}})
        with pytest.raises(ValidationError, match="source environment"):
            core.promotions.create_request(dev.id, prod.id, [{"entity_type": "policy_definition", "entity_id": shared.id}])

    def test_provider_entry_not_promotable(self, core, dev_prod):
        dev, prod = dev_prod
        [builtin_id] = core.sync.mirror_definitions([{
            "provider_id": "/builtin/1", "name": "builtin", "effect": "audit", "rule": {"if": {}},
        }])
        with pytest.raises(ValidationError):
            core.promotions.create_request(dev.id, prod.id, [("policy_definition", builtin_id)])


class TestPreview:
    def test_preview_new_entities(self, core, request_, require_tag, dev_assignment, dev_prod):
        _, prod = dev_prod
        previewed = core.promotions.preview(request_.id)

        assert previewed.status == PromotionStatus.PREVIEWED
        assert [e.change for e in previewed.diff] == [ChangeKind.NEW, ChangeKind.NEW]
        definition_entry, assignment_entry = previewed.diff
        assert definition_entry.source_id == require_tag.id
        assert definition_entry.target_id == planned_id(EntityType.POLICY_DEFINITION, request_.id, require_tag.id)
        assert assignment_entry.after["policy"]["definition_id"] == definition_entry.target_id
        assert assignment_entry.after["target"] == {"environment_id": prod.id, "scope": None}
        assert previewed.preview_digest == diff_digest(previewed.diff)

        [item] = previewed.impact
        assert item.resource == S2
        assert item.before == []
        assert item.added == [assignment_entry.target_id]
        assert item.after[0].enforcement_mode == "Audit"

    def test_preview_writes_nothing_but_the_request(self, core, request_):
        before = _without_requests(core.store.snapshot().snapshot_collections())
        core.promotions.preview(request_.id)
        assert _without_requests(core.store.snapshot().snapshot_collections()) == before

    def test_preview_is_repeatable(self, core, request_):
        first = core.promotions.preview(request_.id)
        second = core.promotions.preview(request_.id)
        assert first.preview_digest == second.preview_digest
        assert [t.status for t in second.transitions] == [
            PromotionStatus.DRAFT, PromotionStatus.PREVIEWED, PromotionStatus.PREVIEWED,
        ]

    def test_source_dependency_is_carried_along(self, core, dev_prod, require_tag, dev_assignment):
        dev, prod = dev_prod
        request = core.promotions.create_request(dev.id, prod.id, [("assignment", dev_assignment.id)])
        previewed = core.promotions.preview(request.id)

        definition_entry, assignment_entry = previewed.diff
        assert definition_entry.source_id == require_tag.id
        assert definition_entry.dependency
        assert not assignment_entry.dependency
        assert assignment_entry.after["policy"]["definition_id"] == definition_entry.target_id

    def test_dependency_already_at_target_is_unchanged(self, core, dev_prod, request_, require_tag, dev_assignment):
        dev, prod = dev_prod
        core.promotions.preview(request_.id)
        core.promotions.apply(request_.id)

        again = core.promotions.create_request(dev.id, prod.id, [("assignment", dev_assignment.id)])
        previewed = core.promotions.preview(again.id)
        assert [(e.dependency, e.change) for e in previewed.diff] == [
            (True, ChangeKind.UNCHANGED), (False, ChangeKind.UNCHANGED),
        ]


class TestApply:
    def test_scenario_d_apply_once(self, core, request_, require_tag, dev_prod):
        """Preview shows New, apply creates it in Prod, a second apply is stale."""
        _, prod = dev_prod
        previewed = core.promotions.preview(request_.id)
        assert {e.change for e in previewed.diff} == {ChangeKind.NEW}

        applied = core.promotions.apply(request_.id, actor="bob")
        assert applied.status == PromotionStatus.APPLIED
        assert [c.change for c in applied.applied_changes] == [ChangeKind.NEW, ChangeKind.NEW]

        promoted = core.catalog.get_definition(previewed.diff[0].target_id)
        assert promoted.origin_environment_id == prod.id
        assert promoted.promoted_from == require_tag.id
        assert promoted.rule == require_tag.rule
        assert core.assignments.list_assignments(environment_id=prod.id)[0].policy.definition_id == promoted.id

        with pytest.raises(StalePreview):
            core.promotions.apply(request_.id)
        assert core.promotions.get_request(request_.id).status == PromotionStatus.APPLIED

    def test_scenario_d_assignment_only(self, core, dev_prod, require_tag, dev_assignment):
        """Promoting just the assignment brings its definition along."""
        dev, prod = dev_prod
        request = core.promotions.create_request(dev.id, prod.id, [("assignment", dev_assignment.id)])
        previewed = core.promotions.preview(request.id)
        assert [e.change for e in previewed.diff] == [ChangeKind.NEW, ChangeKind.NEW]

        core.promotions.apply(request.id)
        [promoted] = core.assignments.list_assignments(environment_id=prod.id)
        assert promoted.promoted_from == dev_assignment.id
        definition = core.catalog.get_definition(promoted.policy.definition_id)
        assert definition.promoted_from == require_tag.id
        assert definition.origin_environment_id == prod.id

        with pytest.raises(StalePreview):
            core.promotions.apply(request.id)

    def test_scoped_assignment_with_same_name_is_left_alone(self, core, dev_prod, request_, dev_assignment):
        _, prod = dev_prod
        rg = "/subscriptions/s2/resourceGroups/payments"
        scoped = core.assignments.create_assignment(
            dev_assignment.name, {"definition_id": dev_assignment.policy.definition_id}, {"scope": rg},
        )
        previewed = core.promotions.preview(request_.id)
        assert previewed.diff[1].change == ChangeKind.NEW
        assert previewed.diff[1].target_id != scoped.id

        core.promotions.apply(request_.id)
        untouched = core.assignments.get_assignment(scoped.id)
        assert untouched == scoped
        assert untouched.target.scope == rg.lower()

    def test_apply_is_one_batch(self, core, request_):
        core.promotions.preview(request_.id)
        before = len(core.journal)
        core.promotions.apply(request_.id)
        records = core.journal.records_since(before)
        assert len(records) == 3
        assert len({r.batch_id for r in records}) == 1

    def test_apply_requires_preview(self, core, request_):
        with pytest.raises(ValidationError):
            core.promotions.apply(request_.id)

    def test_source_edit_makes_preview_stale(self, core, request_, require_tag):
        core.promotions.preview(request_.id)
        core.catalog.update_definition(require_tag.id, description="edited after preview")
        with pytest.raises(StalePreview):
            core.promotions.apply(request_.id)
        assert core.promotions.get_request(request_.id).status == PromotionStatus.PREVIEWED

        core.promotions.preview(request_.id)
        assert core.promotions.apply(request_.id).status == PromotionStatus.APPLIED

    def test_re_promotion_updates_counterpart(self, core, dev_prod, request_, require_tag):
        dev, prod = dev_prod
        core.promotions.preview(request_.id)
        core.promotions.apply(request_.id)
        core.catalog.update_definition(require_tag.id, effect="audit")

        second = core.promotions.create_request(dev.id, prod.id, [("policy_definition", require_tag.id)])
        previewed = core.promotions.preview(second.id)
        [entry] = previewed.diff
        assert entry.change == ChangeKind.CHANGED
        assert entry.changed_fields == ["effect"]

        core.promotions.apply(second.id)
        counterpart = core.catalog.get_definition(entry.target_id)
        assert counterpart.effect.value == "audit"
        assert counterpart.version == 2

        third = core.promotions.create_request(dev.id, prod.id, [("policy_definition", require_tag.id)])
        assert [e.change for e in core.promotions.preview(third.id).diff] == [ChangeKind.UNCHANGED]
        assert core.promotions.preview(third.id).impact == []

    def test_write_failure_marks_request_failed(self, core, request_, monkeypatch):
        core.promotions.preview(request_.id)
        before = _without_requests(core.store.snapshot().snapshot_collections())

        def broken(view, entity):
            raise ValidationError("simulated write failure")

        monkeypatch.setattr(PromotionEngine, "_validate_written", staticmethod(broken))
        with pytest.raises(PromotionFailed) as info:
            core.promotions.apply(request_.id)

        assert info.value.request_id == request_.id
        failed = core.promotions.get_request(request_.id)
        assert failed.status == PromotionStatus.FAILED
        assert "simulated write failure" in failed.failure_reason
        assert _without_requests(core.store.snapshot().snapshot_collections()) == before
        with pytest.raises(ValidationError):
            core.promotions.preview(request_.id)


class TestRollback:
    def test_rollback_restores_exact_state(self, core, request_):
        core.promotions.preview(request_.id)
        before = _without_requests(core.store.snapshot().snapshot_collections())
        core.promotions.apply(request_.id)
        assert _without_requests(core.store.snapshot().snapshot_collections()) != before

        rolled_back = core.promotions.rollback(request_.id)
        assert rolled_back.status == PromotionStatus.ROLLED_BACK
        assert _without_requests(core.store.snapshot().snapshot_collections()) == before

    def test_rollback_of_changed_counterpart_restores_prior_image(self, core, dev_prod, request_, require_tag):
        dev, prod = dev_prod
        core.promotions.preview(request_.id)
        core.promotions.apply(request_.id)
        core.catalog.update_definition(require_tag.id, description="v2")

        second = core.promotions.create_request(dev.id, prod.id, [("policy_definition", require_tag.id)])
        core.promotions.preview(second.id)
        before = _without_requests(core.store.snapshot().snapshot_collections())
        core.promotions.apply(second.id)
        core.promotions.rollback(second.id)
        assert _without_requests(core.store.snapshot().snapshot_collections()) == before

    def test_later_edit_blocks_rollback(self, core, request_):
        previewed = core.promotions.preview(request_.id)
        core.promotions.apply(request_.id)
        core.catalog.update_definition(previewed.diff[0].target_id, description="hotfix in prod")

        with pytest.raises(StalePromotion):
            core.promotions.rollback(request_.id)
        assert core.promotions.get_request(request_.id).status == PromotionStatus.APPLIED

    def test_created_definition_in_use_blocks_rollback(self, core, request_):
        previewed = core.promotions.preview(request_.id)
        core.promotions.apply(request_.id)
        promoted_id = previewed.diff[0].target_id
        user = core.assignments.create_assignment(
            "payments-tagging", {"definition_id": promoted_id}, {"scope": "/subscriptions/s2/resourceGroups/payments"},
        )

        with pytest.raises(ReferentialConflict) as info:
            core.promotions.rollback(request_.id)
        assert info.value.referenced_by == [user.id]
        assert core.promotions.get_request(request_.id).status == PromotionStatus.APPLIED
        assert core.catalog.get_definition(promoted_id).id == promoted_id

        core.assignments.delete_assignment(user.id)
        assert core.promotions.rollback(request_.id).status == PromotionStatus.ROLLED_BACK
        with pytest.raises(NotFoundError):
            core.catalog.get_definition(promoted_id)

    def test_only_applied_requests_roll_back(self, core, request_):
        with pytest.raises(ValidationError):
            core.promotions.rollback(request_.id)


class TestQueries:
    def test_list_requests(self, core, request_, dev_prod):
        dev, prod = dev_prod
        assert core.promotions.list_requests(status=PromotionStatus.DRAFT) == [request_]
        assert core.promotions.list_requests(environment_id=prod.id) == [request_]
        assert core.promotions.list_requests(status=PromotionStatus.APPLIED) == []

    def test_open_request_blocks_environment_delete(self, core, request_, dev_prod):
        _, prod = dev_prod
        core.registry.remove_scope_from_environment(prod.id, S2)
        with pytest.raises(ReferentialConflict) as info:
            core.registry.delete_environment(prod.id)
        assert request_.id in info.value.referenced_by
