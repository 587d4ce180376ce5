"""Tests for the environment registry."""

import pytest

from govcore.entity import EntityType
from govcore.exceptions import NotFoundError, ReferentialConflict, ScopeOverlap, ValidationError
from govcore.registry.scope import (
    management_group_scope,
    resource_group_scope,
    resource_scope,
    subscription_scope,
)

S1 = subscription_scope("s1")
S2 = subscription_scope("s2")
RG1 = resource_group_scope("s1", "rg1")
CORP = management_group_scope("corp")


class TestCreateEnvironment:
    def test_create_and_get(self, core):
        env = core.registry.create_environment("Dev", tier=0, scopes=[S1], description="sandbox")
        assert env.id.startswith("env_")
        assert env.revision == 1
        assert env.scopes == [S1]
        assert core.registry.get_environment(env.id) == env
        assert core.registry.find_environment("dev") == env

    def test_duplicate_name_rejected(self, core):
        core.registry.create_environment("Dev", tier=0)
        with pytest.raises(ValidationError):
            core.registry.create_environment(" dev ", tier=1)

    def test_blank_name_rejected(self, core):
        with pytest.raises(ValidationError):
            core.registry.create_environment("   ", tier=0)

    def test_overlapping_scope_rejected_at_creation(self, core):
        core.registry.create_environment("Dev", tier=0, scopes=[S1])
        with pytest.raises(ScopeOverlap):
            core.registry.create_environment("DevRG", tier=0, scopes=[RG1])

    def test_list_sorted_by_tier(self, core):
        core.registry.create_environment("Prod", tier=2)
        core.registry.create_environment("Dev", tier=0)
        core.registry.create_environment("Test", tier=1)
        assert [e.name for e in core.registry.list_environments()] == ["Dev", "Test", "Prod"]


class TestScopeMembership:
    def test_scenario_b_same_subscription_in_second_environment(self, core):
        """Adding S1 to DevCopy while Dev owns it fails with ScopeOverlap."""
        dev = core.registry.create_environment("Dev", tier=0, scopes=[S1])
        copy = core.registry.create_environment("DevCopy", tier=0)
        with pytest.raises(ScopeOverlap) as info:
            core.registry.add_scope_to_environment(copy.id, S1)
        assert info.value.conflicting_environment_id == dev.id
        assert core.registry.get_environment(copy.id).scopes == []

    def test_descendant_of_other_environment_rejected(self, core):
        core.registry.create_environment("Dev", tier=0, scopes=[S1])
        other = core.registry.create_environment("Other", tier=0)
        with pytest.raises(ScopeOverlap):
            core.registry.add_scope_to_environment(other.id, RG1)

    def test_ancestor_of_other_environment_rejected(self, core):
        core.registry.place_scope(S1, CORP)
        core.registry.create_environment("Dev", tier=0, scopes=[S1])
        other = core.registry.create_environment("Other", tier=0)
        with pytest.raises(ScopeOverlap):
            core.registry.add_scope_to_environment(other.id, CORP)

    def test_nested_scopes_within_one_environment_allowed(self, core):
        dev = core.registry.create_environment("Dev", tier=0, scopes=[S1])
        dev = core.registry.add_scope_to_environment(dev.id, RG1)
        assert dev.scopes == [S1, RG1]
        assert dev.revision == 2

    def test_duplicate_registration_rejected(self, core):
        dev = core.registry.create_environment("Dev", tier=0, scopes=[S1])
        with pytest.raises(ValidationError):
            core.registry.add_scope_to_environment(dev.id, "/Subscriptions/S1")

    def test_remove_scope(self, core):
        dev = core.registry.create_environment("Dev", tier=0, scopes=[S1, S2])
        dev = core.registry.remove_scope_from_environment(dev.id, S1)
        assert dev.scopes == [S2]
        with pytest.raises(NotFoundError):
            core.registry.remove_scope_from_environment(dev.id, S1)

    def test_removed_scope_can_move(self, core):
        dev = core.registry.create_environment("Dev", tier=0, scopes=[S1])
        test = core.registry.create_environment("Test", tier=1)
        core.registry.remove_scope_from_environment(dev.id, S1)
        assert core.registry.add_scope_to_environment(test.id, S1).scopes == [S1]


class TestResolveEnvironment:
    def test_closest_registered_ancestor_wins(self, core):
        dev = core.registry.create_environment("Dev", tier=0, scopes=[S1])
        vm = resource_scope("s1", "rg1", "vm1")
        assert core.registry.resolve_environment_for_resource(vm) == dev

    def test_uncovered_resource_is_not_found(self, core):
        core.registry.create_environment("Dev", tier=0, scopes=[S1])
        assert core.registry.resolve_environment_for_resource(resource_group_scope("s9", "rg")) is None

    def test_management_group_registration_covers_placed_subscriptions(self, core):
        env = core.registry.create_environment("Corp", tier=0, scopes=[CORP])
        core.registry.place_scope(S2, CORP)
        assert core.registry.resolve_environment_for_resource(resource_group_scope("s2", "rg")) == env
        assert core.registry.ancestors(resource_group_scope("s2", "rg"))[-1] == CORP


class TestPlacement:
    def test_place_rejects_partition_break(self, core):
        core.registry.create_environment("Dev", tier=0, scopes=[S1])
        core.registry.create_environment("Corp", tier=1, scopes=[CORP])
        with pytest.raises(ScopeOverlap):
            core.registry.place_scope(S1, CORP)
        assert core.store.snapshot().get(EntityType.SCOPE_PLACEMENT, S1) is None

    def test_place_requires_management_group_parent(self, core):
        with pytest.raises(ValidationError):
            core.registry.place_scope(S1, S2)

    def test_place_rejects_cycles(self, core):
        a, b = management_group_scope("a"), management_group_scope("b")
        core.registry.place_scope(a, b)
        with pytest.raises(ValidationError):
            core.registry.place_scope(b, a)

    def test_replace_and_unplace(self, core):
        first = core.registry.place_scope(S1, CORP)
        assert core.registry.place_scope(S1, CORP) == first
        moved = core.registry.place_scope(S1, management_group_scope("other"))
        assert moved.revision == 2
        core.registry.unplace_scope(S1)
        assert core.registry.ancestors(S1) == [S1]


class TestDeleteEnvironment:
    def test_delete_requires_no_scopes(self, core):
        dev = core.registry.create_environment("Dev", tier=0, scopes=[S1])
        with pytest.raises(ReferentialConflict) as info:
            core.registry.delete_environment(dev.id)
        assert info.value.referenced_by == [S1]

    def test_delete_blocked_by_assignment(self, core, dev_prod, require_tag):
        dev, _ = dev_prod
        asg = core.assignments.create_assignment(
            "require-tag", {"definition_id": require_tag.id}, {"environment_id": dev.id}
        )
        core.registry.remove_scope_from_environment(dev.id, S1)
        with pytest.raises(ReferentialConflict) as info:
            core.registry.delete_environment(dev.id)
        assert asg.id in info.value.referenced_by

    def test_delete_empty_environment(self, core):
        env = core.registry.create_environment("Scratch", tier=0)
        core.registry.delete_environment(env.id)
        with pytest.raises(NotFoundError):
            core.registry.get_environment(env.id)
        records = core.journal.query(entity_id=env.id)
        assert [r.operation.value for r in records] == ["create", "delete"]
