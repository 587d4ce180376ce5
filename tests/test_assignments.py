"""Tests for assignments and exemptions."""

from datetime import datetime, timedelta, timezone

import pytest

from govcore.assignments import EnforcementMode, ExemptionCategory, Target, targets_intersect
from govcore.exceptions import NotFoundError, ValidationError
from govcore.registry.hierarchy import ScopeIndex
from govcore.registry.scope import resource_group_scope, subscription_scope

S1 = subscription_scope("s1")
RG1 = resource_group_scope("s1", "rg1")
RG2 = resource_group_scope("s1", "rg2")
LATER = datetime(2026, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def assignment(core, dev_prod, require_tag):
    dev, _ = dev_prod
    return core.assignments.create_assignment(
        "require-owner-tag", {"definition_id": require_tag.id}, {"environment_id": dev.id}
    )


class TestAssignments:
    def test_create_assignment(self, core, assignment, dev_prod, require_tag):
        dev, _ = dev_prod
        assert assignment.id.startswith("asg_")
        assert assignment.enforcement_mode == EnforcementMode.ENFORCE
        assert assignment.policy.key == f"definition:{require_tag.id}"
        assert core.assignments.list_assignments(environment_id=dev.id) == [assignment]
        assert core.assignments.assignments_for_target({"environment_id": dev.id}) == [assignment]

    def test_scope_target_is_canonicalised(self, core, require_tag):
        a = core.assignments.create_assignment(
            "rg", {"definition_id": require_tag.id}, {"scope": "/Subscriptions/S1/ResourceGroups/RG1"}
        )
        assert a.target.scope == RG1

    def test_target_must_be_exactly_one(self, core, require_tag, dev_prod):
        dev, _ = dev_prod
        with pytest.raises(ValidationError):
            core.assignments.create_assignment(
                "both", {"definition_id": require_tag.id}, {"environment_id": dev.id, "scope": S1}
            )
        with pytest.raises(ValidationError):
            core.assignments.create_assignment("neither", {"definition_id": require_tag.id}, {})

    def test_policy_must_be_exactly_one(self, core, dev_prod):
        dev, _ = dev_prod
        with pytest.raises(ValidationError):
            core.assignments.create_assignment("none", {}, {"environment_id": dev.id})

    def test_missing_references(self, core, require_tag):
        with pytest.raises(NotFoundError):
            core.assignments.create_assignment("x", {"definition_id": "pd_missing"}, {"scope": S1})
        with pytest.raises(NotFoundError):
            core.assignments.create_assignment("x", {"definition_id": require_tag.id}, {"environment_id": "env_missing"})

    def test_parameters_validated(self, core, require_tag):
        with pytest.raises(ValidationError):
            core.assignments.create_assignment(
                "x", {"definition_id": require_tag.id}, {"scope": S1}, parameters={"tagName": 42}
            )
        with pytest.raises(ValidationError):
            core.assignments.create_assignment(
                "x", {"definition_id": require_tag.id}, {"scope": S1}, parameters={"unknown": "v"}
            )

    def test_name_unique_per_target(self, core, assignment, require_tag, dev_prod):
        dev, _ = dev_prod
        with pytest.raises(ValidationError):
            core.assignments.create_assignment(
                assignment.name, {"definition_id": require_tag.id}, {"environment_id": dev.id}
            )
        other = core.assignments.create_assignment(assignment.name, {"definition_id": require_tag.id}, {"scope": S1})
        assert other.name == assignment.name

    def test_update_assignment(self, core, assignment):
        updated = core.assignments.update_assignment(assignment.id, enforcement_mode="Audit")
        assert updated.enforcement_mode == EnforcementMode.AUDIT
        assert updated.revision == 2
        with pytest.raises(ValidationError):
            core.assignments.update_assignment(assignment.id, target={"scope": S1})

    def test_delete_assignment(self, core, assignment):
        core.assignments.delete_assignment(assignment.id)
        with pytest.raises(NotFoundError):
            core.assignments.get_assignment(assignment.id)


class TestExemptions:
    def test_create_exemption(self, core, assignment, require_tag):
        exemption = core.assignments.create_exemption(
            "legacy-rg", {"definition_id": require_tag.id}, {"scope": RG1},
            category="Waiver", justification="legacy workload", expires_at=LATER,
        )
        assert exemption.category == ExemptionCategory.WAIVER
        assert exemption.is_active(LATER - timedelta(days=1))
        assert not exemption.is_active(LATER)
        assert core.assignments.active_exemptions() == [exemption]
        assert core.assignments.active_exemptions(at=LATER) == []

    def test_requires_matching_assignment(self, core, require_tag):
        with pytest.raises(ValidationError, match="nothing to exempt"):
            core.assignments.create_exemption(
                "orphan", {"definition_id": require_tag.id}, {"scope": RG1},
                category="Waiver", justification="why", expires_at=LATER,
            )

    def test_assignment_elsewhere_does_not_count(self, core, require_tag, dev_prod):
        _, prod = dev_prod
        core.assignments.create_assignment("prod-tags", {"definition_id": require_tag.id}, {"environment_id": prod.id})
        with pytest.raises(ValidationError):
            core.assignments.create_exemption(
                "dev-rg", {"definition_id": require_tag.id}, {"scope": RG1},
                category="Waiver", justification="why", expires_at=LATER,
            )

    def test_expiry_required_and_in_future(self, core, assignment, require_tag):
        with pytest.raises(ValidationError):
            core.assignments.create_exemption(
                "no-expiry", {"definition_id": require_tag.id}, {"scope": RG1},
                category="Waiver", justification="why",
            )
        with pytest.raises(ValidationError, match="future"):
            core.assignments.create_exemption(
                "expired", {"definition_id": require_tag.id}, {"scope": RG1},
                category="Waiver", justification="why",
                expires_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )

    def test_explicit_no_expiry(self, core, assignment, require_tag):
        exemption = core.assignments.create_exemption(
            "forever", {"definition_id": require_tag.id}, {"scope": RG1},
            category="Mitigated", justification="compensating control", no_expiry=True,
        )
        assert exemption.is_active(datetime(2100, 1, 1, tzinfo=timezone.utc))

    def test_blank_justification_rejected(self, core, assignment, require_tag):
        with pytest.raises(ValidationError):
            core.assignments.create_exemption(
                "blank", {"definition_id": require_tag.id}, {"scope": RG1},
                category="Waiver", justification="   ", expires_at=LATER,
            )

    def test_member_references_must_exist(self, core, require_tag, dev_prod):
        dev, _ = dev_prod
        policy_set = core.catalog.create_set(
            "baseline", members=[{"reference_id": "tags", "definition_id": require_tag.id}]
        )
        core.assignments.create_assignment("baseline", {"set_id": policy_set.id}, {"environment_id": dev.id})
        with pytest.raises(ValidationError, match="Unknown set members"):
            core.assignments.create_exemption(
                "partial", {"set_id": policy_set.id}, {"scope": RG1},
                category="Waiver", justification="why", expires_at=LATER,
                member_reference_ids=["missing"],
            )
        exemption = core.assignments.create_exemption(
            "partial", {"set_id": policy_set.id}, {"scope": RG1},
            category="Waiver", justification="why", expires_at=LATER,
            member_reference_ids=["tags"],
        )
        assert exemption.member_reference_ids == ["tags"]

    def test_member_references_need_a_set(self, core, assignment, require_tag):
        with pytest.raises(ValidationError):
            core.assignments.create_exemption(
                "x", {"definition_id": require_tag.id}, {"scope": RG1},
                category="Waiver", justification="why", expires_at=LATER,
                member_reference_ids=["tags"],
            )

    def test_update_exemption_expiry(self, core, assignment, require_tag):
        exemption = core.assignments.create_exemption(
            "legacy", {"definition_id": require_tag.id}, {"scope": RG1},
            category="Waiver", justification="why", expires_at=LATER,
        )
        extended = core.assignments.update_exemption(exemption.id, expires_at=LATER + timedelta(days=30))
        assert extended.expires_at == LATER + timedelta(days=30)
        forever = core.assignments.update_exemption(exemption.id, no_expiry=True)
        assert forever.no_expiry and forever.expires_at is None
        with pytest.raises(ValidationError):
            core.assignments.update_exemption(exemption.id, expires_at=datetime(2025, 1, 1, tzinfo=timezone.utc))

    def test_expired_exemption_no_longer_blocks_definition_delete(self, core, clock, require_tag):
        a = core.assignments.create_assignment("rg", {"definition_id": require_tag.id}, {"scope": RG1})
        core.assignments.create_exemption(
            "legacy", {"definition_id": require_tag.id}, {"scope": RG1},
            category="Waiver", justification="why", expires_at=LATER,
        )
        core.assignments.delete_assignment(a.id)
        clock.advance(days=90)
        core.catalog.delete_definition(require_tag.id)


class TestTargetsIntersect:
    def test_intersection_rules(self):
        index = ScopeIndex([(S1, "env_dev")], {})
        dev = Target(environment_id="env_dev")
        assert targets_intersect(index, dev, Target(scope=RG1))
        assert targets_intersect(index, Target(scope=RG1), dev)
        assert not targets_intersect(index, Target(environment_id="env_prod"), Target(scope=RG1))
        assert targets_intersect(index, Target(scope=S1), Target(scope=RG1))
        assert not targets_intersect(index, Target(scope=RG1), Target(scope=RG2))
        assert targets_intersect(index, dev, Target(environment_id="env_dev"))
