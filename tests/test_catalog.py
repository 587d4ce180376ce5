"""Tests for the policy catalog."""

import pytest

from govcore.catalog import PolicyEffect, PolicyOrigin, validate_parameters
from govcore.catalog.models import ParameterSpec
from govcore.exceptions import NotFoundError, ReferentialConflict, ValidationError
from govcore.journal.records import ChangeOperation

RULE = {"if": {"field": "location", "notIn": "[parameters('locations')]"}, "then": {"effect": "deny"}}


class TestDefinitions:
    def test_create_definition(self, core, require_tag, dev_prod):
        dev, _ = dev_prod
        assert require_tag.id.startswith("pd_")
        assert require_tag.effect == PolicyEffect.DENY
        assert require_tag.origin == PolicyOrigin.CUSTOM
        assert require_tag.version == 1
        assert require_tag.parameters["tagName"].default == "owner"
        assert core.catalog.find_definition("require-tag", dev.id) == require_tag
        assert core.catalog.find_definition("require-tag") is None

    def test_same_name_allowed_in_another_environment(self, core, require_tag, dev_prod):
        _, prod = dev_prod
        other = core.catalog.create_definition("require-tag", "audit", RULE, origin_environment_id=prod.id)
        assert other.id != require_tag.id

    def test_duplicate_name_rejected(self, core, require_tag, dev_prod):
        dev, _ = dev_prod
        with pytest.raises(ValidationError):
            core.catalog.create_definition("require-tag", "audit", RULE, origin_environment_id=dev.id)

    def test_invalid_effect_and_empty_rule(self, core):
        with pytest.raises(ValidationError):
            core.catalog.create_definition("bad", "explode", RULE)
        with pytest.raises(ValidationError):
            core.catalog.create_definition("bad", "deny", {})

    def test_default_must_be_allowed(self, core):
        with pytest.raises(ValidationError):
            core.catalog.create_definition(
                "bad", "deny", RULE,
                parameters={"effect": {"type": "string", "default": "x", "allowed_values": ["deny", "audit"]}},
            )

    def test_unknown_origin_environment(self, core):
        with pytest.raises(NotFoundError):
            core.catalog.create_definition("orphan", "deny", RULE, origin_environment_id="env_missing")

    def test_update_bumps_version(self, core, require_tag):
        updated = core.catalog.update_definition(require_tag.id, effect="audit", description="softer")
        assert updated.version == 2
        assert updated.revision == 2
        assert updated.effect == PolicyEffect.AUDIT
        versions = core.catalog.versions(require_tag.id)
        assert [v["version"] for v in versions] == [1, 2]
        assert [r.operation for r in core.catalog.history(require_tag.id)] == [
            ChangeOperation.CREATE, ChangeOperation.UPDATE,
        ]

    def test_noop_update_writes_nothing(self, core, require_tag):
        before = len(core.journal)
        assert core.catalog.update_definition(require_tag.id, effect="deny") == require_tag
        assert len(core.journal) == before

    def test_update_rejects_unknown_fields(self, core, require_tag):
        with pytest.raises(ValidationError):
            core.catalog.update_definition(require_tag.id, name="renamed")

    def test_update_revalidates_existing_assignments(self, core, require_tag, dev_prod):
        dev, _ = dev_prod
        core.assignments.create_assignment(
            "tags", {"definition_id": require_tag.id}, {"environment_id": dev.id},
            parameters={"tagName": "cost-center"},
        )
        with pytest.raises(ValidationError):
            core.catalog.update_definition(
                require_tag.id, parameters={"tagName": {"type": "integer", "default": 1}}
            )
        assert core.catalog.get_definition(require_tag.id).version == 1

    def test_provider_definitions_are_read_only(self, core):
        core.sync.mirror_definitions([{
            "provider_id": "/providers/builtin/allowed-locations",
            "name": "allowed-locations",
            "effect": "deny",
            "rule": RULE,
        }])
        builtin = core.catalog.list_definitions(origin=PolicyOrigin.PROVIDER)[0]
        with pytest.raises(ValidationError):
            core.catalog.update_definition(builtin.id, effect="audit")

    def test_list_and_get(self, core, require_tag, dev_prod):
        dev, prod = dev_prod
        assert core.catalog.list_definitions(environment_id=dev.id) == [require_tag]
        assert core.catalog.list_definitions(environment_id=prod.id) == []
        with pytest.raises(NotFoundError):
            core.catalog.get_definition("pd_missing")


class TestDeleteDefinition:
    def test_scenario_e_referenced_definition_cannot_be_deleted(self, core, require_tag, dev_prod):
        """Delete fails while an assignment refers to the definition; succeeds after."""
        dev, _ = dev_prod
        assignment = core.assignments.create_assignment(
            "tags", {"definition_id": require_tag.id}, {"environment_id": dev.id}
        )
        with pytest.raises(ReferentialConflict) as info:
            core.catalog.delete_definition(require_tag.id)
        assert info.value.referenced_by == [assignment.id]

        core.assignments.delete_assignment(assignment.id)
        core.catalog.delete_definition(require_tag.id)

        with pytest.raises(NotFoundError):
            core.catalog.get_definition(require_tag.id)
        deletions = [r for r in core.journal.all() if r.operation == ChangeOperation.DELETE]
        assert [r.entity_id for r in deletions] == [assignment.id, require_tag.id]

    def test_set_membership_blocks_delete(self, core, require_tag):
        policy_set = core.catalog.create_set(
            "baseline", members=[{"reference_id": "tags", "definition_id": require_tag.id}]
        )
        with pytest.raises(ReferentialConflict) as info:
            core.catalog.delete_definition(require_tag.id)
        assert policy_set.id in info.value.referenced_by


class TestPolicySets:
    def _locations(self, core, dev_prod):
        dev, _ = dev_prod
        return core.catalog.create_definition(
            "allowed-locations", "deny", RULE,
            parameters={"locations": {"type": "array"}},
            origin_environment_id=dev.id,
        )

    def test_create_set_with_literal_parameters(self, core, dev_prod, require_tag):
        locations = self._locations(core, dev_prod)
        policy_set = core.catalog.create_set(
            "baseline",
            members=[
                {"reference_id": "tags", "definition_id": require_tag.id},
                {"reference_id": "loc", "definition_id": locations.id, "parameters": {"locations": ["westeurope"]}},
            ],
        )
        assert policy_set.definition_ids() == [require_tag.id, locations.id]
        assert policy_set.member("loc").parameters == {"locations": ["westeurope"]}

    def test_member_missing_required_parameter(self, core, dev_prod):
        locations = self._locations(core, dev_prod)
        with pytest.raises(ValidationError):
            core.catalog.create_set("baseline", members=[{"reference_id": "loc", "definition_id": locations.id}])

    def test_member_forwards_set_parameter(self, core, dev_prod):
        locations = self._locations(core, dev_prod)
        policy_set = core.catalog.create_set(
            "baseline",
            members=[{
                "reference_id": "loc",
                "definition_id": locations.id,
                "parameters": {"locations": "[parameters('regions')]"},
            }],
            parameters={"regions": {"type": "array", "default": ["westeurope"]}},
        )
        assert policy_set.parameters["regions"].default == ["westeurope"]

    def test_forwarding_unknown_set_parameter(self, core, dev_prod):
        locations = self._locations(core, dev_prod)
        with pytest.raises(ValidationError):
            core.catalog.create_set(
                "baseline",
                members=[{
                    "reference_id": "loc",
                    "definition_id": locations.id,
                    "parameters": {"locations": "[parameters('nope')]"},
                }],
            )

    def test_unknown_member_definition(self, core):
        with pytest.raises(NotFoundError):
            core.catalog.create_set("baseline", members=[{"reference_id": "x", "definition_id": "pd_missing"}])

    def test_duplicate_reference_ids(self, core, require_tag):
        with pytest.raises(ValidationError):
            core.catalog.create_set("baseline", members=[
                {"reference_id": "x", "definition_id": require_tag.id},
                {"reference_id": "x", "definition_id": require_tag.id},
            ])

    def test_update_and_delete_set(self, core, dev_prod, require_tag):
        locations = self._locations(core, dev_prod)
        policy_set = core.catalog.create_set(
            "baseline", members=[{"reference_id": "tags", "definition_id": require_tag.id}]
        )
        updated = core.catalog.update_set(policy_set.id, members=[
            {"reference_id": "tags", "definition_id": require_tag.id},
            {"reference_id": "loc", "definition_id": locations.id, "parameters": {"locations": ["uksouth"]}},
        ])
        assert updated.version == 2
        assert len(updated.members) == 2
        core.catalog.delete_set(policy_set.id)
        assert core.catalog.list_sets() == []


class TestParameterValidation:
    SCHEMA = {
        "effect": ParameterSpec(type="string", default="deny", allowed_values=["deny", "audit"]),
        "count": ParameterSpec(type="integer"),
    }

    def test_defaults_filled_in(self):
        assert validate_parameters(self.SCHEMA, {"count": 3}) == {"effect": "deny", "count": 3}

    def test_missing_required(self):
        with pytest.raises(ValidationError, match="'count' is required"):
            validate_parameters(self.SCHEMA, {})

    def test_bool_is_not_an_integer(self):
        with pytest.raises(ValidationError, match="integer"):
            validate_parameters(self.SCHEMA, {"count": True})

    def test_allowed_values(self):
        with pytest.raises(ValidationError, match="must be one of"):
            validate_parameters(self.SCHEMA, {"count": 1, "effect": "modify"})

    def test_unknown_names(self):
        with pytest.raises(ValidationError, match="Unknown parameters"):
            validate_parameters(self.SCHEMA, {"count": 1, "extra": 2})
