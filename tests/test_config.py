"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from govcore import GovernanceConfig, GovernanceCore, TieBreakRule


class TestGovernanceConfig:
    def test_defaults(self):
        config = GovernanceConfig()
        assert config.journal_backend == "memory"
        assert config.tie_break == TieBreakRule.MOST_RECENT
        assert config.default_actor == "system"

    def test_jsonl_requires_path(self):
        with pytest.raises(ValidationError):
            GovernanceConfig(journal_backend="jsonl")

    def test_lock_timeout_bounds(self):
        with pytest.raises(ValidationError):
            GovernanceConfig(lock_timeout_seconds=0)

    def test_yaml_round_trip(self, tmp_path):
        path = tmp_path / "govcore.yaml"
        config = GovernanceConfig(tie_break=TieBreakRule.EARLIEST, default_actor="pipeline")
        config.to_yaml(path)
        assert GovernanceConfig.from_yaml(path) == config

    def test_empty_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert GovernanceConfig.from_yaml(path) == GovernanceConfig()

    def test_core_from_config_file(self, tmp_path):
        path = tmp_path / "govcore.yaml"
        path.write_text(
            "journal_backend: jsonl\n"
            f"journal_path: {tmp_path / 'journal.jsonl'}\n"
            "journal_fsync: false\n"
            "tie_break: earliest\n"
        )
        core = GovernanceCore.from_config_file(path)
        assert core.config.tie_break == TieBreakRule.EARLIEST
        env = core.registry.create_environment("Dev", tier=0)

        again = GovernanceCore.from_config_file(path)
        assert again.registry.get_environment(env.id).name == "Dev"
