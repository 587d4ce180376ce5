"""Shared fixtures: a deterministic clock and a fresh governance core."""

from datetime import datetime, timedelta, timezone

import pytest

from govcore import GovernanceConfig, GovernanceCore, subscription_scope

START = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

S1 = subscription_scope("s1")
S2 = subscription_scope("s2")

RULE = {"if": {"field": "tags['owner']", "exists": False}, "then": {"effect": "[parameters('effect')]"}}


class FakeClock:
    """Ticks one second per reading so every write gets a distinct timestamp."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return GovernanceConfig(lock_timeout_seconds=2.0)


@pytest.fixture
def core(clock, config):
    return GovernanceCore(config=config, clock=clock)


@pytest.fixture
def dev_prod(core):
    """Dev (tier 0, S1) and Prod (tier 1, S2)."""
    dev = core.registry.create_environment("Dev", tier=0, scopes=[S1])
    prod = core.registry.create_environment("Prod", tier=1, scopes=[S2])
    return dev, prod


@pytest.fixture
def require_tag(core, dev_prod):
    """Custom definition "require-tag" authored in Dev."""
    dev, _ = dev_prod
    return core.catalog.create_definition(
        "require-tag",
        effect="deny",
        rule=RULE,
        parameters={"tagName": {"type": "string", "default": "owner"}},
        origin_environment_id=dev.id,
    )
