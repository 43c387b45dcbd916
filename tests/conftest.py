"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- settings: Settings pointing every path into tmp_path, no retry backoff
- state: Empty State Store
- provider: In-memory FakeCloudProvider (no persistence)
- engine: ProvisioningEngine wired to the fixtures above
- declare: Builds a DeclarationSet from plain resource dicts
- run: Plans and applies a DeclarationSet
"""

from typing import Any, Dict, Optional

import pytest

from provisioner.engine.runner import ProvisioningEngine
from provisioner.models import DeclarationSet
from provisioner.providers import FakeCloudProvider
from provisioner.settings import Settings
from provisioner.state import StateStore


def make_declarations(*resources: Dict[str, Any], variables: Optional[Dict[str, Any]] = None) -> DeclarationSet:
    """Declaration set for project 'test' with the given resources."""
    return DeclarationSet(
        project={"name": "test"},
        variables=variables or {},
        resources=list(resources),
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated to the test's temporary directory."""
    return Settings(
        state_path=str(tmp_path / "state.json"),
        runs_path=str(tmp_path / "runs"),
        fake_inventory_path=None,
        max_workers=4,
        operation_timeout_seconds=5.0,
        max_attempts=3,
        retry_backoff_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        log_level="DEBUG",
    )


@pytest.fixture
def state(settings) -> StateStore:
    """Empty State Store."""
    return StateStore(settings.state_path)


@pytest.fixture
def provider() -> FakeCloudProvider:
    """Fake cloud without latency, failures or persistence."""
    return FakeCloudProvider()


@pytest.fixture
def engine(settings, state, provider) -> ProvisioningEngine:
    """Engine sharing the state and provider fixtures."""
    return ProvisioningEngine(settings=settings, state=state, provider=provider)


@pytest.fixture
def declare():
    """Return the declaration-set builder."""
    return make_declarations


@pytest.fixture
def run(engine):
    """Plan and apply declarations; returns (ctx, summary)."""
    def _run(declarations: DeclarationSet, destroy: bool = False):
        ctx = engine.plan_declarations(declarations, destroy=destroy)
        return ctx, engine.apply(ctx)
    return _run


@pytest.fixture
def network_and_dependent() -> DeclarationSet:
    """Network N and a subnet D referencing N's assigned identifier."""
    return make_declarations(
        {"type": "network", "name": "main", "attributes": {"cidr_block": "10.0.0.0/16"}},
        {
            "type": "subnet",
            "name": "app",
            "attributes": {
                "network_id": "${network.main.id}",
                "cidr_block": "10.0.1.0/24",
            },
        },
    )


@pytest.fixture
def chain() -> DeclarationSet:
    """A -> B -> C: C depends on B depends on A."""
    return make_declarations(
        {"type": "thing", "name": "a", "attributes": {"size": 1}},
        {"type": "thing", "name": "b", "attributes": {"parent": "${thing.a.id}"}},
        {"type": "thing", "name": "c", "attributes": {"parent": "${thing.b.id}"}},
    )


@pytest.fixture
def sample_yaml() -> str:
    """Small YAML document with a count family and a for_each family."""
    return """
project:
  name: sample
variables:
  cidrs: [10.0.0.0/24, 10.0.1.0/24]
resources:
  - type: network
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
  - type: subnet
    name: public
    count: 2
    attributes:
      network_id: ${network.main.id}
      cidr_block: ${var.cidrs[count.index]}
  - type: subnet
    name: private
    for_each:
      a: 10.0.10.0/24
      b: 10.0.11.0/24
    attributes:
      network_id: ${network.main.id}
      cidr_block: ${each.value}
      zone: local-1${each.key}
"""
