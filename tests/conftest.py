"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from orchestrator.graph import ResourceGraph  # noqa: E402
from orchestrator.policy import (  # noqa: E402
    ANY_TYPE,
    FindingCategory,
    NodeRule,
    RuleSet,
    Severity,
    check_public_access_disabled,
)
from provider_mock import FakeClock, make_graph  # noqa: E402


@pytest.fixture
def abc_graph() -> ResourceGraph:
    """A (no deps), B and C (both depend on A)."""
    return make_graph(
        ("A", "service", (), {"publicAccess": "disabled"}),
        ("B", "service", ["A"], {"publicAccess": "disabled"}),
        ("C", "service", ["A"], {"publicAccess": "disabled"}),
    )


@pytest.fixture
def public_access_ruleset() -> RuleSet:
    """Single rule: every node must set publicAccess=disabled."""
    return RuleSet(
        node_rules=(
            NodeRule(
                name="public-access-disabled",
                category=FindingCategory.SECURITY,
                severity=Severity.CRITICAL,
                node_types=frozenset({ANY_TYPE}),
                check=check_public_access_disabled,
            ),
        )
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def landing_zone_yaml() -> str:
    """A graph that passes the built-in rules."""
    return """
name: landing-zone
resources:
  - id: vnet
    type: network
    config:
      addressSpace: 10.0.0.0/16
      tags: {costCenter: platform}
  - id: dns
    type: dns-zone
    config:
      zoneName: privatelink.vaultcore.azure.net
      tags: {costCenter: platform}
    dependsOn: [vnet]
  - id: kv
    type: key-vault
    config:
      publicAccess: disabled
      tags: {costCenter: platform}
    dependsOn: [vnet]
  - id: kv-endpoint
    type: endpoint
    config:
      subnet: vnet/endpoints
      target: kv
      tags: {costCenter: platform}
    dependsOn: [kv, dns]
"""
