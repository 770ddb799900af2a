"""Tests for the resource graph, document loading and bundled providers."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from provider_mock import CALLABLE_PROVISIONER, make_graph

from orchestrator.graph import (
    DuplicateNodeError,
    GraphError,
    NodeStatus,
    ResourceGraph,
    ResourceNode,
)
from orchestrator.graph_loader import GraphLoadError, load_graph, load_ruleset, parse_graph
from orchestrator.interfaces import ProbeStatus, ProvisionStatus
from orchestrator.policy import Severity
from orchestrator.providers import (
    DEFAULT_PROVIDER,
    DryRunProvider,
    ProviderLoadError,
    load_provider,
)


class TestResourceGraph:
    """Tests for the in-memory graph."""

    def test_add_and_get(self) -> None:
        """Test nodes are stored with their dependencies."""
        graph = make_graph(("vnet", "network"), ("kv", "key-vault", ["vnet"]))
        assert len(graph) == 2
        assert "kv" in graph
        assert graph.get("kv").depends_on == frozenset({"vnet"})
        assert graph.get("kv").status == NodeStatus.PENDING

    def test_duplicate(self) -> None:
        """Test an identifier can only be added once."""
        graph = make_graph(("vnet", "network"))
        with pytest.raises(DuplicateNodeError):
            graph.add_node("vnet", "network")

    def test_empty_identifier(self) -> None:
        """Test empty ids and types are rejected."""
        graph = make_graph()
        with pytest.raises(GraphError):
            graph.add_node("", "network")
        with pytest.raises(GraphError):
            graph.add_node("vnet", "")

    def test_closures(self) -> None:
        """Test transitive dependency and dependent sets."""
        graph = make_graph(
            ("a", "network"),
            ("b", "dns-zone", ["a"]),
            ("c", "endpoint", ["b"]),
            ("d", "endpoint", ["missing"]),
        )
        assert graph.dependency_closure("c") == {"a", "b"}
        assert graph.dependent_closure("a") == {"b", "c"}
        assert graph.dependents("b") == ["c"]
        # Dangling references are left for the compiler to report
        assert graph.dependency_closure("d") == set()

    def test_copy_is_deep(self) -> None:
        """Test a copy does not share config with the original."""
        graph = make_graph(("kv", "key-vault", (), {"sku": "standard"}))
        snapshot = graph.copy()
        graph.get("kv").config["sku"] = "premium"
        assert snapshot.get("kv").config["sku"] == "standard"

    def test_category(self) -> None:
        """Test the health category defaults to the node type."""
        assert ResourceNode("a", "network").category == "network"
        assert ResourceNode("a", "network", {"healthCategory": "core"}).category == "core"

    def test_node_round_trip(self) -> None:
        """Test a node survives serialization with its status."""
        node = ResourceNode("kv", "key-vault", {"sku": "standard"}, frozenset({"vnet"}), NodeStatus.APPLIED)
        assert ResourceNode.from_dict(node.to_dict()) == node
        assert "status" not in node.definition()


class TestParseGraph:
    """Tests for graph document validation."""

    def test_parse(self) -> None:
        """Test a minimal document is parsed."""
        graph = parse_graph(
            {
                "resources": [
                    {"id": "vnet", "type": "network"},
                    {"id": "kv", "type": "key-vault", "dependsOn": ["vnet"], "config": {"sku": "a"}},
                ]
            }
        )
        assert graph.get("kv").depends_on == frozenset({"vnet"})
        assert graph.get("kv").config == {"sku": "a"}

    def test_duplicate_ids(self) -> None:
        """Test duplicate resource ids are reported."""
        with pytest.raises(GraphLoadError, match="duplicate resource ids"):
            parse_graph({"resources": [{"id": "a", "type": "x"}, {"id": "a", "type": "y"}]})

    def test_self_dependency(self) -> None:
        """Test a resource cannot depend on itself."""
        with pytest.raises(GraphLoadError, match="cannot depend on itself"):
            parse_graph({"resources": [{"id": "a", "type": "x", "dependsOn": ["a"]}]})

    def test_repeated_dependency(self) -> None:
        """Test dependsOn entries must be unique."""
        with pytest.raises(GraphLoadError, match="duplicates"):
            parse_graph({"resources": [{"id": "a", "type": "x", "dependsOn": ["b", "b"]}]})

    @pytest.mark.parametrize("node_id", ["../etc", "a b", "", "-leading"])
    def test_invalid_identifier(self, node_id: str) -> None:
        """Test identifiers must be path and log safe."""
        with pytest.raises(GraphLoadError):
            parse_graph({"resources": [{"id": node_id, "type": "x"}]})

    def test_unknown_field(self) -> None:
        """Test misspelled resource fields are rejected."""
        with pytest.raises(GraphLoadError, match="depends_onn"):
            parse_graph({"resources": [{"id": "a", "type": "x", "depends_onn": []}]})

    def test_missing_resources(self) -> None:
        """Test a document must list resources."""
        with pytest.raises(GraphLoadError, match="resources"):
            parse_graph({"name": "empty"})


class TestLoadGraph:
    """Tests for reading graph documents from disk."""

    def test_load(self, tmp_path: Path, landing_zone_yaml: str) -> None:
        """Test a YAML file is loaded."""
        path = tmp_path / "graph.yaml"
        path.write_text(landing_zone_yaml)
        graph = load_graph(path)
        assert sorted(graph.nodes) == ["dns", "kv", "kv-endpoint", "vnet"]

    def test_wrapper_format(self, tmp_path: Path) -> None:
        """Test the apiVersion/spec wrapper is unwrapped."""
        path = tmp_path / "graph.yaml"
        path.write_text(
            "apiVersion: orchestrator/v1\n"
            "kind: ResourceGraph\n"
            "spec:\n"
            "  resources:\n"
            "    - {id: vnet, type: network}\n"
        )
        assert "vnet" in load_graph(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file is reported."""
        with pytest.raises(GraphLoadError, match="not found"):
            load_graph(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test malformed YAML is reported."""
        path = tmp_path / "graph.yaml"
        path.write_text("resources: [unclosed")
        with pytest.raises(GraphLoadError, match="Invalid YAML"):
            load_graph(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test a top-level list is rejected."""
        path = tmp_path / "graph.yaml"
        path.write_text("- id: a\n")
        with pytest.raises(GraphLoadError, match="mapping"):
            load_graph(path)

    def test_size_limit(self, tmp_path: Path) -> None:
        """Test oversized files are rejected before reading."""
        path = tmp_path / "graph.yaml"
        path.write_text("resources: []\n" + "#" * 200)
        with patch("orchestrator.graph_loader.MAX_GRAPH_FILE_SIZE_BYTES", 100):
            with pytest.raises(GraphLoadError, match="maximum size"):
                load_graph(path)


class TestLoadRuleset:
    """Tests for rule set tuning documents."""

    def test_overrides(self, tmp_path: Path) -> None:
        """Test disabled rules and severity overrides are applied."""
        path = tmp_path / "rules.yaml"
        path.write_text(
            "disabledRules: [cost-center-tag]\n"
            "severityOverrides:\n"
            "  overlapping-address-spaces: Critical\n"
        )
        ruleset = load_ruleset(path)

        assert ruleset.disabled == frozenset({"cost-center-tag"})
        assert ruleset.severity_overrides == {"overlapping-address-spaces": Severity.CRITICAL}

    def test_unknown_rule(self, tmp_path: Path) -> None:
        """Test naming a rule that does not exist is an error."""
        path = tmp_path / "rules.yaml"
        path.write_text("disabledRules: [no-such-rule]\n")
        with pytest.raises(GraphLoadError, match="no-such-rule"):
            load_ruleset(path)

    def test_invalid_severity(self, tmp_path: Path) -> None:
        """Test severity overrides must name a known level."""
        path = tmp_path / "rules.yaml"
        path.write_text("severityOverrides:\n  cost-center-tag: urgent\n")
        with pytest.raises(GraphLoadError, match="severity"):
            load_ruleset(path)


class TestProviders:
    """Tests for provider loading."""

    def test_default_provider(self) -> None:
        """Test the default reference resolves to a fresh dry-run provider."""
        provider = load_provider(DEFAULT_PROVIDER)
        assert isinstance(provider, DryRunProvider)
        assert load_provider(DEFAULT_PROVIDER) is not provider

    def test_dry_run(self) -> None:
        """Test the dry-run provider succeeds without side effects."""
        provider = DryRunProvider()
        node = ResourceNode("kv", "key-vault")
        assert provider.apply(node).status == ProvisionStatus.SUCCEEDED
        assert provider.verify(node).ok
        assert provider.poll(node).status == ProbeStatus.READY
        assert provider.applied == ["kv"]

    def test_instance_attribute(self) -> None:
        """Test a non-callable attribute is returned as is."""
        assert load_provider("orchestrator.providers:DEFAULT_PROVIDER") == DEFAULT_PROVIDER

    def test_callable_instance_is_not_called(self) -> None:
        """Test an instance defining __call__ is returned rather than invoked."""
        provider = load_provider("provider_mock:CALLABLE_PROVISIONER")
        assert provider is CALLABLE_PROVISIONER
        assert CALLABLE_PROVISIONER.invocations == 0

    def test_factory_function_is_called(self) -> None:
        """Test a function reference is used as a factory."""
        graph = load_provider("provider_mock:make_graph")
        assert isinstance(graph, ResourceGraph)

    @pytest.mark.parametrize(
        "reference",
        ["orchestrator.providers", ":DryRunProvider", "orchestrator.providers:"],
    )
    def test_malformed(self, reference: str) -> None:
        """Test references must be module:attribute."""
        with pytest.raises(ProviderLoadError, match="expected"):
            load_provider(reference)

    def test_missing_module(self) -> None:
        """Test an unimportable module is reported."""
        with pytest.raises(ProviderLoadError, match="Cannot import"):
            load_provider("no_such_module:Provider")

    def test_missing_attribute(self) -> None:
        """Test a missing attribute is reported."""
        with pytest.raises(ProviderLoadError, match="no attribute"):
            load_provider("orchestrator.providers:NoSuchProvider")
