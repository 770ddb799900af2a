"""Policy validation of execution plans.

This module evaluates a compiled plan against a rule set before any
mutation is allowed:
1. Node rules: pure predicates keyed by node type
2. Graph rules: cross-node invariants over the whole plan
3. Aggregate verdict from the most severe finding

DESIGN PHILOSOPHY:
- Fail closed: critical findings block the approval gate outright
- Full picture: every rule runs against every applicable node, no
  short-circuit on the first violation
- Deterministic: findings are sorted, so the report does not depend on
  node iteration order
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .compiler import ExecutionPlan
    from .graph import ResourceGraph, ResourceNode
    from .models import RuleSetDocument

logger = logging.getLogger(__name__)

GRAPH_NODE_ID = "graph"
ANY_TYPE = "*"


class Severity(str, Enum):
    """Severity of a validation finding."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class FindingCategory(str, Enum):
    """Closed set of finding categories."""

    NETWORK = "network"
    IDENTITY = "identity"
    SECURITY = "security"
    COST = "cost"
    COMPLETENESS = "completeness"


class Verdict(str, Enum):
    """Aggregate verdict of a validation report."""

    PASS = "pass"
    PASS_WITH_WARNINGS = "pass_with_warnings"
    FAIL = "fail"


# Node types that accept inbound traffic and must not be publicly reachable
DEFAULT_NETWORK_EXPOSED_TYPES: frozenset[str] = frozenset(
    {"storage", "key-vault", "database", "app-service", "container-registry"}
)

# Configuration keys every node of a type must declare
DEFAULT_REQUIRED_CONFIG: dict[str, tuple[str, ...]] = {
    "network": ("addressSpace",),
    "endpoint": ("subnet", "target"),
    "dns-zone": ("zoneName",),
    "identity-binding": ("principal", "scope", "role"),
    "principal": ("principalType",),
}

PRINCIPAL_TYPES: frozenset[str] = frozenset({"principal", "identity"})


@dataclass(frozen=True)
class ValidationFinding:
    """A single rule violation or observation."""

    node_id: str
    category: FindingCategory
    severity: Severity
    message: str
    rule: str
    finding_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "finding_id": self.finding_id,
            "node_id": self.node_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "rule": self.rule,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationFinding:
        """Create from dictionary."""
        return cls(
            node_id=data["node_id"],
            category=FindingCategory(data["category"]),
            severity=Severity(data["severity"]),
            message=data["message"],
            rule=data["rule"],
            finding_id=data["finding_id"],
        )


@dataclass(frozen=True)
class ValidationReport:
    """Ordered findings plus aggregate verdict for one plan."""

    plan_hash: str
    findings: tuple[ValidationFinding, ...] = ()

    @property
    def verdict(self) -> Verdict:
        """Fail on any critical, else warn on any warning, else pass."""
        severities = {finding.severity for finding in self.findings}
        if Severity.CRITICAL in severities:
            return Verdict.FAIL
        if Severity.WARNING in severities:
            return Verdict.PASS_WITH_WARNINGS
        return Verdict.PASS

    def by_severity(self, severity: Severity) -> list[ValidationFinding]:
        """Return findings of the given severity."""
        return [finding for finding in self.findings if finding.severity == severity]

    @property
    def warning_ids(self) -> list[str]:
        """Identifiers of warning findings (these need acknowledgement)."""
        return [finding.finding_id for finding in self.by_severity(Severity.WARNING)]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "plan_hash": self.plan_hash,
            "verdict": self.verdict.value,
            "findings": [finding.to_dict() for finding in self.findings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationReport:
        """Create from dictionary."""
        return cls(
            plan_hash=data["plan_hash"],
            findings=tuple(ValidationFinding.from_dict(item) for item in data["findings"]),
        )


# Node rule predicate: returns violation messages (empty when compliant)
NodeCheck = Callable[["ResourceNode", "ResourceGraph"], Iterable[str]]
# Graph rule predicate: returns (node_id, message) pairs
GraphCheck = Callable[["ResourceGraph"], Iterable[tuple[str, str]]]


@dataclass(frozen=True)
class NodeRule:
    """A predicate applied to every node of the listed types."""

    name: str
    category: FindingCategory
    severity: Severity
    node_types: frozenset[str]
    check: NodeCheck
    description: str = ""

    def applies_to(self, node: ResourceNode) -> bool:
        return ANY_TYPE in self.node_types or node.type in self.node_types


@dataclass(frozen=True)
class GraphRule:
    """A cross-node invariant evaluated once per plan."""

    name: str
    category: FindingCategory
    severity: Severity
    check: GraphCheck
    description: str = ""


# =============================================================================
# Built-in Checks
# =============================================================================


def check_public_access_disabled(node: ResourceNode, graph: ResourceGraph) -> list[str]:
    """A network-exposed resource must declare ``publicAccess=disabled``."""
    value = node.config.get("publicAccess")
    if str(value).lower() != "disabled":
        return [f"publicAccess must be 'disabled' (found {value!r})"]
    return []


def make_required_config_check(required: dict[str, tuple[str, ...]]) -> NodeCheck:
    """Build a check that every required config key is present and non-empty."""

    def check(node: ResourceNode, graph: ResourceGraph) -> list[str]:
        missing = [
            key for key in required.get(node.type, ()) if node.config.get(key) in (None, "", [])
        ]
        if missing:
            return [f"missing required configuration: {missing}"]
        return []

    return check


def check_identity_binding_references(node: ResourceNode, graph: ResourceGraph) -> list[str]:
    """An identity binding must reference an existing principal and scope node."""
    messages: list[str] = []

    principal = node.config.get("principal")
    if principal:
        if principal not in graph:
            messages.append(f"principal '{principal}' does not exist in the graph")
        elif graph.get(principal).type not in PRINCIPAL_TYPES:
            messages.append(
                f"principal '{principal}' has type '{graph.get(principal).type}', "
                f"expected one of {sorted(PRINCIPAL_TYPES)}"
            )

    scope = node.config.get("scope")
    if scope and scope not in graph:
        messages.append(f"scope '{scope}' does not exist in the graph")

    return messages


def check_identity_binding_ordering(node: ResourceNode, graph: ResourceGraph) -> list[str]:
    """An identity binding should depend on its principal and scope.

    Without the edge the binding can be applied before the principal
    exists, which providers surface as eventual-consistency failures.
    """
    messages: list[str] = []
    for key in ("principal", "scope"):
        target = node.config.get(key)
        if target and target in graph and target not in graph.dependency_closure(node.id):
            messages.append(f"{key} '{target}' is not in dependsOn; binding may run before it")
    return messages


def check_address_space(node: ResourceNode, graph: ResourceGraph) -> list[str]:
    """A network's address space must be valid CIDR notation."""
    value = node.config.get("addressSpace")
    if not value:
        return []
    prefixes = value if isinstance(value, list) else [value]
    messages: list[str] = []
    for prefix in prefixes:
        try:
            ipaddress.ip_network(str(prefix), strict=True)
        except ValueError:
            messages.append(f"addressSpace '{prefix}' is not a valid CIDR block")
    return messages


def check_cost_center_tag(node: ResourceNode, graph: ResourceGraph) -> list[str]:
    tags = node.config.get("tags") or {}
    if not isinstance(tags, dict) or not tags.get("costCenter"):
        return ["no costCenter tag; spend cannot be attributed"]
    return []


def _consumes_endpoint(node: ResourceNode) -> bool:
    return node.type == "endpoint" or bool(node.config.get("usesPrivateEndpoint"))


def check_endpoint_dns_closure(graph: ResourceGraph) -> list[tuple[str, str]]:
    """Every endpoint-consuming node needs a DNS zone in its dependency closure."""
    violations: list[tuple[str, str]] = []
    for node in graph.nodes.values():
        if not _consumes_endpoint(node):
            continue
        closure = graph.dependency_closure(node.id)
        if not any(graph.get(dep).type == "dns-zone" for dep in closure):
            violations.append(
                (node.id, "no dns-zone node in dependency closure; name resolution will fail")
            )
    return violations


def check_overlapping_address_spaces(graph: ResourceGraph) -> list[tuple[str, str]]:
    """Network address spaces must not overlap."""
    networks: list[tuple[str, ipaddress.IPv4Network | ipaddress.IPv6Network]] = []
    for node in sorted(graph.nodes.values(), key=lambda n: n.id):
        if node.type != "network":
            continue
        value = node.config.get("addressSpace")
        prefixes = value if isinstance(value, list) else [value] if value else []
        for prefix in prefixes:
            try:
                networks.append((node.id, ipaddress.ip_network(str(prefix), strict=True)))
            except ValueError:
                continue  # reported by check_address_space

    violations: list[tuple[str, str]] = []
    for index, (left_id, left) in enumerate(networks):
        for right_id, right in networks[index + 1 :]:
            if left_id == right_id or left.version != right.version:
                continue
            if left.overlaps(right):
                violations.append((left_id, f"address space {left} overlaps {right_id} ({right})"))
    return violations


def default_node_rules(
    network_exposed_types: frozenset[str] = DEFAULT_NETWORK_EXPOSED_TYPES,
    required_config: dict[str, tuple[str, ...]] | None = None,
) -> list[NodeRule]:
    """Return the built-in node rules."""
    required = DEFAULT_REQUIRED_CONFIG if required_config is None else required_config
    return [
        NodeRule(
            name="public-access-disabled",
            category=FindingCategory.SECURITY,
            severity=Severity.CRITICAL,
            node_types=network_exposed_types,
            check=check_public_access_disabled,
            description="Network-exposed resources must disable public access",
        ),
        NodeRule(
            name="required-config",
            category=FindingCategory.COMPLETENESS,
            severity=Severity.CRITICAL,
            node_types=frozenset(required),
            check=make_required_config_check(required),
            description="Required configuration keys per resource type",
        ),
        NodeRule(
            name="identity-binding-references",
            category=FindingCategory.IDENTITY,
            severity=Severity.CRITICAL,
            node_types=frozenset({"identity-binding"}),
            check=check_identity_binding_references,
            description="Bindings must reference an existing principal and scope",
        ),
        NodeRule(
            name="identity-binding-ordering",
            category=FindingCategory.IDENTITY,
            severity=Severity.WARNING,
            node_types=frozenset({"identity-binding"}),
            check=check_identity_binding_ordering,
            description="Bindings should depend on their principal and scope",
        ),
        NodeRule(
            name="address-space-cidr",
            category=FindingCategory.NETWORK,
            severity=Severity.CRITICAL,
            node_types=frozenset({"network"}),
            check=check_address_space,
            description="Address spaces must be valid CIDR",
        ),
        NodeRule(
            name="cost-center-tag",
            category=FindingCategory.COST,
            severity=Severity.INFO,
            node_types=frozenset({ANY_TYPE}),
            check=check_cost_center_tag,
            description="Resources should carry a costCenter tag",
        ),
    ]


def default_graph_rules() -> list[GraphRule]:
    """Return the built-in graph rules."""
    return [
        GraphRule(
            name="endpoint-dns-closure",
            category=FindingCategory.NETWORK,
            severity=Severity.CRITICAL,
            check=check_endpoint_dns_closure,
            description="Endpoint consumers need a DNS zone in their dependency closure",
        ),
        GraphRule(
            name="overlapping-address-spaces",
            category=FindingCategory.NETWORK,
            severity=Severity.WARNING,
            check=check_overlapping_address_spaces,
            description="Network address spaces must not overlap",
        ),
    ]


@dataclass(frozen=True)
class RuleSet:
    """Configurable collection of node and graph rules."""

    node_rules: tuple[NodeRule, ...] = ()
    graph_rules: tuple[GraphRule, ...] = ()
    disabled: frozenset[str] = field(default_factory=frozenset)
    severity_overrides: dict[str, Severity] = field(default_factory=dict)

    @classmethod
    def default(cls) -> RuleSet:
        """Built-in rules with no overrides."""
        return cls(node_rules=tuple(default_node_rules()), graph_rules=tuple(default_graph_rules()))

    @classmethod
    def from_document(cls, document: RuleSetDocument) -> RuleSet:
        """Apply a rule set document to the built-in rules.

        Raises:
            ValueError: If the document names a rule that does not exist.
        """
        exposed = (
            frozenset(document.network_exposed_types)
            if document.network_exposed_types is not None
            else DEFAULT_NETWORK_EXPOSED_TYPES
        )
        required = (
            {k: tuple(v) for k, v in document.required_config.items()}
            if document.required_config is not None
            else None
        )
        ruleset = cls(
            node_rules=tuple(default_node_rules(exposed, required)),
            graph_rules=tuple(default_graph_rules()),
            disabled=frozenset(document.disabled_rules),
            severity_overrides={
                rule: Severity(value) for rule, value in document.severity_overrides.items()
            },
        )

        known = ruleset.rule_names
        unknown = (set(document.disabled_rules) | set(document.severity_overrides)) - known
        if unknown:
            raise ValueError(f"unknown rules: {sorted(unknown)}")
        return ruleset

    @property
    def rule_names(self) -> set[str]:
        return {rule.name for rule in self.node_rules} | {rule.name for rule in self.graph_rules}

    def with_rules(
        self,
        node_rules: Iterable[NodeRule] = (),
        graph_rules: Iterable[GraphRule] = (),
    ) -> RuleSet:
        """Return a copy with additional rules appended."""
        return replace(
            self,
            node_rules=self.node_rules + tuple(node_rules),
            graph_rules=self.graph_rules + tuple(graph_rules),
        )

    def severity_for(self, rule: str, default: Severity) -> Severity:
        return self.severity_overrides.get(rule, default)


def _assign_ids(findings: list[ValidationFinding]) -> tuple[ValidationFinding, ...]:
    """Sort findings and give each a stable identifier.

    The identifier is ``rule/node`` with a ``#n`` suffix when one rule
    reports several messages for the same node.
    """
    ordered = sorted(
        findings, key=lambda f: (f.node_id, f.category.value, f.rule, f.message)
    )
    counts: dict[str, int] = {}
    result: list[ValidationFinding] = []
    for finding in ordered:
        base = f"{finding.rule}/{finding.node_id}"
        counts[base] = counts.get(base, 0) + 1
        finding_id = base if counts[base] == 1 else f"{base}#{counts[base]}"
        result.append(replace(finding, finding_id=finding_id))
    return tuple(result)


class PolicyValidator:
    """Evaluates execution plans against a rule set."""

    def __init__(self, ruleset: RuleSet | None = None) -> None:
        self._ruleset = ruleset or RuleSet.default()

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    def validate(self, plan: ExecutionPlan) -> ValidationReport:
        """Evaluate every applicable rule and aggregate a report."""
        return validate(plan, self._ruleset)


def validate(plan: ExecutionPlan, ruleset: RuleSet) -> ValidationReport:
    """Evaluate every applicable rule against the plan.

    Args:
        plan: Compiled execution plan.
        ruleset: Rules to evaluate.

    Returns:
        Report with sorted findings; the verdict follows from severities.
    """
    graph = plan.graph()
    findings: list[ValidationFinding] = []

    for rule in ruleset.node_rules:
        if rule.name in ruleset.disabled:
            continue
        severity = ruleset.severity_for(rule.name, rule.severity)
        for node_id in sorted(graph.nodes):
            node = graph.get(node_id)
            if not rule.applies_to(node):
                continue
            for message in rule.check(node, graph):
                findings.append(
                    ValidationFinding(
                        node_id=node_id,
                        category=rule.category,
                        severity=severity,
                        message=message,
                        rule=rule.name,
                    )
                )

    for graph_rule in ruleset.graph_rules:
        if graph_rule.name in ruleset.disabled:
            continue
        severity = ruleset.severity_for(graph_rule.name, graph_rule.severity)
        for node_id, message in graph_rule.check(graph):
            findings.append(
                ValidationFinding(
                    node_id=node_id or GRAPH_NODE_ID,
                    category=graph_rule.category,
                    severity=severity,
                    message=message,
                    rule=graph_rule.name,
                )
            )

    report = ValidationReport(plan_hash=plan.plan_hash, findings=_assign_ids(findings))

    log_level = logging.INFO
    if report.verdict == Verdict.FAIL:
        log_level = logging.ERROR
    elif report.verdict == Verdict.PASS_WITH_WARNINGS:
        log_level = logging.WARNING
    logger.log(
        log_level,
        "Plan validated",
        extra={
            "plan_hash": plan.plan_hash,
            "verdict": report.verdict.value,
            "critical_count": len(report.by_severity(Severity.CRITICAL)),
            "warning_count": len(report.by_severity(Severity.WARNING)),
            "info_count": len(report.by_severity(Severity.INFO)),
        },
    )
    return report
