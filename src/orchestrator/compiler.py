"""Plan compilation: resource graph to dependency-ordered execution plan.

This module implements:
1. Reference checking (every dependency must name an existing node)
2. Level construction with Kahn's algorithm
3. Cycle detection naming every node that lies on a cycle
4. Content hashing so approvals bind to one exact plan

DESIGN PHILOSOPHY:
- Compilation is a pure function over a snapshot of the graph
- Plans are deterministic: nodes within a level are sorted by identifier
- The plan hash covers node definitions, not only ordering, so editing
  any node's configuration invalidates a prior approval
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .graph import NodeStatus, ResourceGraph, ResourceNode

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1


class CompileError(Exception):
    """Raised when a graph cannot be compiled into a plan."""

    pass


class CycleDetected(CompileError):
    """Raised when the dependency graph is not a DAG."""

    def __init__(self, nodes: list[str]) -> None:
        self.nodes = sorted(nodes)
        super().__init__(f"Circular dependency detected involving: {self.nodes}")


class UnknownDependency(CompileError):
    """Raised when a node references a dependency that does not exist."""

    def __init__(self, node: str, missing: list[str]) -> None:
        self.node = node
        self.missing = sorted(missing)
        super().__init__(f"Node '{node}' depends on unknown nodes: {self.missing}")


def compute_plan_hash(levels: list[list[str]], nodes: dict[str, ResourceNode]) -> str:
    """Hash the plan's ordering and node definitions (statuses excluded)."""
    payload = {
        "version": PLAN_FORMAT_VERSION,
        "levels": levels,
        "nodes": [nodes[node_id].definition() for node_id in sorted(nodes)],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class ExecutionPlan:
    """Ordered levels of mutually independent nodes."""

    levels: list[list[str]]
    nodes: dict[str, ResourceNode]
    plan_hash: str = ""
    _level_index: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.plan_hash:
            self.plan_hash = compute_plan_hash(self.levels, self.nodes)
        self._level_index = {
            node_id: index for index, level in enumerate(self.levels) for node_id in level
        }

    @property
    def node_ids(self) -> list[str]:
        """All node identifiers in execution order."""
        return [node_id for level in self.levels for node_id in level]

    def level_of(self, node_id: str) -> int:
        """Return the level index of a node."""
        return self._level_index[node_id]

    def graph(self) -> ResourceGraph:
        """Return the plan's nodes as a resource graph (shares node objects)."""
        return ResourceGraph(nodes=self.nodes)

    def set_status(self, status: NodeStatus) -> None:
        """Move every node to ``status`` (phase bookkeeping)."""
        for node in self.nodes.values():
            node.status = status

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "plan_hash": self.plan_hash,
            "levels": self.levels,
            "nodes": [self.nodes[node_id].to_dict() for node_id in self.node_ids],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionPlan:
        """Create from dictionary.

        Raises:
            CompileError: If the stored hash does not match the stored content.
        """
        nodes = {item["id"]: ResourceNode.from_dict(item) for item in data["nodes"]}
        levels = [list(level) for level in data["levels"]]
        plan = cls(levels=levels, nodes=nodes)
        stored_hash = data.get("plan_hash")
        if stored_hash and stored_hash != plan.plan_hash:
            raise CompileError(
                f"Stored plan hash {stored_hash} does not match plan content {plan.plan_hash}"
            )
        return plan


def _nodes_on_cycles(remaining: dict[str, ResourceNode]) -> list[str]:
    """Return nodes among ``remaining`` that can reach themselves."""
    on_cycle: list[str] = []
    for start in remaining:
        seen: set[str] = set()
        stack = [dep for dep in remaining[start].depends_on if dep in remaining]
        while stack:
            current = stack.pop()
            if current == start:
                on_cycle.append(start)
                break
            if current in seen:
                continue
            seen.add(current)
            stack.extend(dep for dep in remaining[current].depends_on if dep in remaining)
    return on_cycle


def compile_plan(graph: ResourceGraph) -> ExecutionPlan:
    """Compile a resource graph into an execution plan.

    Args:
        graph: The resource graph. It is snapshotted; later edits to the
            graph do not affect the returned plan.

    Returns:
        Execution plan with deterministic levels.

    Raises:
        UnknownDependency: If a node references a non-existent node.
        CycleDetected: If the dependency graph contains a cycle.
    """
    snapshot = graph.copy()
    nodes = snapshot.nodes

    for node_id in sorted(nodes):
        missing = [dep for dep in nodes[node_id].depends_on if dep not in nodes]
        if missing:
            raise UnknownDependency(node_id, missing)

    # Kahn's algorithm: edges point from dependency to dependent
    in_degree = {node_id: len(node.depends_on) for node_id, node in nodes.items()}
    dependents: dict[str, list[str]] = {node_id: [] for node_id in nodes}
    for node in nodes.values():
        for dep in node.depends_on:
            dependents[dep].append(node.id)

    levels: list[list[str]] = []
    ready = sorted(node_id for node_id, degree in in_degree.items() if degree == 0)
    while ready:
        levels.append(ready)
        next_ready: list[str] = []
        for current in ready:
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    next_ready.append(dependent)
        ready = sorted(next_ready)

    placed = sum(len(level) for level in levels)
    if placed != len(nodes):
        remaining = {n: nodes[n] for n, degree in in_degree.items() if degree > 0}
        cycle_nodes = _nodes_on_cycles(remaining)
        logger.error("Plan compilation failed: cycle", extra={"cycle_nodes": sorted(cycle_nodes)})
        raise CycleDetected(cycle_nodes)

    plan = ExecutionPlan(levels=levels, nodes=nodes)
    plan.set_status(NodeStatus.PLANNED)
    logger.info(
        "Plan compiled",
        extra={
            "plan_hash": plan.plan_hash,
            "level_count": len(levels),
            "node_count": len(nodes),
        },
    )
    return plan
