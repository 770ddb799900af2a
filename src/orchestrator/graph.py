"""In-memory resource graph.

Nodes are declared resources; edges are ``depends_on`` references that
point from a dependent to the resources it needs first (network before
endpoint, endpoint before identity binding, and so on).

The graph carries no behavior beyond lookup and traversal. Ordering
lives in ``compiler``, rule evaluation in ``policy``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NodeStatus(str, Enum):
    """Lifecycle status of a resource node."""

    PENDING = "pending"
    PLANNED = "planned"
    VALIDATED = "validated"
    APPROVED = "approved"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class GraphError(Exception):
    """Raised when a graph is structurally invalid at construction."""

    pass


class DuplicateNodeError(GraphError):
    """Raised when a node identifier is added twice."""

    pass


@dataclass
class ResourceNode:
    """A declared resource in the graph."""

    id: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = field(default_factory=frozenset)
    status: NodeStatus = NodeStatus.PENDING

    @property
    def category(self) -> str:
        """Health category of the node (``healthCategory`` config, else its type)."""
        value = self.config.get("healthCategory")
        return str(value) if value else self.type

    def definition(self) -> dict[str, Any]:
        """Return the status-free definition used for plan hashing."""
        return {
            "id": self.id,
            "type": self.type,
            "config": self.config,
            "depends_on": sorted(self.depends_on),
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = self.definition()
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceNode:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            type=data["type"],
            config=dict(data.get("config") or {}),
            depends_on=frozenset(data.get("depends_on") or ()),
            status=NodeStatus(data.get("status", NodeStatus.PENDING.value)),
        )


@dataclass
class ResourceGraph:
    """Declarative set of resource nodes and their dependency edges."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    def add_node(
        self,
        node_id: str,
        node_type: str,
        config: dict[str, Any] | None = None,
        depends_on: list[str] | set[str] | frozenset[str] | None = None,
    ) -> ResourceNode:
        """Add a node to the graph.

        Dependencies are not required to exist yet; dangling references
        are reported by the plan compiler.

        Raises:
            DuplicateNodeError: If the identifier is already present.
            GraphError: If the identifier or type is empty.
        """
        if not node_id:
            raise GraphError("Node identifier must not be empty")
        if not node_type:
            raise GraphError(f"Node '{node_id}' must declare a type")
        if node_id in self.nodes:
            raise DuplicateNodeError(f"Node '{node_id}' is already defined")

        node = ResourceNode(
            id=node_id,
            type=node_type,
            config=dict(config or {}),
            depends_on=frozenset(depends_on or ()),
        )
        self.nodes[node_id] = node
        return node

    def get(self, node_id: str) -> ResourceNode:
        """Return the node with the given identifier.

        Raises:
            KeyError: If the node does not exist.
        """
        return self.nodes[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependents(self, node_id: str) -> list[str]:
        """Return identifiers of nodes that depend directly on ``node_id``."""
        return sorted(n.id for n in self.nodes.values() if node_id in n.depends_on)

    def dependency_closure(self, node_id: str) -> set[str]:
        """Return all transitive dependencies of ``node_id`` that exist in the graph."""
        seen: set[str] = set()
        stack = list(self.nodes[node_id].depends_on)
        while stack:
            current = stack.pop()
            if current in seen or current not in self.nodes:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].depends_on)
        return seen

    def dependent_closure(self, node_id: str) -> set[str]:
        """Return all nodes that transitively depend on ``node_id``."""
        seen: set[str] = set()
        stack = self.dependents(node_id)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents(current))
        return seen

    def copy(self) -> ResourceGraph:
        """Return a deep snapshot of the graph."""
        return ResourceGraph(nodes={k: copy.deepcopy(v) for k, v in self.nodes.items()})
