"""Graph and approval helpers shared by tests."""

from __future__ import annotations

from typing import Any

from orchestrator.approval import ApprovalDecision, ApprovalGate, ApprovalRecord
from orchestrator.compiler import ExecutionPlan
from orchestrator.graph import ResourceGraph
from orchestrator.policy import ValidationReport


def make_graph(*nodes: tuple[Any, ...]) -> ResourceGraph:
    """Build a graph from ``(id, type[, depends_on[, config]])`` tuples."""
    graph = ResourceGraph()
    for entry in nodes:
        node_id, node_type = entry[0], entry[1]
        depends_on = entry[2] if len(entry) > 2 else ()
        config = entry[3] if len(entry) > 3 else None
        graph.add_node(node_id, node_type, config=config, depends_on=depends_on)
    return graph


def approve_plan(
    plan: ExecutionPlan,
    report: ValidationReport | None = None,
    approver: str = "alice@example.com",
) -> tuple[ApprovalGate, ApprovalRecord]:
    """Register a (clean) report and record an approval for ``plan``."""
    gate = ApprovalGate()
    report = report or ValidationReport(plan_hash=plan.plan_hash)
    gate.register_report(report)
    record = gate.record_approval(
        plan.plan_hash, ApprovalDecision.APPROVED, approver, report.warning_ids
    )
    return gate, record
