"""Scripted status probes."""

from __future__ import annotations

from typing import Any

from orchestrator.graph import ResourceNode
from orchestrator.interfaces import ProbeResult, ProbeStatus


class ScriptedProbe:
    """Synchronous probe playing back per-node statuses.

    The last scripted status repeats; unscripted nodes are Ready.
    """

    def __init__(
        self,
        script: dict[str, list[ProbeStatus]] | None = None,
        attributes: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.script = {node_id: list(steps) for node_id, steps in (script or {}).items()}
        self.attributes = attributes or {}
        self.polls: list[str] = []

    def poll(self, node: ResourceNode) -> ProbeResult:
        self.polls.append(node.id)
        steps = self.script.get(node.id) or [ProbeStatus.READY]
        status = steps.pop(0) if len(steps) > 1 else steps[0]
        return ProbeResult(status=status, attributes=self.attributes.get(node.id, {}))


class UnhealthyProbe:
    """Probe reporting every resource in an error state."""

    def poll(self, node: ResourceNode) -> ProbeStatus:
        return ProbeStatus.ERROR_STATE
