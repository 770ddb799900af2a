"""Post-deploy health verification.

Polls every applied node through a status probe until it reaches a
terminal state or the timeout elapses, evaluates cross-node
relationships once a node's direct dependencies are ready, and reduces
the observations to a weighted health score.

The verifier is purely observational: it never changes node status.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from .compiler import ExecutionPlan
from .config import DEFAULT_HEALTH_POLL_INTERVAL_SECONDS, Config
from .graph import NodeStatus, ResourceGraph, ResourceNode
from .interfaces import ProbeResult, ProbeStatus, StatusProbe
from .state import CancellationToken

logger = logging.getLogger(__name__)

# Scores are reported with one decimal, rounded half-up
SCORE_QUANTUM = Decimal("0.1")


class HealthState(str, Enum):
    """Observed health of a node after deployment."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class HealthTimeout(Exception):
    """Raised when a node does not reach a terminal state in time."""

    def __init__(self, node_id: str, timeout: float, polls: int = 0) -> None:
        self.node_id = node_id
        self.timeout = timeout
        self.polls = polls
        super().__init__(f"Node '{node_id}' did not reach a terminal state within {timeout}s")


@dataclass(frozen=True)
class NodeHealth:
    """Health verdict for one node."""

    node_id: str
    category: str
    state: HealthState
    polls: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "node_id": self.node_id,
            "category": self.category,
            "state": self.state.value,
            "polls": self.polls,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeHealth:
        """Create from dictionary."""
        return cls(
            node_id=data["node_id"],
            category=data["category"],
            state=HealthState(data["state"]),
            polls=data.get("polls", 0),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class CategoryScore:
    """Pass ratio of one health category."""

    category: str
    weight: float
    total: int
    healthy: int
    unreachable: int
    required: bool

    @property
    def ratio(self) -> Decimal:
        """Healthy share of the category; zero if a required node is unreachable."""
        if self.total == 0:
            return Decimal(1)
        if self.required and self.unreachable:
            return Decimal(0)
        return Decimal(self.healthy) / Decimal(self.total)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "category": self.category,
            "weight": self.weight,
            "total": self.total,
            "healthy": self.healthy,
            "unreachable": self.unreachable,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CategoryScore:
        """Create from dictionary."""
        return cls(**data)


@dataclass
class HealthReport:
    """Per-node health plus the aggregate score in [0, 100]."""

    plan_hash: str
    nodes: dict[str, NodeHealth] = field(default_factory=dict)
    categories: list[CategoryScore] = field(default_factory=list)
    score: float = 100.0

    def passed(self, threshold: float) -> bool:
        return self.score >= threshold

    def node_ids(self, state: HealthState) -> list[str]:
        """Return sorted node ids in the given health state."""
        return sorted(h.node_id for h in self.nodes.values() if h.state == state)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "plan_hash": self.plan_hash,
            "score": self.score,
            "nodes": [self.nodes[node_id].to_dict() for node_id in sorted(self.nodes)],
            "categories": [c.to_dict() for c in self.categories],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthReport:
        """Create from dictionary."""
        nodes = [NodeHealth.from_dict(item) for item in data.get("nodes", [])]
        return cls(
            plan_hash=data["plan_hash"],
            nodes={h.node_id: h for h in nodes},
            categories=[CategoryScore.from_dict(item) for item in data.get("categories", [])],
            score=data["score"],
        )


def round_score(value: Decimal) -> float:
    """Round a score half-up to one decimal place (66.66... -> 66.7)."""
    return float(value.quantize(SCORE_QUANTUM, rounding=ROUND_HALF_UP))


def compute_score(
    nodes: Iterable[NodeHealth],
    weights: dict[str, float] | None = None,
    required_categories: Iterable[str] | None = None,
) -> tuple[float, list[CategoryScore]]:
    """Compute the weighted health score.

    ``score = 100 * sum(w_c * ratio_c) / sum(w_c)`` over the categories
    present. Categories missing from ``weights`` weigh 1.0. When
    ``required_categories`` is None every category is required, so one
    unreachable node zeroes its category.

    Returns:
        The rounded score and the per-category breakdown, sorted by name.
    """
    weights = weights or {}
    required = set(required_categories) if required_categories is not None else None

    grouped: dict[str, list[NodeHealth]] = {}
    for health in nodes:
        grouped.setdefault(health.category, []).append(health)

    categories = [
        CategoryScore(
            category=name,
            weight=weights.get(name, 1.0),
            total=len(members),
            healthy=sum(1 for h in members if h.state == HealthState.HEALTHY),
            unreachable=sum(1 for h in members if h.state == HealthState.UNREACHABLE),
            required=required is None or name in required,
        )
        for name, members in sorted(grouped.items())
    ]

    total_weight = sum(Decimal(str(c.weight)) for c in categories)
    if total_weight == 0:
        return 100.0, categories

    weighted = sum(Decimal(str(c.weight)) * c.ratio for c in categories)
    return round_score(Decimal(100) * weighted / total_weight), categories


# A cross-node check returns a failure message, or None when satisfied
CrossNodeCheck = Callable[[ResourceNode, dict[str, ProbeResult], ResourceGraph], "str | None"]


def check_endpoint_dns_resolution(
    node: ResourceNode, observations: dict[str, ProbeResult], graph: ResourceGraph
) -> str | None:
    """An endpoint's DNS record must resolve to its published private address.

    The endpoint publishes ``fqdn`` and ``privateAddress``; a ``dns-zone``
    dependency publishes ``records`` as a name-to-address mapping. The
    check passes when either side publishes nothing to compare.
    """
    if node.type != "endpoint":
        return None
    attributes = observations[node.id].attributes
    fqdn = attributes.get("fqdn")
    address = attributes.get("privateAddress")
    if not fqdn or not address:
        return None

    for dep_id in sorted(node.depends_on):
        dependency = graph.nodes.get(dep_id)
        if dependency is None or dependency.type != "dns-zone" or dep_id not in observations:
            continue
        records = observations[dep_id].attributes.get("records")
        if records is None:
            continue
        if not isinstance(records, Mapping):
            return f"{dep_id} publishes records as {type(records).__name__}, expected a mapping"
        resolved = records.get(fqdn)
        if resolved != address:
            return f"{fqdn} resolves to {resolved or 'nothing'} in {dep_id}, expected {address}"
    return None


DEFAULT_CROSS_NODE_CHECKS: tuple[CrossNodeCheck, ...] = (check_endpoint_dns_resolution,)


def _normalize(value: ProbeResult | ProbeStatus) -> ProbeResult:
    if isinstance(value, ProbeResult):
        return value
    return ProbeResult(status=ProbeStatus(value))


class HealthVerifier:
    """Polls applied nodes and scores the deployment."""

    def __init__(
        self,
        probe: StatusProbe,
        interval: float = DEFAULT_HEALTH_POLL_INTERVAL_SECONDS,
        weights: dict[str, float] | None = None,
        required_categories: Iterable[str] | None = None,
        checks: Sequence[CrossNodeCheck] = DEFAULT_CROSS_NODE_CHECKS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self._interval = interval
        self._weights = dict(weights or {})
        self._required = frozenset(required_categories) if required_categories is not None else None
        self._checks = tuple(checks)
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, config: Config, probe: StatusProbe, **kwargs: Any) -> HealthVerifier:
        kwargs.setdefault("weights", config.health_weights)
        kwargs.setdefault("required_categories", config.required_categories)
        return cls(probe, interval=config.health_poll_interval_seconds, **kwargs)

    async def verify(
        self,
        plan: ExecutionPlan,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> HealthReport:
        """Verify convergence of an applied plan.

        Nodes that are not Applied are reported Unreachable without being
        polled. Polls share one deadline, ``timeout`` seconds from now.
        """
        cancel = cancel or CancellationToken()
        deadline = self._clock() + timeout
        graph = plan.graph()

        applied = [
            plan.nodes[node_id]
            for node_id in plan.node_ids
            if plan.nodes[node_id].status == NodeStatus.APPLIED
        ]
        logger.info(
            "Starting health verification",
            extra={"plan_hash": plan.plan_hash, "applied_nodes": len(applied), "timeout_seconds": timeout},
        )

        outcomes = await asyncio.gather(
            *(self._observe(node, deadline, timeout, cancel) for node in applied)
        )

        observations: dict[str, ProbeResult] = {}
        health: dict[str, NodeHealth] = {}
        for node, (observation, polls, error) in zip(applied, outcomes):
            if observation is None:
                health[node.id] = NodeHealth(
                    node.id, node.category, HealthState.UNREACHABLE, polls, error
                )
                continue
            observations[node.id] = observation
            if observation.status == ProbeStatus.READY:
                state = HealthState.HEALTHY
            else:
                state = HealthState.DEGRADED
            health[node.id] = NodeHealth(node.id, node.category, state, polls, observation.message)

        for node_id in plan.node_ids:
            if node_id not in health:
                node = plan.nodes[node_id]
                health[node_id] = NodeHealth(
                    node_id,
                    node.category,
                    HealthState.UNREACHABLE,
                    message=f"not applied (status {node.status.value})",
                )

        self._run_cross_node_checks(plan, graph, observations, health)

        score, categories = compute_score(health.values(), self._weights, self._required)
        report = HealthReport(plan_hash=plan.plan_hash, nodes=health, categories=categories, score=score)

        logger.info(
            "Health verification finished",
            extra={
                "plan_hash": plan.plan_hash,
                "score": score,
                "degraded": report.node_ids(HealthState.DEGRADED),
                "unreachable": report.node_ids(HealthState.UNREACHABLE),
            },
        )
        return report

    async def _observe(
        self,
        node: ResourceNode,
        deadline: float,
        timeout: float,
        cancel: CancellationToken,
    ) -> tuple[ProbeResult | None, int, str]:
        """Poll one node; returns (terminal observation or None, polls, error)."""
        try:
            observation, polls = await self._poll_until_terminal(node, deadline, timeout, cancel)
        except HealthTimeout as e:
            logger.warning(
                "Node did not converge in time",
                extra={"node_id": node.id, "timeout_seconds": timeout, "polls": e.polls},
            )
            return None, e.polls, str(e)
        return observation, polls, ""

    async def _poll_until_terminal(
        self,
        node: ResourceNode,
        deadline: float,
        timeout: float,
        cancel: CancellationToken,
    ) -> tuple[ProbeResult, int]:
        """Poll at a fixed cadence until Ready or ErrorState.

        Raises:
            HealthTimeout: If the deadline passes or the run is cancelled first.
        """
        polls = 0
        while True:
            observation = await self._poll_once(node)
            polls += 1
            if observation.status.is_terminal:
                return observation, polls

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise HealthTimeout(node.id, timeout, polls)

            logger.debug(
                "Node not ready yet",
                extra={"node_id": node.id, "polls": polls, "status": observation.status.value},
            )
            if not await cancel.sleep(min(self._interval, remaining), self._sleep):
                raise HealthTimeout(node.id, timeout, polls)

    async def _poll_once(self, node: ResourceNode) -> ProbeResult:
        try:
            value = self._probe.poll(node)
            if inspect.isawaitable(value):
                value = await value
            return _normalize(value)
        except Exception as e:
            # Probe failures count as "not yet observed"; the deadline bounds them
            logger.warning(
                "Status probe failed",
                extra={"node_id": node.id, "error_type": type(e).__name__, "error": str(e)},
            )
            return ProbeResult(status=ProbeStatus.PENDING, message=f"{type(e).__name__}: {e}")

    def _run_checks(
        self, node: ResourceNode, observations: dict[str, ProbeResult], graph: ResourceGraph
    ) -> list[str]:
        failures = []
        for check in self._checks:
            try:
                message = check(node, observations, graph)
            except Exception as e:
                # A check that cannot evaluate its inputs degrades the node
                name = getattr(check, "__name__", type(check).__name__)
                logger.exception(
                    "Cross-node check raised",
                    extra={"node_id": node.id, "check": name, "error_type": type(e).__name__},
                )
                message = f"{name} raised {type(e).__name__}: {e}"
            if message:
                failures.append(message)
        return failures

    def _run_cross_node_checks(
        self,
        plan: ExecutionPlan,
        graph: ResourceGraph,
        observations: dict[str, ProbeResult],
        health: dict[str, NodeHealth],
    ) -> None:
        for node_id in plan.node_ids:
            current = health[node_id]
            if current.state != HealthState.HEALTHY:
                continue
            node = plan.nodes[node_id]

            not_ready = sorted(
                dep
                for dep in node.depends_on
                if dep not in observations or observations[dep].status != ProbeStatus.READY
            )
            if not_ready:
                message = f"dependencies not ready: {not_ready}"
            else:
                failures = self._run_checks(node, observations, graph)
                if not failures:
                    continue
                message = "; ".join(failures)

            logger.warning(
                "Cross-node check failed",
                extra={"node_id": node_id, "reason": message},
            )
            health[node_id] = NodeHealth(
                node_id, current.category, HealthState.DEGRADED, current.polls, message
            )
