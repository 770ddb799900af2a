"""Shared run state: the per-node status store and cancellation token.

The status store is the only mutable state shared between executor
workers. Every transition is an atomic compare-and-set, which
guarantees at most one in-flight apply per node even under retries.
Each transition and attempt is reported to an optional listener so the
run can be checkpointed for resumability and audit.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .graph import NodeStatus, ResourceNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """A status change or attempt on one node."""

    node_id: str
    old_status: NodeStatus
    new_status: NodeStatus
    attempt: int = 0
    error_category: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "node_id": self.node_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "attempt": self.attempt,
            "error_category": self.error_category,
            "timestamp": self.timestamp.isoformat(),
        }


TransitionListener = Callable[[Transition, dict[str, NodeStatus]], None]


class NodeStatusStore:
    """Atomic per-node status transitions over a set of nodes."""

    def __init__(
        self,
        nodes: dict[str, ResourceNode],
        listener: TransitionListener | None = None,
    ) -> None:
        self._nodes = nodes
        self._listener = listener
        self._lock = threading.Lock()
        self._journal: list[Transition] = []

    def get(self, node_id: str) -> NodeStatus:
        with self._lock:
            return self._nodes[node_id].status

    def snapshot(self) -> dict[str, NodeStatus]:
        """Return a copy of every node's current status."""
        with self._lock:
            return {node_id: node.status for node_id, node in self._nodes.items()}

    @property
    def journal(self) -> list[Transition]:
        with self._lock:
            return list(self._journal)

    def compare_and_set(
        self,
        node_id: str,
        expected: NodeStatus | Iterable[NodeStatus],
        new: NodeStatus,
        attempt: int = 0,
        error_category: str | None = None,
    ) -> bool:
        """Move ``node_id`` to ``new`` only if its status is in ``expected``.

        Returns:
            True if the transition happened, False if another worker
            already moved the node.
        """
        allowed = {expected} if isinstance(expected, NodeStatus) else set(expected)
        with self._lock:
            node = self._nodes[node_id]
            if node.status not in allowed:
                return False
            transition = Transition(
                node_id=node_id,
                old_status=node.status,
                new_status=new,
                attempt=attempt,
                error_category=error_category,
            )
            node.status = new
            self._journal.append(transition)
            snapshot = {nid: n.status for nid, n in self._nodes.items()}

        logger.debug(
            "Node status transition",
            extra={
                "node_id": node_id,
                "old_status": transition.old_status.value,
                "new_status": new.value,
                "attempt": attempt,
            },
        )
        self._notify(transition, snapshot)
        return True

    def record_attempt(self, node_id: str, attempt: int, error_category: str | None) -> None:
        """Journal a finished attempt that did not change the node's status."""
        with self._lock:
            status = self._nodes[node_id].status
            transition = Transition(
                node_id=node_id,
                old_status=status,
                new_status=status,
                attempt=attempt,
                error_category=error_category,
            )
            self._journal.append(transition)
            snapshot = {nid: n.status for nid, n in self._nodes.items()}
        self._notify(transition, snapshot)

    def _notify(self, transition: Transition, snapshot: dict[str, NodeStatus]) -> None:
        if self._listener is not None:
            self._listener(transition, snapshot)


class CancellationToken:
    """Run-scoped cancellation signal.

    Suspension points (backoff waits, health polls) sleep through
    ``sleep`` so that cancelling wakes them immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning("Run cancellation requested", extra={"reason": reason})
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(
        self,
        seconds: float,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> bool:
        """Sleep cooperatively unless cancelled.

        Returns:
            True if the full delay elapsed, False if cancelled.
        """
        if self.cancelled:
            return False

        sleeper = asyncio.ensure_future(sleep_func(seconds))
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        return not self.cancelled
