"""Dependency-ordered plan executor.

This module applies an approved execution plan:
1. Fail closed unless the approval gate holds an Approved record for the
   exact plan hash
2. Run levels strictly in order; nodes inside a level run concurrently
   on a bounded worker pool
3. Retry transient provider failures with capped exponential backoff
4. Stop scheduling after a failure and mark remaining nodes Skipped

DESIGN PHILOSOPHY:
- Idempotent: already Applied nodes are re-verified when the
  provisioner can verify them, never re-created, so a partially failed
  run can be re-run safely
- Graceful drain: after a retryable failure, siblings already dispatched
  finish their attempts. A fatal error cancels the whole run instead, and
  siblings still in flight are stopped and reported Skipped
- No automatic rollback: a partial deployment is left diagnosable, and
  the remediation path is fix, recompile, revalidate

SECURITY: There is no force-apply path. Approval is checked before any
provider call.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .approval import ApprovalGate, ApprovalRecord
from .compiler import ExecutionPlan
from .config import (
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_JITTER_RATIO,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    GLOBAL_MAX_CONCURRENCY,
    Config,
)
from .graph import NodeStatus, ResourceNode
from .interfaces import (
    FATAL_CATEGORIES,
    ErrorCategory,
    ProvisionError,
    Provisioner,
    ProvisionResult,
    ProvisionStatus,
)
from .state import CancellationToken, NodeStatusStore, TransitionListener

logger = logging.getLogger(__name__)

# Statuses from which a node may start an apply attempt
APPLICABLE_STATUSES: frozenset[NodeStatus] = frozenset(
    {
        NodeStatus.PENDING,
        NodeStatus.PLANNED,
        NodeStatus.VALIDATED,
        NodeStatus.APPROVED,
        NodeStatus.FAILED,
        NodeStatus.ROLLED_BACK,
    }
)

# Fatal categories that cancel the whole run instead of draining
DEFAULT_ABORT_CATEGORIES: frozenset[ErrorCategory] = FATAL_CATEGORIES


class NodeOutcome(str, Enum):
    """Per-node outcome of a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Aggregate status of a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff: ``min(base * 2**(attempt-1), cap)``."""

    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    jitter_ratio: float = DEFAULT_RETRY_JITTER_RATIO
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            jitter_ratio=config.retry_jitter_ratio,
        )

    def delay_for_attempt(self, attempt: int, rng: random.Random | None = None) -> float:
        """Return the wait after failed attempt number ``attempt`` (1-based)."""
        backoff = self.base_delay_seconds * (self.multiplier ** (attempt - 1))
        delay = min(backoff, self.max_delay_seconds)
        if self.jitter_ratio > 0:
            delay += (rng or random).uniform(0, delay * self.jitter_ratio)
            delay = min(delay, self.max_delay_seconds)
        return delay


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one node in a run."""

    node_id: str
    outcome: NodeOutcome
    attempts: int = 0
    error_category: ErrorCategory | None = None
    duration_seconds: float = 0.0
    message: str = ""
    verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "node_id": self.node_id,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "error_category": self.error_category.value if self.error_category else None,
            "duration_seconds": self.duration_seconds,
            "message": self.message,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionResult:
        """Create from dictionary."""
        category = data.get("error_category")
        return cls(
            node_id=data["node_id"],
            outcome=NodeOutcome(data["outcome"]),
            attempts=data.get("attempts", 0),
            error_category=ErrorCategory(category) if category else None,
            duration_seconds=data.get("duration_seconds", 0.0),
            message=data.get("message", ""),
            verified=data.get("verified", False),
        )


@dataclass
class RunResult:
    """Aggregate result of applying a plan."""

    plan_hash: str
    status: RunStatus
    results: dict[str, ExecutionResult] = field(default_factory=dict)

    def node_ids(self, outcome: NodeOutcome) -> list[str]:
        """Return sorted node ids with the given outcome."""
        return sorted(r.node_id for r in self.results.values() if r.outcome == outcome)

    @property
    def succeeded(self) -> list[str]:
        return self.node_ids(NodeOutcome.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self.node_ids(NodeOutcome.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self.node_ids(NodeOutcome.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "plan_hash": self.plan_hash,
            "status": self.status.value,
            "results": [self.results[node_id].to_dict() for node_id in sorted(self.results)],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunResult:
        """Create from dictionary."""
        results = [ExecutionResult.from_dict(item) for item in data["results"]]
        return cls(
            plan_hash=data["plan_hash"],
            status=RunStatus(data["status"]),
            results={r.node_id: r for r in results},
        )


SleepFunc = Callable[[float], Awaitable[Any]]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Executor:
    """Applies approved plans level by level.

    Dispatch inside a level follows identifier order; completion order is
    unspecified once more than one worker runs.
    """

    def __init__(
        self,
        gate: ApprovalGate,
        retry_policy: RetryPolicy | None = None,
        max_concurrency: int = GLOBAL_MAX_CONCURRENCY,
        abort_categories: frozenset[ErrorCategory] = DEFAULT_ABORT_CATEGORIES,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize executor.

        Args:
            gate: Approval gate consulted before any provider call.
            retry_policy: Backoff settings for transient failures.
            max_concurrency: Workers per level, capped at the global maximum.
            abort_categories: Fatal categories that cancel the whole run.
            sleep: Sleep coroutine (injectable for tests).
            clock: Monotonic clock used for durations.
            rng: Random source for jitter.
        """
        self._gate = gate
        self._retry = retry_policy or RetryPolicy()
        self._max_concurrency = max(1, min(max_concurrency, GLOBAL_MAX_CONCURRENCY))
        self._abort_categories = abort_categories
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    @classmethod
    def from_config(cls, config: Config, gate: ApprovalGate, **kwargs: Any) -> Executor:
        return cls(
            gate,
            retry_policy=RetryPolicy.from_config(config),
            max_concurrency=config.max_concurrency,
            **kwargs,
        )

    async def apply(
        self,
        plan: ExecutionPlan,
        approval: ApprovalRecord,
        provisioner: Provisioner,
        cancel: CancellationToken | None = None,
        listener: TransitionListener | None = None,
    ) -> RunResult:
        """Apply a plan.

        Args:
            plan: Compiled, validated plan. Node statuses are updated in place.
            approval: Approved record for exactly ``plan.plan_hash``.
            provisioner: Performs the provider calls.
            cancel: Run-scoped cancellation token.
            listener: Receives every status transition and attempt.

        Returns:
            Per-node results and aggregate run status.

        Raises:
            ApprovalRequired: If the gate holds no matching Approved record.
        """
        self._gate.require_approved(plan.plan_hash, approval)

        cancel = cancel or CancellationToken()
        abort = CancellationToken()
        store = NodeStatusStore(plan.nodes, listener)
        results: dict[str, ExecutionResult] = {}
        halted = False

        logger.info(
            "Starting plan execution",
            extra={
                "plan_hash": plan.plan_hash,
                "level_count": len(plan.levels),
                "approved_by": approval.approver,
            },
        )

        for index, level in enumerate(plan.levels):
            if halted or cancel.cancelled or abort.cancelled:
                for node_id in level:
                    results[node_id] = self._skipped(plan, node_id, results, cancel)
                continue

            level_results = await self._run_level(plan, level, provisioner, store, cancel, abort)
            results.update(level_results)

            failed = [r.node_id for r in level_results.values() if r.outcome == NodeOutcome.FAILED]
            if failed:
                halted = True
                logger.error(
                    "Level failed; halting further levels",
                    extra={"plan_hash": plan.plan_hash, "level": index, "failed_nodes": failed},
                )

        if cancel.cancelled:
            status = RunStatus.CANCELLED
        elif any(r.outcome != NodeOutcome.SUCCEEDED for r in results.values()):
            status = RunStatus.FAILED
        else:
            status = RunStatus.SUCCEEDED

        run = RunResult(plan_hash=plan.plan_hash, status=status, results=results)
        log_level = logging.INFO if status == RunStatus.SUCCEEDED else logging.ERROR
        logger.log(
            log_level,
            "Plan execution finished",
            extra={
                "plan_hash": plan.plan_hash,
                "status": status.value,
                "succeeded": run.succeeded,
                "failed": run.failed,
                "skipped": run.skipped,
            },
        )
        return run

    async def _run_level(
        self,
        plan: ExecutionPlan,
        level: list[str],
        provisioner: Provisioner,
        store: NodeStatusStore,
        cancel: CancellationToken,
        abort: CancellationToken,
    ) -> dict[str, ExecutionResult]:
        semaphore = asyncio.Semaphore(min(len(level), self._max_concurrency))
        level_failed = asyncio.Event()
        results: dict[str, ExecutionResult] = {}
        tasks: dict[str, asyncio.Future[None]] = {}
        interrupted: set[str] = set()

        async def worker(node_id: str) -> None:
            async with semaphore:
                # Graceful drain: work not yet dispatched is skipped
                if level_failed.is_set() or cancel.cancelled or abort.cancelled:
                    results[node_id] = self._skipped(plan, node_id, results, cancel)
                    return
                result = await self._run_node(plan.nodes[node_id], provisioner, store, cancel, abort)
                results[node_id] = result
                if result.outcome == NodeOutcome.FAILED:
                    level_failed.set()
                    if abort.cancelled:
                        stop_siblings(node_id)

        def stop_siblings(failed_id: str) -> None:
            # Unrecoverable failure: siblings in flight do not drain
            for other_id, task in tasks.items():
                if other_id != failed_id and not task.done():
                    interrupted.add(other_id)
                    task.cancel()

        for node_id in level:
            tasks[node_id] = asyncio.ensure_future(worker(node_id))
        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)

        for node_id, outcome in zip(tasks, outcomes):
            if isinstance(outcome, asyncio.CancelledError) and node_id in interrupted:
                results[node_id] = self._interrupted(plan.nodes[node_id], store, abort)
            elif isinstance(outcome, BaseException):
                raise outcome
        return results

    def _interrupted(
        self, node: ResourceNode, store: NodeStatusStore, abort: CancellationToken
    ) -> ExecutionResult:
        """Build the result of a node stopped by a sibling's unrecoverable failure."""
        # Stopped mid-apply: leave it retryable on the next run
        store.compare_and_set(
            node.id,
            NodeStatus.APPLYING,
            NodeStatus.FAILED,
            error_category=ErrorCategory.CANCELLED.value,
        )
        logger.warning(
            "Node interrupted by unrecoverable failure",
            extra={"node_id": node.id, "reason": abort.reason},
        )
        return ExecutionResult(
            node_id=node.id,
            outcome=NodeOutcome.SKIPPED,
            error_category=ErrorCategory.CANCELLED,
            message=f"run cancelled: {abort.reason}",
        )

    def _skipped(
        self,
        plan: ExecutionPlan,
        node_id: str,
        results: dict[str, ExecutionResult],
        cancel: CancellationToken,
    ) -> ExecutionResult:
        """Build a Skipped result, naming why the node never ran."""
        if cancel.cancelled:
            category = ErrorCategory.CANCELLED
            message = f"run cancelled: {cancel.reason}"
        else:
            graph = plan.graph()
            blocked_by = sorted(
                dep
                for dep in graph.dependency_closure(node_id)
                if dep in results and results[dep].outcome != NodeOutcome.SUCCEEDED
            )
            if blocked_by:
                category = ErrorCategory.DEPENDENCY_FAILED
                message = f"dependencies did not succeed: {blocked_by}"
            else:
                category = ErrorCategory.HALTED
                message = "not scheduled after an earlier failure"
        return ExecutionResult(
            node_id=node_id,
            outcome=NodeOutcome.SKIPPED,
            error_category=category,
            message=message,
        )

    async def _call(self, func: Callable[[ResourceNode], Any], node: ResourceNode) -> ProvisionResult:
        """Invoke a provisioner method, mapping raised errors to results."""
        try:
            result = await _resolve(func(node))
        except ProvisionError as e:
            return ProvisionResult.from_error(e)
        except Exception as e:
            logger.exception(
                "Provisioner raised unexpectedly",
                extra={"node_id": node.id, "error_type": type(e).__name__},
            )
            return ProvisionResult.fatal(ErrorCategory.PROVIDER_ERROR, f"{type(e).__name__}: {e}")
        if not isinstance(result, ProvisionResult):
            return ProvisionResult.fatal(
                ErrorCategory.PROVIDER_ERROR,
                f"provisioner returned {type(result).__name__}, expected ProvisionResult",
            )
        return result

    async def _run_node(
        self,
        node: ResourceNode,
        provisioner: Provisioner,
        store: NodeStatusStore,
        cancel: CancellationToken,
        abort: CancellationToken,
    ) -> ExecutionResult:
        start = self._clock()

        if store.get(node.id) == NodeStatus.APPLIED:
            verify = getattr(provisioner, "verify", None)
            if not callable(verify):
                logger.info(
                    "Node already applied; provisioner has no verify", extra={"node_id": node.id}
                )
                return ExecutionResult(
                    node_id=node.id,
                    outcome=NodeOutcome.SUCCEEDED,
                    duration_seconds=self._clock() - start,
                )
            verification = await self._call(verify, node)
            if verification.ok:
                logger.info("Node already applied; verified", extra={"node_id": node.id})
                return ExecutionResult(
                    node_id=node.id,
                    outcome=NodeOutcome.SUCCEEDED,
                    duration_seconds=self._clock() - start,
                    verified=True,
                )
            logger.warning(
                "Applied node failed verification; re-applying",
                extra={
                    "node_id": node.id,
                    "error_category": verification.category.value if verification.category else None,
                },
            )
            expected = APPLICABLE_STATUSES | {NodeStatus.APPLIED}
        else:
            expected = APPLICABLE_STATUSES

        if not store.compare_and_set(node.id, expected, NodeStatus.APPLYING):
            return self._concurrent_apply(node, start)

        attempt = 0
        category = ErrorCategory.PROVIDER_ERROR
        message = ""
        while attempt < self._retry.max_attempts:
            attempt += 1
            last = await self._call(provisioner.apply, node)
            message = last.message

            if last.status == ProvisionStatus.SUCCEEDED:
                store.compare_and_set(node.id, NodeStatus.APPLYING, NodeStatus.APPLIED, attempt)
                logger.info("Node applied", extra={"node_id": node.id, "attempts": attempt})
                return ExecutionResult(
                    node_id=node.id,
                    outcome=NodeOutcome.SUCCEEDED,
                    attempts=attempt,
                    duration_seconds=self._clock() - start,
                )

            category = last.category or ErrorCategory.PROVIDER_ERROR
            if last.status == ProvisionStatus.FATAL_ERROR:
                store.compare_and_set(
                    node.id, NodeStatus.APPLYING, NodeStatus.FAILED, attempt, category.value
                )
                logger.error(
                    "Node failed with fatal error",
                    extra={
                        "node_id": node.id,
                        "error_category": category.value,
                        "error": last.message,
                    },
                )
                if category in self._abort_categories:
                    abort.cancel(f"unrecoverable {category.value} on {node.id}")
                return self._failed(node, attempt, category, last.message, start)

            store.record_attempt(node.id, attempt, category.value)
            if attempt >= self._retry.max_attempts:
                break

            delay = self._retry.delay_for_attempt(attempt, self._rng)
            logger.warning(
                "Transient failure, retrying",
                extra={
                    "node_id": node.id,
                    "attempt": attempt,
                    "max_attempts": self._retry.max_attempts,
                    "wait_seconds": delay,
                    "error_category": category.value,
                },
            )
            if not await self._wait(delay, cancel, abort):
                store.compare_and_set(
                    node.id,
                    NodeStatus.APPLYING,
                    NodeStatus.FAILED,
                    attempt,
                    ErrorCategory.CANCELLED.value,
                )
                return self._failed(
                    node, attempt, ErrorCategory.CANCELLED, "retry cancelled", start
                )

        # Retry budget exhausted
        store.compare_and_set(
            node.id, NodeStatus.APPLYING, NodeStatus.FAILED, attempt, category.value
        )
        logger.error(
            "Node failed after exhausting retries",
            extra={"node_id": node.id, "attempts": attempt, "error_category": category.value},
        )
        return self._failed(node, attempt, category, message, start)

    async def _wait(
        self, delay: float, cancel: CancellationToken, abort: CancellationToken
    ) -> bool:
        """Backoff wait that either token interrupts."""
        if cancel.cancelled or abort.cancelled:
            return False
        sleeper = asyncio.ensure_future(cancel.sleep(delay, self._sleep))
        abort_waiter = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({sleeper, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (sleeper, abort_waiter):
                if not waiter.done():
                    waiter.cancel()
            await asyncio.gather(sleeper, abort_waiter, return_exceptions=True)
        return not (cancel.cancelled or abort.cancelled)

    def _failed(
        self,
        node: ResourceNode,
        attempts: int,
        category: ErrorCategory,
        message: str,
        start: float,
    ) -> ExecutionResult:
        return ExecutionResult(
            node_id=node.id,
            outcome=NodeOutcome.FAILED,
            attempts=attempts,
            error_category=category,
            duration_seconds=self._clock() - start,
            message=message,
        )

    def _concurrent_apply(self, node: ResourceNode, start: float) -> ExecutionResult:
        logger.error("Node is already being applied by another worker", extra={"node_id": node.id})
        return self._failed(
            node, 0, ErrorCategory.CONFLICT, "concurrent apply attempt rejected", start
        )
