"""Five-phase pipeline: plan, validate, approve, deploy, confirm.

Each phase reads only its predecessor's artifact and writes its own, so
any phase can be resumed or audited from the artifact store alone.
Artifacts carry the plan snapshot forward; the approve artifact carries
the decision history and the deploy artifact is checkpointed after
every status transition.

Remediation after a failed validation or deployment is always: fix the
graph, run ``plan`` again, revalidate, and approve the new plan hash.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from .approval import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalRecord,
    BlockedByCriticalFindings,
    GateError,
)
from .artifacts import ArtifactStore, Phase, PhaseArtifacts
from .compiler import CompileError, ExecutionPlan, compile_plan
from .config import Config
from .executor import Executor, RunResult, RunStatus
from .graph import NodeStatus, ResourceGraph
from .health import HealthReport, HealthVerifier
from .interfaces import Provisioner, StatusProbe
from .policy import RuleSet, ValidationReport, Verdict, validate
from .provenance import ProvenanceLogger, get_provenance_logger
from .state import CancellationToken, Transition

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when a phase cannot start from the stored artifacts."""

    pass


def _load_plan(artifact: dict[str, Any]) -> ExecutionPlan:
    try:
        return ExecutionPlan.from_dict(artifact["plan"])
    except (KeyError, TypeError) as e:
        raise PipelineError(f"Artifact does not contain a plan: {e}") from e


class CheckpointWriter:
    """Persists deploy checkpoints without blocking the event loop.

    Status transitions arrive synchronously from the executor; each one
    replaces the pending snapshot and a background task writes the newest
    snapshot in the default thread pool. ``close`` flushes whatever is
    still pending.
    """

    def __init__(self, artifacts: PhaseArtifacts) -> None:
        self._artifacts = artifacts
        self._pending: dict[str, Any] | None = None
        self._wakeup = asyncio.Event()
        self._closing = False
        self._task: asyncio.Future[None] | None = None
        self.writes = 0

    def start(self) -> None:
        self._task = asyncio.ensure_future(self._run())

    def submit(self, artifact: dict[str, Any]) -> None:
        self._pending = artifact
        self._wakeup.set()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            artifact, self._pending = self._pending, None
            if artifact is not None:
                await loop.run_in_executor(None, self._artifacts.write, artifact)
                self.writes += 1
            if self._closing and self._pending is None:
                return

    async def close(self) -> None:
        """Flush the pending snapshot and stop the writer."""
        self._closing = True
        self._wakeup.set()
        if self._task is not None:
            await self._task


class Pipeline:
    """Runs pipeline phases against an artifact store."""

    def __init__(
        self,
        store: ArtifactStore,
        config: Config | None = None,
        ruleset: RuleSet | None = None,
        provenance: ProvenanceLogger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.ruleset = ruleset or RuleSet.default()
        self.provenance = provenance or get_provenance_logger()
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def plan(self, run_id: str, graph: ResourceGraph) -> ExecutionPlan:
        """Compile ``graph`` and store the plan.

        When the plan hash differs from the stored plan, the artifacts of
        every later phase are deleted first, so a new plan always needs a
        fresh validation and approval.

        Raises:
            CompileError: On cycles or unknown dependencies.
        """
        artifacts = PhaseArtifacts(self.store, run_id, Phase.PLAN)
        record = self.provenance.create_provenance(run_id, Phase.PLAN.value)
        start = time.monotonic()
        try:
            plan = compile_plan(graph)
        except CompileError as e:
            record.duration_seconds = time.monotonic() - start
            record.outcome = "failed"
            record.error = str(e)
            record.error_type = type(e).__name__
            self.provenance.log_provenance(record)
            raise

        previous = artifacts.read_own() or {}
        if (previous.get("plan") or {}).get("plan_hash") != plan.plan_hash:
            # Later artifacts belong to another plan; they must not be resumed
            removed = artifacts.clear_downstream()
            if removed:
                logger.info(
                    "Plan changed; cleared later phase artifacts",
                    extra={
                        "run_id": run_id,
                        "plan_hash": plan.plan_hash,
                        "phases": [phase.value for phase in removed],
                    },
                )
        artifacts.write({"plan": plan.to_dict()})
        record.duration_seconds = time.monotonic() - start
        record.plan_hash = plan.plan_hash
        record.outcome = "succeeded"
        record.summary = {"nodes": len(plan.nodes), "levels": len(plan.levels)}
        self.provenance.log_provenance(record)
        return plan

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, run_id: str) -> ValidationReport:
        """Validate the stored plan against the rule set."""
        artifacts = PhaseArtifacts(self.store, run_id, Phase.VALIDATE)
        plan = _load_plan(artifacts.read_input())
        record = self.provenance.create_provenance(run_id, Phase.VALIDATE.value, plan.plan_hash)
        start = time.monotonic()

        report = validate(plan, self.ruleset)
        if report.verdict != Verdict.FAIL:
            plan.set_status(NodeStatus.VALIDATED)

        artifacts.write({"plan": plan.to_dict(), "report": report.to_dict()})

        record.duration_seconds = time.monotonic() - start
        record.outcome = "blocked" if report.verdict == Verdict.FAIL else "succeeded"
        record.summary = {
            "verdict": report.verdict.value,
            "findings": len(report.findings),
            "warnings": report.warning_ids,
        }
        self.provenance.log_provenance(record)
        return report

    # ------------------------------------------------------------------
    # Approve
    # ------------------------------------------------------------------

    def _gate_for(
        self, report: ValidationReport, records: Sequence[dict[str, Any]]
    ) -> ApprovalGate:
        gate = ApprovalGate()
        gate.register_report(report)
        gate.load_history(
            [
                ApprovalRecord.from_dict(item)
                for item in records
                if item.get("plan_hash") == report.plan_hash
            ]
        )
        return gate

    def approve(
        self,
        run_id: str,
        decision: ApprovalDecision,
        approver: str,
        acknowledged_warnings: Sequence[str] = (),
        reason: str = "",
    ) -> ApprovalRecord:
        """Record an approval decision for the validated plan.

        Prior decisions for the same plan hash are replayed from this
        phase's own artifact, so approval stays final across processes.

        Raises:
            GateError: If the gate refuses the decision.
        """
        artifacts = PhaseArtifacts(self.store, run_id, Phase.APPROVE)
        validated = artifacts.read_input()
        plan = _load_plan(validated)
        if "report" not in validated:
            raise PipelineError(f"Run '{run_id}' has no validation report")
        report = ValidationReport.from_dict(validated["report"])
        if report.plan_hash != plan.plan_hash:
            raise PipelineError("Validation report does not belong to the stored plan")

        previous = artifacts.read_own() or {}
        gate = self._gate_for(report, previous.get("records", []))

        record = self.provenance.create_provenance(run_id, Phase.APPROVE.value, plan.plan_hash)
        record.actor = approver
        try:
            approval = gate.record_approval(
                plan.plan_hash, decision, approver, acknowledged_warnings, reason
            )
        except BlockedByCriticalFindings as e:
            record.outcome = "blocked"
            record.error = str(e)
            record.error_type = type(e).__name__
            self.provenance.log_provenance(record)
            raise
        except GateError as e:
            record.outcome = "failed"
            record.error = str(e)
            record.error_type = type(e).__name__
            self.provenance.log_provenance(record)
            raise

        if approval.approved:
            plan.set_status(NodeStatus.APPROVED)

        artifacts.write(
            {
                "plan": plan.to_dict(),
                "report": report.to_dict(),
                "records": [r.to_dict() for r in gate.history(plan.plan_hash)],
            }
        )

        record.outcome = "succeeded" if approval.approved else "rejected"
        record.summary = {
            "decision": approval.decision.value,
            "acknowledged_warnings": list(approval.acknowledged_warnings),
        }
        self.provenance.log_provenance(record)
        return approval

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def _resume_plan(self, plan: ExecutionPlan, previous: dict[str, Any] | None) -> ExecutionPlan:
        """Continue from the last deploy checkpoint of the same plan hash."""
        if not previous or "plan" not in previous:
            return plan
        checkpoint = _load_plan(previous)
        if checkpoint.plan_hash != plan.plan_hash:
            return plan

        for node in checkpoint.nodes.values():
            # An apply interrupted mid-flight is treated as failed
            if node.status == NodeStatus.APPLYING:
                logger.warning(
                    "Node was interrupted while applying; will retry",
                    extra={"node_id": node.id},
                )
                node.status = NodeStatus.FAILED
        logger.info(
            "Resuming deployment from checkpoint",
            extra={
                "plan_hash": plan.plan_hash,
                "applied": sorted(
                    n.id for n in checkpoint.nodes.values() if n.status == NodeStatus.APPLIED
                ),
            },
        )
        return checkpoint

    async def deploy(
        self,
        run_id: str,
        provisioner: Provisioner,
        cancel: CancellationToken | None = None,
    ) -> RunResult:
        """Apply the approved plan.

        Raises:
            ApprovalRequired: If the stored decisions do not approve this plan hash.
        """
        artifacts = PhaseArtifacts(self.store, run_id, Phase.DEPLOY)
        approved = artifacts.read_input()
        plan = _load_plan(approved)
        if "report" not in approved:
            raise PipelineError(f"Run '{run_id}' has no validation report")
        report = ValidationReport.from_dict(approved["report"])
        gate = self._gate_for(report, approved.get("records", []))
        approval = gate.require_approved(plan.plan_hash)

        plan = self._resume_plan(plan, artifacts.read_own())
        journal: list[dict[str, Any]] = []

        writer = CheckpointWriter(artifacts)

        def checkpoint(transition: Transition, _snapshot: dict[str, NodeStatus]) -> None:
            journal.append(transition.to_dict())
            writer.submit(
                {
                    "plan": plan.to_dict(),
                    "approval": approval.to_dict(),
                    "journal": list(journal),
                    "result": None,
                }
            )

        record = self.provenance.create_provenance(run_id, Phase.DEPLOY.value, plan.plan_hash)
        record.actor = approval.approver
        start = time.monotonic()

        executor = Executor.from_config(self.config, gate, sleep=self._sleep, clock=self._clock)
        writer.start()
        try:
            result = await executor.apply(
                plan, approval, provisioner, cancel=cancel, listener=checkpoint
            )
        finally:
            await writer.close()

        artifacts.write(
            {
                "plan": plan.to_dict(),
                "approval": approval.to_dict(),
                "journal": journal,
                "result": result.to_dict(),
            }
        )

        record.duration_seconds = time.monotonic() - start
        record.outcome = result.status.value
        record.summary = {
            "succeeded": result.succeeded,
            "failed": result.failed,
            "skipped": result.skipped,
        }
        self.provenance.log_provenance(record)
        return result

    # ------------------------------------------------------------------
    # Confirm
    # ------------------------------------------------------------------

    async def confirm(
        self,
        run_id: str,
        probe: StatusProbe,
        timeout: float | None = None,
        weights: dict[str, float] | None = None,
        cancel: CancellationToken | None = None,
    ) -> HealthReport:
        """Verify convergence of the deployed plan and store the health report."""
        artifacts = PhaseArtifacts(self.store, run_id, Phase.CONFIRM)
        deployed = artifacts.read_input()
        plan = _load_plan(deployed)
        if deployed.get("result") is None:
            raise PipelineError(f"Deployment of run '{run_id}' has not finished")
        run = RunResult.from_dict(deployed["result"])

        record = self.provenance.create_provenance(run_id, Phase.CONFIRM.value, plan.plan_hash)
        start = time.monotonic()

        verifier = HealthVerifier.from_config(
            self.config,
            probe,
            weights={**self.config.health_weights, **(weights or {})},
            sleep=self._sleep,
            clock=self._clock,
        )
        report = await verifier.verify(
            plan, timeout or self.config.health_timeout_seconds, cancel=cancel
        )
        passed = report.passed(self.config.health_threshold)

        artifacts.write(
            {
                "health": report.to_dict(),
                "threshold": self.config.health_threshold,
                "passed": passed,
                "run_status": run.status.value,
            }
        )

        record.duration_seconds = time.monotonic() - start
        record.outcome = "succeeded" if passed else "failed"
        record.summary = {"score": report.score, "threshold": self.config.health_threshold}
        if run.status != RunStatus.SUCCEEDED:
            record.summary["run_status"] = run.status.value
        self.provenance.log_provenance(record)
        return report
