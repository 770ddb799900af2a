"""Approval gate between validation and deployment.

This module implements the human checkpoint of the pipeline:
1. Validation reports are registered per plan hash
2. Approval decisions become immutable, typed records bound to that hash
3. The executor asks the gate for an Approved record before starting

DESIGN PHILOSOPHY:
- Critical findings can never be approved away; remediate, recompile,
  revalidate
- Warnings must be acknowledged one by one, by finding identifier
- Approved is final for a plan hash; a rejection can be superseded
- The record store is append-only and keyed by plan hash, so concurrent
  decisions cannot overwrite each other
- Audit trail for all approval decisions
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .policy import Severity, ValidationReport, Verdict

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """Decision recorded by an approver."""

    APPROVED = "approved"
    REJECTED = "rejected"


class GateState(str, Enum):
    """State of the gate for one plan hash."""

    NOT_VALIDATED = "not_validated"
    BLOCKED = "blocked"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class GateError(Exception):
    """Raised when the approval gate refuses a transition."""

    pass


class PlanNotValidated(GateError):
    """Raised when no validation report exists for the plan hash."""

    def __init__(self, plan_hash: str) -> None:
        self.plan_hash = plan_hash
        super().__init__(f"Plan {plan_hash} has not been validated")


class BlockedByCriticalFindings(GateError):
    """Raised when the latest report for the plan has verdict Fail."""

    def __init__(self, plan_hash: str, finding_ids: list[str]) -> None:
        self.plan_hash = plan_hash
        self.finding_ids = finding_ids
        super().__init__(
            f"Plan {plan_hash} has critical findings {finding_ids}. "
            f"Fix configuration, recompile the plan and revalidate."
        )


class UnacknowledgedWarnings(GateError):
    """Raised when an approval does not acknowledge every warning."""

    def __init__(self, ids: list[str]) -> None:
        self.ids = sorted(ids)
        super().__init__(f"Approval must acknowledge warnings: {self.ids}")


class AlreadyApproved(GateError):
    """Raised when a decision is recorded after a final approval."""

    def __init__(self, plan_hash: str) -> None:
        self.plan_hash = plan_hash
        super().__init__(f"Plan {plan_hash} is already approved; approval is final")


class ApprovalRequired(GateError):
    """Raised when execution is attempted without a matching approval."""

    def __init__(self, plan_hash: str, reason: str) -> None:
        self.plan_hash = plan_hash
        super().__init__(f"Plan {plan_hash} cannot be executed: {reason}")


@dataclass(frozen=True)
class ApprovalRecord:
    """An immutable approval decision for one plan hash."""

    plan_hash: str
    approver: str
    decision: ApprovalDecision
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    acknowledged_warnings: tuple[str, ...] = ()
    reason: str = ""

    @property
    def approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "plan_hash": self.plan_hash,
            "approver": self.approver,
            "decision": self.decision.value,
            "timestamp": self.timestamp.isoformat(),
            "acknowledged_warnings": list(self.acknowledged_warnings),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalRecord:
        """Create from dictionary."""
        return cls(
            plan_hash=data["plan_hash"],
            approver=data["approver"],
            decision=ApprovalDecision(data["decision"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            acknowledged_warnings=tuple(data.get("acknowledged_warnings") or ()),
            reason=data.get("reason", ""),
        )


class ApprovalGate:
    """Manages the approval state machine per plan hash.

    ``AwaitingApproval -> Approved`` is final.
    ``AwaitingApproval -> Rejected -> AwaitingApproval`` is re-entrant:
    a later decision supersedes a rejection.
    """

    def __init__(self) -> None:
        self._reports: dict[str, ValidationReport] = {}
        # Append-only: records are never replaced or removed
        self._records: dict[str, list[ApprovalRecord]] = {}
        self._lock = threading.Lock()

    def register_report(self, report: ValidationReport) -> None:
        """Record the latest validation report for its plan hash."""
        with self._lock:
            self._reports[report.plan_hash] = report
        logger.info(
            "Validation report registered",
            extra={"plan_hash": report.plan_hash, "verdict": report.verdict.value},
        )

    def load_history(self, records: Sequence[ApprovalRecord]) -> None:
        """Replay previously persisted records, oldest first."""
        with self._lock:
            for record in records:
                self._records.setdefault(record.plan_hash, []).append(record)

    def report_for(self, plan_hash: str) -> ValidationReport | None:
        return self._reports.get(plan_hash)

    def history(self, plan_hash: str | None = None) -> list[ApprovalRecord]:
        """Return recorded decisions, for one plan hash or all of them."""
        with self._lock:
            if plan_hash is not None:
                return list(self._records.get(plan_hash, []))
            return [record for records in self._records.values() for record in records]

    def latest(self, plan_hash: str) -> ApprovalRecord | None:
        """Return the effective record for a plan hash.

        The first Approved record wins; otherwise the newest decision.
        """
        records = self.history(plan_hash)
        for record in records:
            if record.approved:
                return record
        return records[-1] if records else None

    def state(self, plan_hash: str) -> GateState:
        """Return the gate state for a plan hash."""
        report = self._reports.get(plan_hash)
        latest = self.latest(plan_hash)
        if latest is not None and latest.approved:
            return GateState.APPROVED
        if report is None:
            return GateState.NOT_VALIDATED
        if report.verdict == Verdict.FAIL:
            return GateState.BLOCKED
        if latest is not None:
            return GateState.REJECTED
        return GateState.AWAITING_APPROVAL

    def record_approval(
        self,
        plan_hash: str,
        decision: ApprovalDecision,
        approver: str,
        acknowledged_warnings: Sequence[str] = (),
        reason: str = "",
    ) -> ApprovalRecord:
        """Record an approval decision.

        Args:
            plan_hash: Hash of the exact plan being decided on.
            decision: Approved or Rejected.
            approver: Identity of the approver (email, UPN, etc.).
            acknowledged_warnings: Warning finding ids the approver accepts.
            reason: Optional free-text justification.

        Returns:
            The new immutable record.

        Raises:
            GateError: If the approver identity is empty.
            PlanNotValidated: If no report exists for the plan hash.
            BlockedByCriticalFindings: If the report's verdict is Fail.
            UnacknowledgedWarnings: If an approval misses a warning id.
            AlreadyApproved: If the plan hash is already approved.
        """
        if not approver or not approver.strip():
            raise GateError("Approver identity is required")

        with self._lock:
            report = self._reports.get(plan_hash)
            if report is None:
                raise PlanNotValidated(plan_hash)

            if report.verdict == Verdict.FAIL:
                critical = [f.finding_id for f in report.by_severity(Severity.CRITICAL)]
                logger.error(
                    "Approval blocked by critical findings",
                    extra={"plan_hash": plan_hash, "critical_findings": critical},
                )
                raise BlockedByCriticalFindings(plan_hash, critical)

            existing = self._records.get(plan_hash, [])
            if any(record.approved for record in existing):
                raise AlreadyApproved(plan_hash)

            acknowledged = tuple(sorted(set(acknowledged_warnings)))
            if decision == ApprovalDecision.APPROVED:
                missing = set(report.warning_ids) - set(acknowledged)
                if missing:
                    raise UnacknowledgedWarnings(list(missing))
                unknown = set(acknowledged) - set(report.warning_ids)
                if unknown:
                    logger.warning(
                        "Acknowledged ids are not warnings of this plan",
                        extra={"plan_hash": plan_hash, "unknown_ids": sorted(unknown)},
                    )

            record = ApprovalRecord(
                plan_hash=plan_hash,
                approver=approver.strip(),
                decision=decision,
                acknowledged_warnings=acknowledged,
                reason=reason,
            )
            self._records.setdefault(plan_hash, []).append(record)

        if record.approved:
            logger.info(
                "Plan approved",
                extra={
                    "plan_hash": plan_hash,
                    "approved_by": record.approver,
                    "acknowledged_warnings": list(acknowledged),
                },
            )
        else:
            logger.warning(
                "Plan rejected",
                extra={"plan_hash": plan_hash, "rejected_by": record.approver, "reason": reason},
            )
        return record

    def submit_decision(
        self,
        plan_hash: str,
        decision: ApprovalDecision,
        approver: str,
        acknowledged_warnings: Sequence[str] = (),
    ) -> ApprovalRecord:
        """Approval channel entry point; see ``record_approval``."""
        return self.record_approval(plan_hash, decision, approver, acknowledged_warnings)

    def require_approved(self, plan_hash: str, record: ApprovalRecord | None = None) -> ApprovalRecord:
        """Return the Approved record for ``plan_hash`` or fail closed.

        Args:
            plan_hash: Hash of the plan about to be executed.
            record: Record presented by the caller; must be the gate's own
                approved record for exactly this hash.

        Raises:
            ApprovalRequired: If no matching Approved record exists.
        """
        if record is not None and record.plan_hash != plan_hash:
            raise ApprovalRequired(
                plan_hash, f"approval record is for a different plan ({record.plan_hash})"
            )

        latest = self.latest(plan_hash)
        if latest is None or not latest.approved:
            raise ApprovalRequired(plan_hash, "no approved record exists for this plan hash")

        if record is not None and record != latest:
            raise ApprovalRequired(plan_hash, "presented approval record is not on file")

        return latest
