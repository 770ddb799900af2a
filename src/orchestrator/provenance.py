"""Run provenance tracking for audit.

Every pipeline phase is stamped with a provenance record that answers:
- "Which plan did this phase act on?"
- "Who approved it and when?"
- "What version of the orchestrator was running?"

Records are emitted as structured log lines, so they end up wherever
the JSON logs are shipped.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ORCHESTRATOR_VERSION = os.environ.get("ORCHESTRATOR_VERSION", "dev")


@dataclass
class PhaseProvenance:
    """Provenance record for one phase of one run."""

    run_id: str
    phase: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    orchestrator_version: str = ORCHESTRATOR_VERSION
    git_commit_sha: str = ""

    plan_hash: str = ""
    actor: str = ""  # Approver identity, where a human acted

    # Phase outcome: succeeded, failed, blocked, rejected, cancelled
    outcome: str = ""
    summary: dict[str, Any] = field(default_factory=dict)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits provenance records through the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(self, run_id: str, phase: str, plan_hash: str = "") -> PhaseProvenance:
        return PhaseProvenance(
            run_id=run_id,
            phase=phase,
            orchestrator_version=ORCHESTRATOR_VERSION,
            git_commit_sha=self._git_commit_sha,
            plan_hash=plan_hash,
        )

    def log_provenance(self, provenance: PhaseProvenance) -> None:
        """Log a completed provenance record.

        Failed phases log at ERROR; blocked, rejected or cancelled phases
        at WARNING.
        """
        log_level = logging.INFO
        if provenance.error or provenance.outcome == "failed":
            log_level = logging.ERROR
        elif provenance.outcome in ("blocked", "rejected", "cancelled"):
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Phase provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "run_id": provenance.run_id,
                "phase": provenance.phase,
                "plan_hash": provenance.plan_hash,
                "outcome": provenance.outcome,
                "git_commit": provenance.git_commit_sha,
                "orchestrator_version": provenance.orchestrator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
