"""Narrow interfaces to the collaborators the core does not own.

Provider-specific API calls, status probing and the way an approval
decision is collected all live behind these protocols. Implementations
may be synchronous or return awaitables; the executor and health
verifier accept both.
"""

from __future__ import annotations

from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .approval import ApprovalDecision, ApprovalRecord
    from .graph import ResourceNode


class ErrorCategory(str, Enum):
    """Explicit provisioning failure categories."""

    # Transient: expected to resolve on their own
    EVENTUAL_CONSISTENCY = "eventual_consistency"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    # Fatal: retrying will not help
    INVALID_CONFIGURATION = "invalid_configuration"
    PERMISSION_DENIED = "permission_denied"
    CONFLICT = "conflict"
    PROVIDER_ERROR = "provider_error"
    # Recorded on nodes the executor never finished
    CANCELLED = "cancelled"
    DEPENDENCY_FAILED = "dependency_failed"
    HALTED = "halted"

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_CATEGORIES

    @property
    def is_fatal(self) -> bool:
        return self in FATAL_CATEGORIES


TRANSIENT_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.EVENTUAL_CONSISTENCY, ErrorCategory.RATE_LIMIT, ErrorCategory.TIMEOUT}
)

FATAL_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.INVALID_CONFIGURATION,
        ErrorCategory.PERMISSION_DENIED,
        ErrorCategory.CONFLICT,
        ErrorCategory.PROVIDER_ERROR,
    }
)


class ProvisionError(Exception):
    """Base for errors a provisioner may raise instead of returning a result."""

    def __init__(self, category: ErrorCategory, message: str = "") -> None:
        self.category = category
        self.message = message or category.value
        super().__init__(self.message)


class TransientProvisionError(ProvisionError):
    """A failure expected to resolve on retry."""

    def __init__(self, category: ErrorCategory, message: str = "") -> None:
        if not category.is_transient:
            raise ValueError(f"{category.value} is not a transient category")
        super().__init__(category, message)


class FatalProvisionError(ProvisionError):
    """A failure that will not resolve by retrying."""

    def __init__(self, category: ErrorCategory, message: str = "") -> None:
        if not category.is_fatal:
            raise ValueError(f"{category.value} is not a fatal category")
        super().__init__(category, message)


class ProvisionStatus(str, Enum):
    """Outcome class of a single provisioner call."""

    SUCCEEDED = "succeeded"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True)
class ProvisionResult:
    """Result of ``Provisioner.apply`` or ``Provisioner.verify``."""

    status: ProvisionStatus
    category: ErrorCategory | None = None
    message: str = ""

    @classmethod
    def succeeded(cls, message: str = "") -> ProvisionResult:
        return cls(ProvisionStatus.SUCCEEDED, None, message)

    @classmethod
    def transient(cls, category: ErrorCategory, message: str = "") -> ProvisionResult:
        if not category.is_transient:
            raise ValueError(f"{category.value} is not a transient category")
        return cls(ProvisionStatus.TRANSIENT_ERROR, category, message)

    @classmethod
    def fatal(cls, category: ErrorCategory, message: str = "") -> ProvisionResult:
        if not category.is_fatal:
            raise ValueError(f"{category.value} is not a fatal category")
        return cls(ProvisionStatus.FATAL_ERROR, category, message)

    @classmethod
    def from_error(cls, error: ProvisionError) -> ProvisionResult:
        if isinstance(error, TransientProvisionError):
            return cls.transient(error.category, error.message)
        return cls(ProvisionStatus.FATAL_ERROR, error.category, error.message)

    @property
    def ok(self) -> bool:
        return self.status == ProvisionStatus.SUCCEEDED


class ProbeStatus(str, Enum):
    """Status reported by a status probe."""

    READY = "ready"
    PENDING = "pending"
    ERROR_STATE = "error_state"

    @property
    def is_terminal(self) -> bool:
        return self != ProbeStatus.PENDING


@dataclass(frozen=True)
class ProbeResult:
    """A single probe observation.

    ``attributes`` carries provider-published facts used by cross-node
    checks (for example an endpoint's ``fqdn`` and ``privateAddress`` or
    a DNS zone's ``records``).
    """

    status: ProbeStatus
    attributes: dict[str, Any] = field(default_factory=dict)
    message: str = ""


@runtime_checkable
class Provisioner(Protocol):
    """Creates or updates a resource; must be idempotent per node.

    A provisioner may also define ``verify(node)`` with the same return
    type. When present, the executor calls it for nodes that are already
    Applied instead of applying them again; when absent, Applied nodes
    are reported as succeeded without a provider call.
    """

    def apply(self, node: ResourceNode) -> ProvisionResult | Awaitable[ProvisionResult]: ...


@runtime_checkable
class StatusProbe(Protocol):
    """Reports the observed state of a resource."""

    def poll(
        self, node: ResourceNode
    ) -> ProbeResult | ProbeStatus | Awaitable[ProbeResult | ProbeStatus]: ...


@runtime_checkable
class ApprovalChannel(Protocol):
    """Single synchronous surface for submitting an approval decision."""

    def submit_decision(
        self,
        plan_hash: str,
        decision: ApprovalDecision,
        approver: str,
        acknowledged_warnings: Sequence[str] = (),
    ) -> ApprovalRecord: ...
