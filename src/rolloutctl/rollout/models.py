"""Rollout data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class TargetState(str, Enum):
    """Reconciliation lifecycle state of a target."""

    IDLE = "idle"
    FETCHING = "fetching"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    CONVERGED = "converged"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TargetState.CONVERGED,
            TargetState.ROLLED_BACK,
            TargetState.FAILED,
        )


class HealthStatus(str, Enum):
    """Health prober verdict."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNREACHABLE = "unreachable"


class FailureKind(str, Enum):
    """Error taxonomy for external call outcomes and terminal failures."""

    NOT_FOUND = "not_found"
    CORRUPT = "corrupt"
    UNREACHABLE = "unreachable"
    UNHEALTHY = "unhealthy"
    ATTEMPT_BUDGET_EXCEEDED = "attempt_budget_exceeded"
    INSTALL_FAILED = "install_failed"
    NO_ROLLBACK_TARGET = "no_rollback_target"
    CANCELLED = "cancelled"

    @property
    def is_retryable(self) -> bool:
        return self in (FailureKind.NOT_FOUND, FailureKind.UNREACHABLE)


class RecordOutcome(str, Enum):
    """Outcome of one reconciliation attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class PlanStatus(str, Enum):
    """Status of a deployment plan run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    ABORTED = "aborted"

    @property
    def is_complete(self) -> bool:
        return self not in (PlanStatus.PENDING, PlanStatus.RUNNING)


@dataclass
class Target:
    """A deployment endpoint and its last observed state."""

    id: str
    endpoint: str = ""
    observed_version: str | None = None
    state: TargetState = TargetState.IDLE
    health: HealthStatus | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    decommissioned: bool = False
    labels: dict[str, str] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_verified(self) -> bool:
        """True if the observed version is installed and confirmed healthy."""
        return (
            self.state == TargetState.CONVERGED
            and self.health == HealthStatus.HEALTHY
            and self.observed_version is not None
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "observed_version": self.observed_version,
            "state": self.state.value,
            "health": self.health.value if self.health else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "decommissioned": self.decommissioned,
            "labels": self.labels,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Target":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            endpoint=data.get("endpoint", ""),
            observed_version=data.get("observed_version"),
            state=TargetState(data.get("state", "idle")),
            health=HealthStatus(data["health"]) if data.get("health") else None,
            last_error=data.get("last_error"),
            consecutive_failures=data.get("consecutive_failures", 0),
            decommissioned=data.get("decommissioned", False),
            labels=dict(data.get("labels") or {}),
            updated_at=_parse_time(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class VerificationStep:
    """Post-install check run by the health prober."""

    name: str
    path: str = "/health"
    expect_status: int = 200
    expect_version: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "expect_status": self.expect_status,
            "expect_version": self.expect_version,
        }


@dataclass(frozen=True)
class Artifact:
    """Immutable, fingerprint-verified package release."""

    version: str
    fingerprint: str
    locator: str
    manifest: tuple[VerificationStep, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "fingerprint": self.fingerprint,
            "locator": self.locator,
            "manifest": [step.to_dict() for step in self.manifest],
        }


@dataclass(frozen=True)
class ResolveResult:
    """Labelled outcome of an artifact resolution."""

    artifact: Artifact | None = None
    failure: FailureKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.artifact is not None and self.failure is None

    @classmethod
    def found(cls, artifact: Artifact) -> "ResolveResult":
        return cls(artifact=artifact)

    @classmethod
    def not_found(cls, message: str) -> "ResolveResult":
        return cls(failure=FailureKind.NOT_FOUND, message=message)

    @classmethod
    def corrupt(cls, message: str) -> "ResolveResult":
        return cls(failure=FailureKind.CORRUPT, message=message)


@dataclass(frozen=True)
class ProbeResult:
    """Labelled outcome of a health probe."""

    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApplyResult:
    """Labelled outcome of an install action."""

    succeeded: bool
    message: str = ""
    failure: FailureKind | None = None

    @classmethod
    def success(cls, message: str = "") -> "ApplyResult":
        return cls(succeeded=True, message=message)

    @classmethod
    def failed(
        cls,
        message: str,
        failure: FailureKind = FailureKind.INSTALL_FAILED,
    ) -> "ApplyResult":
        return cls(succeeded=False, message=message, failure=failure)


@dataclass
class StateTransition:
    """One edge taken by the reconciler state machine."""

    from_state: TargetState
    to_state: TargetState
    timestamp: datetime = field(default_factory=utcnow)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateTransition":
        return cls(
            from_state=TargetState(data["from_state"]),
            to_state=TargetState(data["to_state"]),
            timestamp=_parse_time(data.get("timestamp")) or utcnow(),
            reason=data.get("reason", ""),
        )


@dataclass
class ReconciliationRecord:
    """Audit entry for one (target, artifact) reconciliation attempt."""

    target_id: str
    artifact_version: str
    plan_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    outcome: RecordOutcome | None = None
    failure_kind: FailureKind | None = None
    transitions: list[StateTransition] = field(default_factory=list)
    install_attempts: int = 0

    @property
    def is_closed(self) -> bool:
        return self.outcome is not None

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "artifact_version": self.artifact_version,
            "plan_id": self.plan_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "transitions": [t.to_dict() for t in self.transitions],
            "install_attempts": self.install_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReconciliationRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            target_id=data["target_id"],
            artifact_version=data["artifact_version"],
            plan_id=data.get("plan_id"),
            started_at=_parse_time(data.get("started_at")) or utcnow(),
            ended_at=_parse_time(data.get("ended_at")),
            outcome=RecordOutcome(data["outcome"]) if data.get("outcome") else None,
            failure_kind=FailureKind(data["failure_kind"]) if data.get("failure_kind") else None,
            transitions=[StateTransition.from_dict(t) for t in data.get("transitions", [])],
            install_attempts=data.get("install_attempts", 0),
        )


@dataclass
class TargetResult:
    """Terminal per-target result reported to the coordinator."""

    target_id: str
    state: TargetState
    failure_kind: FailureKind | None = None
    record: ReconciliationRecord | None = None
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.state == TargetState.CONVERGED

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "state": self.state.value,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "record_id": self.record.id if self.record else None,
            "message": self.message,
        }


@dataclass
class RolloutReport:
    """Result of running a deployment plan."""

    plan_id: str
    version: str
    status: PlanStatus = PlanStatus.PENDING
    results: dict[str, TargetResult] = field(default_factory=dict)
    batches: list[list[str]] = field(default_factory=list)
    untouched: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    abort_reason: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def failed(self) -> list[str]:
        """Ids of dispatched targets that did not converge."""
        return [tid for tid, result in self.results.items() if not result.converged]

    @property
    def converged(self) -> list[str]:
        return [tid for tid, result in self.results.items() if result.converged]

    @property
    def failure_ratio(self) -> float:
        if not self.results:
            return 0.0
        return len(self.failed) / len(self.results)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "plan_id": self.plan_id,
            "version": self.version,
            "status": self.status.value,
            "results": {tid: r.to_dict() for tid, r in self.results.items()},
            "failed": self.failed,
            "untouched": self.untouched,
            "skipped": self.skipped,
            "batches": self.batches,
            "abort_reason": self.abort_reason,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
