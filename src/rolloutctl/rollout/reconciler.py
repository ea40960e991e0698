"""Per-target reconciliation state machine.

States::

    idle -> fetching -> installing -> verifying -> converged
                             |             |
                             +-------------+--> rolling_back -> rolled_back
                                                      |
    any state ------------------------------------------------> failed

Transient failures (artifact not published yet, target unreachable) are
retried with exponential backoff and consume the per-target attempt budget.
Only terminal outcomes leave this module; collaborator exceptions and
timeouts are mapped onto the failure taxonomy first.
"""

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from rolloutctl.core.async_utils import backoff_delay, call_blocking
from rolloutctl.core.exceptions import RolloutError, TargetNotFoundError
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.rollout.alerts import Alerter
from rolloutctl.rollout.artifacts import ArtifactResolver
from rolloutctl.rollout.audit import AuditSink
from rolloutctl.rollout.health import HealthProber
from rolloutctl.rollout.install import InstallAction
from rolloutctl.rollout.models import (
    ApplyResult,
    Artifact,
    FailureKind,
    HealthStatus,
    ProbeResult,
    ReconciliationRecord,
    RecordOutcome,
    ResolveResult,
    StateTransition,
    Target,
    TargetResult,
    TargetState,
    utcnow,
)
from rolloutctl.rollout.records import RecordStore
from rolloutctl.rollout.registry import TargetRegistry
from rolloutctl.rollout.schema import DeploymentPlan
from rolloutctl.rollout.secrets import SecretLease, SecretStore

logger = StructuredLogger(__name__)

# Failure kinds that always page someone
ESCALATE = (FailureKind.CORRUPT, FailureKind.ATTEMPT_BUDGET_EXCEEDED)


@dataclass(frozen=True)
class ReconcileOptions:
    """Limits for one target's reconciliation within a plan."""

    plan_id: str | None = None
    force: bool = False
    attempt_budget: int = 3
    resolve_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    resolve_timeout: float = 30.0
    install_timeout: float = 600.0
    probe_timeout: float = 10.0
    lease_ttl: float = 900.0

    @classmethod
    def from_plan(cls, plan: DeploymentPlan, lease_ttl: float = 900.0) -> "ReconcileOptions":
        policy = plan.policy
        return cls(
            plan_id=plan.id,
            force=plan.force,
            attempt_budget=policy.attempt_budget,
            resolve_attempts=policy.resolve_attempts,
            backoff_base=policy.backoff_base,
            backoff_max=policy.backoff_max,
            resolve_timeout=policy.timeouts.resolve,
            install_timeout=policy.timeouts.install,
            probe_timeout=policy.timeouts.probe,
            lease_ttl=lease_ttl,
        )


class BudgetExhausted(Exception):
    """Internal signal: the per-target attempt budget ran out."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class _Run:
    """Working state of one reconciliation, owned by the lock holder."""

    def __init__(
        self,
        target: Target,
        version: str,
        options: ReconcileOptions,
        cancel: asyncio.Event | None,
    ):
        self.target = target
        self.version = version
        self.options = options
        self.cancel = cancel
        self.prior_version = target.observed_version
        self.failures = 0
        self.lease: SecretLease | None = None
        self.record = ReconciliationRecord(
            target_id=target.id,
            artifact_version=version,
            plan_id=options.plan_id,
        )
        self.log = logger.bind(target=target.id, version=version)

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


class Reconciler:
    """Drives targets to a desired artifact version."""

    def __init__(
        self,
        registry: TargetRegistry,
        records: RecordStore,
        resolver: ArtifactResolver,
        prober: HealthProber,
        installer: InstallAction,
        secrets: SecretStore,
        audit: AuditSink | None = None,
        alerter: Alerter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._records = records
        self._resolver = resolver
        self._prober = prober
        self._installer = installer
        self._secrets = secrets
        self._audit = audit or AuditSink()
        self._alerter = alerter or Alerter()
        self._sleep = sleep

        self._guard = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        """Ids of targets with a reconciliation currently running."""
        with self._guard:
            return frozenset(self._in_flight)

    def _lock_for(self, target_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        with self._guard:
            # asyncio locks belong to one event loop
            if self._loop is not loop:
                self._loop = loop
                self._locks = {}
            lock = self._locks.get(target_id)
            if lock is None:
                lock = self._locks[target_id] = asyncio.Lock()
            return lock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        target_id: str,
        desired_version: str,
        options: ReconcileOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TargetResult:
        """Converge one target to ``desired_version``.

        Calls for the same target are serialized: a second call waits for
        the first to reach a terminal state, then re-evaluates.

        Args:
            target_id: Target to converge
            desired_version: Artifact version to install
            options: Attempt budget, backoff and timeouts
            cancel: Cancellation signal honoured before changes are applied

        Returns:
            Terminal TargetResult
        """
        options = options or ReconcileOptions()

        async with self._lock_for(target_id):
            try:
                target = self._registry.get(target_id)
            except TargetNotFoundError as e:
                return TargetResult(
                    target_id=target_id,
                    state=TargetState.FAILED,
                    failure_kind=FailureKind.NOT_FOUND,
                    message=e.message,
                )

            if target.decommissioned:
                return TargetResult(
                    target_id=target_id,
                    state=target.state,
                    message="Target is decommissioned",
                )

            if (
                not options.force
                and target.observed_version == desired_version
                and target.is_verified
            ):
                return TargetResult(
                    target_id=target_id,
                    state=TargetState.CONVERGED,
                    message=f"Already running {desired_version}",
                )

            if cancel is not None and cancel.is_set():
                return TargetResult(
                    target_id=target_id,
                    state=target.state,
                    failure_kind=FailureKind.CANCELLED,
                    message="Cancelled before start",
                )

            run = _Run(target, desired_version, options, cancel)
            with self._guard:
                self._in_flight.add(target_id)
            try:
                return await self._converge(run)
            finally:
                self._release_lease(run)
                with self._guard:
                    self._in_flight.discard(target_id)

    async def rollback(
        self,
        target_id: str,
        to_version: str | None = None,
        options: ReconcileOptions | None = None,
    ) -> TargetResult:
        """Roll a target back to its previous good version.

        A target already in ``rolled_back`` is left alone: no transition and
        no new record.
        """
        options = options or ReconcileOptions()

        async with self._lock_for(target_id):
            target = self._registry.get(target_id)

            if target.state == TargetState.ROLLED_BACK:
                return TargetResult(
                    target_id=target_id,
                    state=TargetState.ROLLED_BACK,
                    message="Already rolled back",
                )

            version = to_version or self._records.previous_good_version(
                target_id, target.observed_version
            )
            if version is None or version == target.observed_version:
                return TargetResult(
                    target_id=target_id,
                    state=target.state,
                    failure_kind=FailureKind.NO_ROLLBACK_TARGET,
                    message="No previous version to roll back to",
                )

            run = _Run(target, version, options, cancel=None)
            run.prior_version = version
            with self._guard:
                self._in_flight.add(target_id)
            try:
                return await self._restore(run, cause=None, reason="operator requested rollback")
            finally:
                self._release_lease(run)
                with self._guard:
                    self._in_flight.discard(target_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _converge(self, run: _Run) -> TargetResult:
        observed = run.prior_version or "nothing"
        run.log.info("Reconciling", observed=observed)
        self._transition(run, TargetState.FETCHING, f"desired {run.version}, observed {observed}")

        try:
            resolved = await self._resolve(run, run.version)
        except BudgetExhausted as e:
            return self._fail(run, FailureKind.ATTEMPT_BUDGET_EXCEEDED, e.message)

        if resolved is None:
            return self._cancel(run)
        if not resolved.ok:
            kind = resolved.failure or FailureKind.NOT_FOUND
            return self._fail(run, kind, resolved.message)

        if run.cancelled:
            return self._cancel(run)

        artifact = resolved.artifact
        assert artifact is not None

        self._transition(run, TargetState.INSTALLING, f"applying {artifact.fingerprint}")
        applied = await self._apply(run, artifact)
        if not applied.succeeded:
            return await self._roll_back(run, FailureKind.INSTALL_FAILED, applied.message)

        self._transition(run, TargetState.VERIFYING, "install reported success")
        try:
            probe = await self._verify(run, artifact)
        except BudgetExhausted as e:
            run.target.health = HealthStatus.UNREACHABLE
            return self._fail(run, FailureKind.ATTEMPT_BUDGET_EXCEEDED, e.message)

        if probe.status == HealthStatus.HEALTHY:
            run.target.observed_version = run.version
            run.target.health = HealthStatus.HEALTHY
            run.target.last_error = None
            run.target.consecutive_failures = 0
            self._transition(
                run,
                TargetState.CONVERGED,
                "health verified",
                outcome=RecordOutcome.SUCCEEDED,
            )
            self._close(run, RecordOutcome.SUCCEEDED)
            run.log.info("Converged")
            return self._result(run, "Converged")

        run.target.health = HealthStatus.UNHEALTHY
        return await self._roll_back(run, FailureKind.UNHEALTHY, probe.message)

    async def _roll_back(self, run: _Run, cause: FailureKind, message: str) -> TargetResult:
        prior = run.prior_version
        if prior is None or prior == run.version:
            return self._fail(
                run,
                FailureKind.NO_ROLLBACK_TARGET,
                f"{message}; no prior version to roll back to",
                escalate=True,
            )
        run.record.failure_kind = cause
        return await self._restore(run, cause=cause, reason=message)

    async def _restore(
        self,
        run: _Run,
        cause: FailureKind | None,
        reason: str,
    ) -> TargetResult:
        """Reapply and verify ``run.prior_version`` from any state."""
        version = run.prior_version
        assert version is not None
        run.log.warning("Rolling back", to=version, reason=reason)
        self._transition(run, TargetState.ROLLING_BACK, reason)

        try:
            resolved = await self._resolve(run, version, honour_cancel=False)
        except BudgetExhausted as e:
            return self._fail(run, FailureKind.ATTEMPT_BUDGET_EXCEEDED, e.message, escalate=True)

        if resolved is None or not resolved.ok:
            kind = (resolved.failure if resolved else None) or FailureKind.NOT_FOUND
            return self._fail(
                run,
                kind,
                f"Rollback artifact {version} unavailable: {resolved.message if resolved else ''}",
                escalate=True,
            )

        artifact = resolved.artifact
        assert artifact is not None

        applied = await self._apply(run, artifact)
        if not applied.succeeded:
            return self._fail(
                run,
                FailureKind.INSTALL_FAILED,
                f"Rollback install failed: {applied.message}",
                escalate=True,
            )

        try:
            probe = await self._verify(run, artifact)
        except BudgetExhausted as e:
            run.target.health = HealthStatus.UNREACHABLE
            return self._fail(run, FailureKind.ATTEMPT_BUDGET_EXCEEDED, e.message, escalate=True)

        if probe.status != HealthStatus.HEALTHY:
            run.target.health = probe.status
            return self._fail(
                run,
                FailureKind.UNHEALTHY,
                f"Rollback to {version} failed verification: {probe.message}",
                escalate=True,
            )

        run.target.observed_version = version
        run.target.health = HealthStatus.HEALTHY
        run.target.consecutive_failures = 0
        run.target.last_error = reason if cause else None
        self._transition(
            run,
            TargetState.ROLLED_BACK,
            f"restored {version}",
            outcome=RecordOutcome.ROLLED_BACK,
        )
        run.record.failure_kind = cause
        self._close(run, RecordOutcome.ROLLED_BACK)
        return self._result(run, f"Rolled back to {version}: {reason}")

    # ------------------------------------------------------------------
    # External calls, each mapped onto the taxonomy
    # ------------------------------------------------------------------

    async def _resolve(
        self,
        run: _Run,
        version: str,
        honour_cancel: bool = True,
    ) -> ResolveResult | None:
        """Resolve with retries. Returns None if cancelled while waiting."""
        attempt = 0
        while True:
            result = await self._call_resolve(run, version)
            if result.ok or result.failure == FailureKind.CORRUPT:
                return result

            attempt += 1
            self._count_failure(run, result.message)
            if attempt >= run.options.resolve_attempts:
                return result
            self._check_budget(run, f"artifact {version} still unavailable: {result.message}")
            if honour_cancel and run.cancelled:
                return None

            delay = backoff_delay(attempt - 1, run.options.backoff_base, run.options.backoff_max)
            run.log.info("Artifact not available, retrying", attempt=attempt, delay=delay)
            await self._sleep(delay)

    async def _call_resolve(self, run: _Run, version: str) -> ResolveResult:
        try:
            return await call_blocking(
                lambda: self._resolver.resolve(version),
                run.options.resolve_timeout,
            )
        except asyncio.TimeoutError:
            return ResolveResult.not_found(
                f"Artifact resolution timed out after {run.options.resolve_timeout}s"
            )
        except Exception as e:
            run.log.warning(f"Artifact resolver raised: {e}")
            return ResolveResult.not_found(f"Artifact resolver error: {e}")

    async def _apply(self, run: _Run, artifact: Artifact) -> ApplyResult:
        credentials = self._credentials(run)
        if credentials is None:
            return ApplyResult.failed("Could not lease install credentials")

        run.record.install_attempts += 1
        target = Target.from_dict(run.target.to_dict())
        try:
            return await call_blocking(
                lambda: self._installer.apply(target, artifact, credentials),
                run.options.install_timeout,
                settle=True,
            )
        except asyncio.TimeoutError:
            run.log.warning("Install timed out", timeout=run.options.install_timeout)
            return ApplyResult.failed(
                f"Install timed out after {run.options.install_timeout}s",
                failure=FailureKind.UNREACHABLE,
            )
        except Exception as e:
            run.log.warning(f"Install action raised: {e}")
            return ApplyResult.failed(f"Install action error: {e}")

    async def _verify(self, run: _Run, artifact: Artifact) -> ProbeResult:
        """Probe until healthy or unhealthy; unreachable is retried."""
        attempt = 0
        while True:
            result = await self._call_probe(run, artifact)
            if result.status != HealthStatus.UNREACHABLE:
                return result

            self._count_failure(run, result.message)
            self._check_budget(run, f"target unreachable: {result.message}")

            delay = backoff_delay(attempt, run.options.backoff_base, run.options.backoff_max)
            attempt += 1
            run.log.info("Target unreachable, retrying probe", attempt=attempt, delay=delay)
            await self._sleep(delay)

    async def _call_probe(self, run: _Run, artifact: Artifact) -> ProbeResult:
        target = Target.from_dict(run.target.to_dict())
        credentials = self._credentials(run) or {}
        timeout = run.options.probe_timeout
        try:
            # A little headroom so the prober's own timeout fires first
            return await call_blocking(
                lambda: self._prober.probe(target, artifact, timeout, credentials),
                timeout + 1.0,
            )
        except asyncio.TimeoutError:
            return ProbeResult(HealthStatus.UNREACHABLE, f"Probe timed out after {timeout}s")
        except Exception as e:
            run.log.warning(f"Health prober raised: {e}")
            return ProbeResult(HealthStatus.UNREACHABLE, f"Health prober error: {e}")

    def _credentials(self, run: _Run) -> dict[str, str] | None:
        try:
            if run.lease is None or not run.lease.active:
                self._release_lease(run)
                run.lease = self._secrets.lease(run.target.id, run.options.lease_ttl)
            return run.lease.credentials
        except RolloutError as e:
            run.log.error(f"Secret lease failed: {e}")
            return None

    def _release_lease(self, run: _Run) -> None:
        if run.lease is not None:
            run.lease.release()
            run.lease = None

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _count_failure(self, run: _Run, message: str) -> None:
        run.failures += 1
        run.target.consecutive_failures = run.failures
        run.target.last_error = message
        self._registry.upsert(run.target)

    def _check_budget(self, run: _Run, message: str) -> None:
        if run.failures >= run.options.attempt_budget:
            raise BudgetExhausted(
                f"Attempt budget of {run.options.attempt_budget} exhausted: {message}"
            )

    def _transition(
        self,
        run: _Run,
        to_state: TargetState,
        reason: str,
        outcome: RecordOutcome | None = None,
    ) -> None:
        transition = StateTransition(
            from_state=run.target.state,
            to_state=to_state,
            reason=reason,
        )
        run.record.transitions.append(transition)
        run.target.state = to_state
        self._registry.upsert(run.target)
        self._audit.emit(
            target_id=run.target.id,
            artifact_version=run.version,
            transition=transition,
            outcome=outcome.value if outcome else None,
            plan_id=run.options.plan_id,
            record_id=run.record.id,
        )

    def _close(
        self,
        run: _Run,
        outcome: RecordOutcome,
        failure: FailureKind | None = None,
    ) -> None:
        run.record.ended_at = utcnow()
        run.record.outcome = outcome
        if failure is not None:
            run.record.failure_kind = failure
        self._records.append(run.record)

    def _fail(
        self,
        run: _Run,
        kind: FailureKind,
        message: str,
        escalate: bool = False,
    ) -> TargetResult:
        run.target.last_error = message
        self._transition(run, TargetState.FAILED, message, outcome=RecordOutcome.FAILED)
        self._close(run, RecordOutcome.FAILED, kind)
        run.log.error("Reconciliation failed", kind=kind.value, error=message)

        if escalate or kind in ESCALATE:
            self._alerter.alert(
                f"Target {run.target.id} failed ({kind.value})",
                message,
                target=run.target.id,
                version=run.version,
                plan=run.options.plan_id,
            )
        return self._result(run, message)

    def _cancel(self, run: _Run) -> TargetResult:
        self._transition(run, TargetState.IDLE, "cancelled", outcome=RecordOutcome.CANCELLED)
        self._close(run, RecordOutcome.CANCELLED, FailureKind.CANCELLED)
        return self._result(run, "Cancelled before install")

    def _result(self, run: _Run, message: str) -> TargetResult:
        return TargetResult(
            target_id=run.target.id,
            state=run.target.state,
            failure_kind=run.record.failure_kind,
            record=run.record,
            message=message,
        )
