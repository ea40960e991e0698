"""Batched rollout of a deployment plan across many targets."""

import asyncio
from collections.abc import Callable

from rolloutctl.core.exceptions import PlanNotFoundError, PlanValidationError, RolloutError
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.rollout.models import (
    FailureKind,
    PlanStatus,
    RolloutReport,
    TargetResult,
    TargetState,
    utcnow,
)
from rolloutctl.rollout.plans import PlanStore
from rolloutctl.rollout.reconciler import ReconcileOptions, Reconciler
from rolloutctl.rollout.registry import TargetRegistry
from rolloutctl.rollout.schema import DeploymentPlan, plan_batches

logger = StructuredLogger(__name__)


class RolloutCoordinator:
    """Runs a plan batch by batch, canary first.

    Targets inside a batch are reconciled concurrently, bounded by the
    plan's ``max_parallel``. After every batch the cumulative failure
    ratio is compared with ``failure_threshold``; exceeding it aborts the
    plan. Targets that were never dispatched are left untouched.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        reconciler: Reconciler,
        plan_store: PlanStore | None = None,
        poll_interval: float = 2.0,
        lease_ttl: float = 900.0,
        on_result: Callable[[TargetResult], None] | None = None,
    ):
        self._registry = registry
        self._reconciler = reconciler
        self._plan_store = plan_store
        self._poll_interval = poll_interval
        self._lease_ttl = lease_ttl
        self._on_result = on_result

        self._cancel_event: asyncio.Event | None = None
        self._cancel_reason: str | None = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """Stop dispatching and signal running reconciliations.

        Reconciliations that already dispatched an install still run to a
        terminal state.
        """
        if self._cancel_reason is None:
            self._cancel_reason = reason
        if self._cancel_event is not None:
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    def validate(self, plan: DeploymentPlan) -> list[str]:
        """Check every plan target is registered.

        Returns:
            Ids of decommissioned targets, which are skipped

        Raises:
            PlanValidationError: If any target id is unknown
        """
        unknown = [tid for tid in plan.targets if not self._registry.exists(tid)]
        if unknown:
            raise PlanValidationError(
                "Plan references unknown targets",
                [f"targets: unknown target '{tid}'" for tid in unknown],
            )
        return [tid for tid in plan.targets if self._registry.get(tid).decommissioned]

    async def run(self, plan: DeploymentPlan) -> RolloutReport:
        """Execute a plan to completion or abort.

        Args:
            plan: Validated deployment plan

        Returns:
            RolloutReport with per-target results

        Raises:
            PlanValidationError: If the plan references unknown targets
        """
        skipped = self.validate(plan)
        log = logger.bind(plan=plan.id, version=plan.version)

        batches = []
        for batch in plan_batches(plan):
            active = [tid for tid in batch if tid not in skipped]
            if active:
                batches.append(active)

        report = RolloutReport(
            plan_id=plan.id,
            version=plan.version,
            status=PlanStatus.RUNNING,
            batches=batches,
            skipped=skipped,
        )
        for tid in skipped:
            log.warning("Skipping decommissioned target", target=tid)

        self._cancel_event = asyncio.Event()
        if self._cancel_reason is not None:
            self._cancel_event.set()

        self._mark_running(plan)
        watcher = asyncio.create_task(self._watch_abort(plan.id))

        options = ReconcileOptions.from_plan(plan, lease_ttl=self._lease_ttl)
        semaphore = asyncio.Semaphore(plan.policy.max_parallel)
        threshold = plan.policy.failure_threshold
        aborted = False

        try:
            for number, batch in enumerate(batches, start=1):
                if self._abort_requested(plan.id):
                    self.cancel("abort requested")
                if self._cancel_event.is_set():
                    aborted = True
                    report.abort_reason = self._cancel_reason
                    break

                label = "canary" if number == 1 else f"batch {number}"
                log.info(f"Dispatching {label}", targets=len(batch))

                tasks = [
                    asyncio.create_task(self._dispatch(tid, plan.version, options, semaphore))
                    for tid in batch
                ]
                for result in await asyncio.gather(*tasks):
                    if result is not None:
                        report.results[result.target_id] = result

                ratio = report.failure_ratio
                log.info(
                    f"Finished {label}",
                    converged=len(report.converged),
                    failed=len(report.failed),
                    failure_ratio=f"{ratio:.2f}",
                )

                if self._cancel_event.is_set():
                    aborted = True
                    report.abort_reason = self._cancel_reason
                    break

                if ratio > threshold:
                    aborted = True
                    report.abort_reason = (
                        f"Failure ratio {ratio:.0%} exceeded threshold {threshold:.0%} "
                        f"after {label}"
                    )
                    log.error("Aborting rollout", reason=report.abort_reason)
                    break
        finally:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
            self._cancel_event = None

        dispatched = set(report.results)
        report.untouched = [tid for batch in batches for tid in batch if tid not in dispatched]

        if aborted:
            report.status = PlanStatus.ABORTED
        elif report.failed:
            report.status = PlanStatus.PARTIALLY_SUCCEEDED
        else:
            report.status = PlanStatus.SUCCEEDED
        report.completed_at = utcnow()

        log.info(
            f"Rollout {report.status.value}",
            converged=len(report.converged),
            failed=len(report.failed),
            untouched=len(report.untouched),
        )
        self._record_outcome(plan, report)
        return report

    async def _dispatch(
        self,
        target_id: str,
        version: str,
        options: ReconcileOptions,
        semaphore: asyncio.Semaphore,
    ) -> TargetResult | None:
        """Reconcile one target. Returns None if cancelled before dispatch."""
        async with semaphore:
            assert self._cancel_event is not None
            if self._cancel_event.is_set():
                return None
            try:
                result = await self._reconciler.reconcile(
                    target_id,
                    version,
                    options=options,
                    cancel=self._cancel_event,
                )
            except RolloutError as e:
                logger.error(f"Reconciliation of {target_id} raised: {e}", target=target_id)
                result = TargetResult(
                    target_id=target_id,
                    state=TargetState.FAILED,
                    message=e.message,
                )

        if result.failure_kind == FailureKind.CANCELLED and result.record is None:
            # Nothing was started on the target
            return None
        if self._on_result:
            self._on_result(result)
        return result

    async def _watch_abort(self, plan_id: str) -> None:
        """Poll the plan store for an abort request from another process."""
        if self._plan_store is None:
            return
        while True:
            await asyncio.sleep(self._poll_interval)
            if self._abort_requested(plan_id):
                logger.warning("Abort requested", plan=plan_id)
                self.cancel("abort requested")
                return

    def _abort_requested(self, plan_id: str) -> bool:
        return self._plan_store is not None and self._plan_store.abort_requested(plan_id)

    def _mark_running(self, plan: DeploymentPlan) -> None:
        if self._plan_store is None:
            return
        try:
            self._plan_store.load(plan.id)
        except PlanNotFoundError:
            self._plan_store.save(plan)
        self._plan_store.set_status(plan.id, PlanStatus.RUNNING)

    def _record_outcome(self, plan: DeploymentPlan, report: RolloutReport) -> None:
        if self._plan_store is None:
            return
        self._plan_store.set_status(plan.id, report.status, report)
