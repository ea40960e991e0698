"""Plan commands - start, status, abort, list, rollback."""

import sys

import click

from rolloutctl.core.async_utils import run_sync
from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.exceptions import PlanValidationError, RolloutError
from rolloutctl.core.output import format_duration
from rolloutctl.rollout.models import PlanStatus, RolloutReport, TargetResult, TargetState
from rolloutctl.rollout.reconciler import ReconcileOptions
from rolloutctl.rollout.schema import load_plan

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def _print_plan_errors(ctx: RolloutContext, error: PlanValidationError) -> None:
    ctx.output.print_error(error.message)
    for line in error.errors:
        ctx.output.print_error(f"  {line}")


def _result_rows(report: RolloutReport) -> list[dict[str, str]]:
    rows = []
    for number, batch in enumerate(report.batches, start=1):
        for target_id in batch:
            result = report.results.get(target_id)
            rows.append({
                "Batch": "canary" if number == 1 else str(number),
                "Target": target_id,
                "State": result.state.value if result else "untouched",
                "Failure": result.failure_kind.value if result and result.failure_kind else "",
                "Message": result.message if result else "",
            })
    return rows


def _print_report(ctx: RolloutContext, report: RolloutReport) -> None:
    if ctx.output_format.value != "table":
        ctx.output.print_data(report.to_dict())
        return

    duration = None
    if report.completed_at:
        duration = (report.completed_at - report.started_at).total_seconds()

    ctx.output.print_data(_result_rows(report), title=f"Plan {report.plan_id} ({report.version})")
    if report.skipped:
        ctx.output.print_warning(f"Skipped decommissioned: {', '.join(report.skipped)}")
    summary = (
        f"{len(report.converged)} converged, {len(report.failed)} failed, "
        f"{len(report.untouched)} untouched in {format_duration(duration)}"
    )
    if report.status == PlanStatus.SUCCEEDED:
        ctx.output.print_success(f"Plan {report.plan_id} succeeded: {summary}")
    elif report.status == PlanStatus.PARTIALLY_SUCCEEDED:
        ctx.output.print_warning(f"Plan {report.plan_id} partially succeeded: {summary}")
    else:
        ctx.output.print_error(f"Plan {report.plan_id} aborted: {report.abort_reason}")
        ctx.output.print_info(summary)


@click.command("start")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--force", is_flag=True, help="Reinstall even where the version is already verified")
@pass_context
def start(ctx: RolloutContext, plan_file: str, force: bool) -> None:
    """Run a deployment plan.

    Exits 0 when every target converged, 1 when the plan aborted or only
    partially succeeded, and 2 when the plan file is invalid.

    \b
    Examples:
        rollout start plan.yaml
        rollout -o json start plan.yaml
    """
    try:
        plan = load_plan(plan_file, ctx.policy_defaults())
        if force and not plan.force:
            plan = plan.model_copy(update={"force": True})
        coordinator = ctx.coordinator(on_result=lambda r: _print_progress(ctx, r))
        coordinator.validate(plan)
    except PlanValidationError as e:
        _print_plan_errors(ctx, e)
        sys.exit(EXIT_INVALID)
    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILED)

    try:
        ctx.plans.save(plan)
        ctx.output.print_info(
            f"Plan {plan.id}: {plan.version} to {len(plan.targets)} target(s)"
        )
        report = run_sync(coordinator.run(plan))
    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILED)

    _print_report(ctx, report)
    sys.exit(EXIT_OK if report.status == PlanStatus.SUCCEEDED else EXIT_FAILED)


def _print_progress(ctx: RolloutContext, result: TargetResult) -> None:
    if ctx.output_format.value != "table":
        return
    if result.converged:
        ctx.output.print_success(f"{result.target_id}: {result.message}")
    elif result.state == TargetState.ROLLED_BACK:
        ctx.output.print_warning(f"{result.target_id}: {result.message}")
    else:
        ctx.output.print(f"[red]✗[/red] {result.target_id}: {result.message}")


@click.command("status")
@click.argument("plan_id")
@pass_context
def status(ctx: RolloutContext, plan_id: str) -> None:
    """Show plan status and per-target state.

    \b
    Examples:
        rollout status 3f9a1c2e
    """
    try:
        run = ctx.plans.load(plan_id)
        rows = []
        for target_id in run.plan.targets:
            if ctx.registry.exists(target_id):
                target = ctx.registry.get(target_id)
                rows.append({
                    "Target": target.id,
                    "State": target.state.value,
                    "Version": target.observed_version or "-",
                    "Health": target.health.value if target.health else "-",
                    "Last Error": target.last_error or "",
                })
            else:
                rows.append({"Target": target_id, "State": "unknown"})

        if ctx.output_format.value != "table":
            data = run.to_dict()
            data["targets"] = rows
            ctx.output.print_data(data)
            return

        ctx.output.print_header(f"Plan: {run.id}")
        ctx.output.print(f"Version: {run.plan.version}")
        ctx.output.print(f"Status: {run.status.value}")
        if run.abort_requested:
            ctx.output.print("Abort: requested")
        if run.report and run.report.get("abort_reason"):
            ctx.output.print(f"Abort reason: {run.report['abort_reason']}")
        if run.report and run.report.get("batches"):
            ctx.output.print(f"Batches: {len(run.report['batches'])}")
        ctx.output.print_data(rows)

    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILED)


@click.command("abort")
@click.argument("plan_id")
@pass_context
def abort(ctx: RolloutContext, plan_id: str) -> None:
    """Request that a running plan stop dispatching new targets.

    \b
    Examples:
        rollout abort 3f9a1c2e
    """
    try:
        run = ctx.plans.request_abort(plan_id)
    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILED)

    if run.status.is_complete:
        ctx.output.print_warning(f"Plan {plan_id} already finished ({run.status.value})")
    else:
        ctx.output.print_success(f"Abort requested for plan {plan_id}")


@click.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in PlanStatus]),
    help="Only show plans with this status",
)
@click.option("--limit", default=20, show_default=True, help="Maximum plans to show")
@pass_context
def list_plans(ctx: RolloutContext, status_filter: str | None, limit: int) -> None:
    """List recent plans.

    \b
    Examples:
        rollout list
        rollout list --status aborted
    """
    runs = ctx.plans.list(PlanStatus(status_filter) if status_filter else None, limit=limit)
    if not runs:
        ctx.output.print_info("No plans found")
        return

    rows = [
        {
            "ID": run.id,
            "Version": run.plan.version,
            "Status": run.status.value,
            "Targets": len(run.plan.targets),
            "Created": run.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        }
        for run in runs
    ]
    ctx.output.print_data(rows, title="Plans")


@click.command("rollback")
@click.argument("target_id")
@click.option("--to", "to_version", help="Version to restore (default: previous good version)")
@pass_context
def rollback(ctx: RolloutContext, target_id: str, to_version: str | None) -> None:
    """Roll a target back to its previous good version.

    \b
    Examples:
        rollout rollback site-a
        rollout rollback site-a --to 1.4.2
    """
    try:
        options = ReconcileOptions(lease_ttl=ctx.profile.secrets.lease_ttl)
        result = run_sync(ctx.reconciler.rollback(target_id, to_version, options))
    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILED)

    if result.state == TargetState.ROLLED_BACK:
        ctx.output.print_success(f"{target_id}: {result.message}")
        return
    ctx.output.print_error(f"{target_id}: {result.message}")
    sys.exit(EXIT_FAILED)
