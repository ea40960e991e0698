"""Targets command group."""

import sys

import click

from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.exceptions import RolloutError
from rolloutctl.core.utils import parse_key_value_pairs
from rolloutctl.rollout.models import TargetState


@click.group()
@pass_context
def targets(ctx: RolloutContext) -> None:
    """Target registry - add, list, show, decommission.

    \b
    Examples:
        rollout targets add site-a --endpoint https://site-a.internal:8443
        rollout targets list --label client=acme
        rollout targets show site-a
        rollout targets decommission site-a
    """
    pass


@targets.command("add")
@click.argument("target_id")
@click.option("--endpoint", required=True, help="Base URL of the target's agent API")
@click.option("-l", "--label", "labels", multiple=True, help="Label as KEY=VALUE (repeatable)")
@click.option("--observed-version", help="Version already running on the target")
@pass_context
def add(
    ctx: RolloutContext,
    target_id: str,
    endpoint: str,
    labels: tuple[str, ...],
    observed_version: str | None,
) -> None:
    """Register a target.

    \b
    Examples:
        rollout targets add site-a --endpoint https://site-a.internal:8443 -l client=acme
    """
    try:
        target = ctx.registry.register(
            target_id,
            endpoint,
            labels=parse_key_value_pairs(labels),
            observed_version=observed_version,
        )
    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(1)
    ctx.output.print_success(f"Registered target {target.id}")


@targets.command("list")
@click.option(
    "--state",
    type=click.Choice([s.value for s in TargetState]),
    help="Only targets in this state",
)
@click.option("-l", "--label", "labels", multiple=True, help="Label filter KEY=VALUE (repeatable)")
@click.option("--all", "include_all", is_flag=True, help="Include decommissioned targets")
@pass_context
def list_targets(
    ctx: RolloutContext,
    state: str | None,
    labels: tuple[str, ...],
    include_all: bool,
) -> None:
    """List registered targets."""
    listing = ctx.registry.list(
        state=TargetState(state) if state else None,
        labels=parse_key_value_pairs(labels),
        include_decommissioned=include_all,
    )

    rows = []
    for t in listing:
        row = {
            "ID": t.id,
            "State": t.state.value,
            "Version": t.observed_version or "-",
            "Health": t.health.value if t.health else "-",
            "Failures": t.consecutive_failures,
            "Endpoint": t.endpoint,
            "Labels": ",".join(f"{k}={v}" for k, v in sorted(t.labels.items())),
        }
        if include_all:
            row["Decommissioned"] = "yes" if t.decommissioned else ""
        rows.append(row)

    if not rows:
        ctx.output.print_info("No targets found")
        return
    ctx.output.print_data(rows, title="Targets")


@targets.command("show")
@click.argument("target_id")
@click.option("--records", "record_limit", default=5, show_default=True, help="Recent records to show")
@pass_context
def show(ctx: RolloutContext, target_id: str, record_limit: int) -> None:
    """Show a target and its recent reconciliation records."""
    try:
        target = ctx.registry.get(target_id)
    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(1)

    records = ctx.records.for_target(target_id)[-record_limit:] if record_limit > 0 else []

    if ctx.output_format.value != "table":
        data = target.to_dict()
        data["records"] = [r.to_dict() for r in records]
        ctx.output.print_data(data)
        return

    ctx.output.print_data(target.to_dict(), title=f"Target: {target.id}")
    if records:
        rows = [
            {
                "Record": r.id,
                "Version": r.artifact_version,
                "Plan": r.plan_id or "-",
                "Outcome": r.outcome.value if r.outcome else "-",
                "Failure": r.failure_kind.value if r.failure_kind else "",
                "Installs": r.install_attempts,
                "Started": r.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            }
            for r in reversed(records)
        ]
        ctx.output.print_data(rows, title="Recent records")


@targets.command("decommission")
@click.argument("target_id")
@pass_context
def decommission(ctx: RolloutContext, target_id: str) -> None:
    """Mark a target decommissioned. Its history is kept."""
    try:
        ctx.registry.decommission(target_id)
    except RolloutError as e:
        ctx.output.print_error(str(e))
        sys.exit(1)
    ctx.output.print_success(f"Decommissioned target {target_id}")
