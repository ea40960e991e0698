"""Audit trail command."""

import click

from rolloutctl.core.context import RolloutContext, pass_context


@click.command("history")
@click.option("-t", "--target", "target_id", help="Only transitions of this target")
@click.option("--plan", "plan_id", help="Only transitions of this plan")
@click.option("--limit", default=50, show_default=True, help="Maximum entries to show")
@pass_context
def history(
    ctx: RolloutContext,
    target_id: str | None,
    plan_id: str | None,
    limit: int,
) -> None:
    """Show the audit trail of state transitions, newest first.

    \b
    Examples:
        rollout history
        rollout history --target site-a
        rollout -o json history --plan 3f9a1c2e
    """
    entries = ctx.audit.history(target_id=target_id, plan_id=plan_id, limit=limit)
    if not entries:
        ctx.output.print_info("No audit entries found")
        return

    if ctx.output_format.value != "table":
        ctx.output.print_data(entries)
        return

    rows = [
        {
            "Time": e["timestamp"][:19].replace("T", " "),
            "Target": e["target_id"],
            "Version": e["artifact_version"],
            "From": e["from_state"],
            "To": e["to_state"],
            "Outcome": e.get("outcome") or "",
            "Plan": e.get("plan_id") or "-",
            "Reason": e.get("reason") or "",
        }
        for e in entries
    ]
    ctx.output.print_data(rows, title="Audit trail")
