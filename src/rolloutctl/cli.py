"""Main CLI entry point for rolloutctl."""

import sys
from typing import Any

import click
from rich.console import Console

from rolloutctl import __version__
from rolloutctl.config import EnvSettings, load_config
from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.output import OutputFormat
from rolloutctl.core.exceptions import RolloutError, ConfigError, PlanValidationError


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"rolloutctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-p",
    "--profile",
    metavar="NAME",
    envvar="ROLLOUT_PROFILE",
    help="Configuration profile to use",
)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="ROLLOUT_CONFIG",
    help="Path to config file",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    metavar="DIR",
    help="State directory (targets, records, plans, audit)",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config_file: str | None,
    state_dir: str | None,
) -> None:
    """rollout - converge fleets of targets to a desired artifact version.

    Plans roll a version out canary first, then in batches, verifying
    every target's health and rolling back targets that fail.

    \b
    Examples:
        rollout targets add site-a --endpoint https://site-a.internal:8443
        rollout start plan.yaml
        rollout status 3f9a1c2e
        rollout abort 3f9a1c2e
        rollout history --target site-a

    \b
    Configuration:
        ~/.rolloutctl/config.yaml    User configuration
        ./rolloutctl.yaml            Project configuration
        ROLLOUT_*                    Environment variables
    """
    try:
        config = load_config(config_file)

        ctx.obj = RolloutContext(
            config=config,
            profile=profile or EnvSettings().profile,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            color=not no_color,
            state_dir=state_dir,
        )
        # Fail early on an unknown profile
        ctx.obj.profile

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def register_commands() -> None:
    """Register all commands."""
    from rolloutctl.commands import plan
    from rolloutctl.commands.history import history
    from rolloutctl.commands.targets import targets

    cli.add_command(plan.start)
    cli.add_command(plan.status)
    cli.add_command(plan.abort)
    cli.add_command(plan.list_plans)
    cli.add_command(plan.rollback)
    cli.add_command(targets)
    cli.add_command(history)


# Register commands
register_commands()


@cli.command()
@pass_context
def config(ctx: RolloutContext) -> None:
    """Show the effective configuration."""
    profile = ctx.profile
    config_data = {
        "profile": ctx.profile_name,
        "output_format": ctx.output_format.value,
        "verbose": ctx.verbose,
        "state_dir": str(ctx.state_dir),
        "artifacts_root": str(profile.artifacts.get_root()),
        "install_command": profile.install.get_command(),
        "install_timeout": profile.install.timeout,
        "probe": {
            "default_path": profile.probe.default_path,
            "timeout": profile.probe.timeout,
            "verify_tls": profile.probe.verify_tls,
        },
        "secrets": {
            "prefix": profile.secrets.prefix,
            "lease_ttl": profile.secrets.lease_ttl,
        },
        "alerts": {
            "has_webhook": bool(profile.alerts.get_webhook_url()),
            "channel": profile.alerts.channel,
        },
        "poll_interval": profile.reconciler.poll_interval,
        "policy_defaults": profile.policy.as_overrides(),
    }
    ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except PlanValidationError as e:
        console = Console(stderr=True)
        console.print(f"[red]Invalid plan:[/red] {e}")
        sys.exit(2)
    except RolloutError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
