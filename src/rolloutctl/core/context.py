"""Click context object for sharing state across commands."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import click

from rolloutctl.config import ProfileConfig, RolloutConfig, get_default_config
from rolloutctl.core.exceptions import ConfigError
from rolloutctl.core.logging import LogLevel, StructuredLogger, setup_logging
from rolloutctl.core.output import OutputFormat, OutputFormatter
from rolloutctl.core.utils import merge_dicts

if TYPE_CHECKING:
    from rolloutctl.rollout.alerts import Alerter
    from rolloutctl.rollout.audit import AuditSink
    from rolloutctl.rollout.coordinator import RolloutCoordinator
    from rolloutctl.rollout.models import TargetResult
    from rolloutctl.rollout.plans import PlanStore
    from rolloutctl.rollout.reconciler import Reconciler
    from rolloutctl.rollout.records import RecordStore
    from rolloutctl.rollout.registry import TargetRegistry


class RolloutContext:
    """Shared context object for rolloutctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, the state stores and the reconciler.
    """

    def __init__(
        self,
        config: RolloutConfig | None = None,
        profile: str | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        color: bool = True,
        state_dir: str | Path | None = None,
    ):
        # Load or use provided config
        self._config = config or get_default_config()
        self._profile_name = profile or "default"

        # Output settings (CLI overrides config)
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._color = color

        # Determine log level from verbosity
        if verbose >= 2:
            log_level = LogLevel.DEBUG
        elif verbose == 1:
            log_level = LogLevel.INFO
        elif quiet:
            log_level = LogLevel.ERROR
        else:
            log_level = self._config.global_settings.verbosity

        setup_logging(log_level, rich_output=color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        self._state_dir = Path(state_dir).expanduser() if state_dir else None

        # Lazy-loaded components
        self._registry: TargetRegistry | None = None
        self._records: RecordStore | None = None
        self._audit: AuditSink | None = None
        self._plans: PlanStore | None = None
        self._alerter: Alerter | None = None
        self._reconciler: Reconciler | None = None

    @property
    def config(self) -> RolloutConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def profile(self) -> ProfileConfig:
        """Get the current profile configuration."""
        return self._config.get_profile(self._profile_name)

    @property
    def profile_name(self) -> str:
        return self._profile_name

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def state_dir(self) -> Path:
        """State directory: --state-dir, then ROLLOUT_STATE_DIR, then profile."""
        return self._state_dir or self.profile.state.get_state_dir()

    @property
    def registry(self) -> "TargetRegistry":
        if self._registry is None:
            from rolloutctl.rollout.registry import TargetRegistry

            self._registry = TargetRegistry(self.state_dir)
        return self._registry

    @property
    def records(self) -> "RecordStore":
        if self._records is None:
            from rolloutctl.rollout.records import RecordStore

            self._records = RecordStore(self.state_dir)
        return self._records

    @property
    def audit(self) -> "AuditSink":
        if self._audit is None:
            from rolloutctl.rollout.audit import AuditSink

            self._audit = AuditSink(self.state_dir / "audit")
        return self._audit

    @property
    def plans(self) -> "PlanStore":
        if self._plans is None:
            from rolloutctl.rollout.plans import PlanStore

            self._plans = PlanStore(self.state_dir)
        return self._plans

    @property
    def alerter(self) -> "Alerter":
        if self._alerter is None:
            from rolloutctl.rollout.alerts import Alerter

            alerts = self.profile.alerts
            self._alerter = Alerter(
                webhook_url=alerts.get_webhook_url(),
                channel=alerts.channel,
                timeout=alerts.timeout,
            )
        return self._alerter

    @property
    def reconciler(self) -> "Reconciler":
        """Get or create the reconciler wired from the current profile.

        Raises:
            ConfigError: If no install command is configured
        """
        if self._reconciler is None:
            from rolloutctl.rollout.artifacts import FileArtifactResolver
            from rolloutctl.rollout.health import HttpHealthProber
            from rolloutctl.rollout.install import CommandInstallAction
            from rolloutctl.rollout.reconciler import Reconciler
            from rolloutctl.rollout.secrets import EnvSecretStore

            profile = self.profile
            command = profile.install.get_command()
            if not command:
                raise ConfigError(
                    "No install command configured",
                    {"hint": "set install.command in the profile or ROLLOUT_INSTALL_COMMAND"},
                )

            self._reconciler = Reconciler(
                registry=self.registry,
                records=self.records,
                resolver=FileArtifactResolver(profile.artifacts.get_root()),
                prober=HttpHealthProber(
                    default_path=profile.probe.default_path,
                    headers=profile.probe.headers,
                    verify_tls=profile.probe.verify_tls,
                ),
                installer=CommandInstallAction(
                    command,
                    workdir=profile.install.workdir,
                    env=profile.install.env,
                    timeout=profile.install.timeout,
                ),
                secrets=EnvSecretStore(
                    prefix=profile.secrets.prefix,
                    default_ttl=profile.secrets.lease_ttl,
                ),
                audit=self.audit,
                alerter=self.alerter,
            )
        return self._reconciler

    def coordinator(
        self,
        on_result: Callable[[TargetResult], None] | None = None,
    ) -> "RolloutCoordinator":
        """Create a coordinator for one plan run."""
        from rolloutctl.rollout.coordinator import RolloutCoordinator

        return RolloutCoordinator(
            registry=self.registry,
            reconciler=self.reconciler,
            plan_store=self.plans,
            poll_interval=self.profile.reconciler.poll_interval,
            lease_ttl=self.profile.secrets.lease_ttl,
            on_result=on_result,
        )

    def policy_defaults(self) -> dict[str, Any]:
        """Profile policy values applied under plan policies.

        The probe and install timeouts of the profile seed ``timeouts``
        unless the profile policy sets them itself.
        """
        profile = self.profile
        seeded = {"timeouts": {"probe": profile.probe.timeout, "install": profile.install.timeout}}
        return merge_dicts(seeded, profile.policy.as_overrides())


# Click decorator for passing context
pass_context = click.make_pass_decorator(RolloutContext, ensure=True)
