"""Install actions that push an artifact onto a target."""

import os
import shlex
import subprocess
from pathlib import Path
from typing import Protocol

from rolloutctl.core.logging import StructuredLogger
from rolloutctl.rollout.models import ApplyResult, Artifact, FailureKind, Target

logger = StructuredLogger(__name__)

OUTPUT_TAIL = 2000


class InstallAction(Protocol):
    """Opaque, idempotent ``apply`` call against a target agent."""

    def apply(
        self,
        target: Target,
        artifact: Artifact,
        credentials: dict[str, str],
    ) -> ApplyResult: ...


class CommandInstallAction:
    """Run an external command (for example ``ansible-playbook``) per install.

    The command template may reference ``{target}``, ``{endpoint}``,
    ``{version}``, ``{locator}`` and ``{fingerprint}``. Credentials are
    passed to the process through its environment, never its arguments.
    """

    def __init__(
        self,
        command: str,
        workdir: str | Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ):
        if not command or not command.strip():
            raise ValueError("install command must not be empty")
        self._command = command
        self._workdir = str(workdir) if workdir else None
        self._env = env or {}
        self._timeout = timeout

    @property
    def timeout(self) -> float | None:
        """Seconds before the install process is killed."""
        return self._timeout

    def build_command(self, target: Target, artifact: Artifact) -> list[str]:
        values = {
            "target": target.id,
            "endpoint": target.endpoint,
            "version": artifact.version,
            "locator": artifact.locator,
            "fingerprint": artifact.fingerprint,
        }
        try:
            return [part.format(**values) for part in shlex.split(self._command)]
        except (KeyError, IndexError) as e:
            raise ValueError(f"Unknown placeholder in install command: {e}")

    def apply(
        self,
        target: Target,
        artifact: Artifact,
        credentials: dict[str, str],
    ) -> ApplyResult:
        """Run the install command and map its exit status."""
        try:
            cmd = self.build_command(target, artifact)
        except ValueError as e:
            return ApplyResult.failed(str(e))

        run_env = os.environ.copy()
        run_env.update(self._env)
        run_env.update(credentials)
        run_env.update(
            {
                "ROLLOUT_TARGET_ID": target.id,
                "ROLLOUT_TARGET_ENDPOINT": target.endpoint,
                "ROLLOUT_ARTIFACT_VERSION": artifact.version,
                "ROLLOUT_ARTIFACT_LOCATOR": artifact.locator,
                "ROLLOUT_ARTIFACT_FINGERPRINT": artifact.fingerprint,
            }
        )

        logger.info("Running install command", target=target.id, version=artifact.version)
        try:
            result = subprocess.run(
                cmd,
                cwd=self._workdir,
                capture_output=True,
                text=True,
                env=run_env,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            return ApplyResult.failed(
                f"Install command timed out after {self._timeout}s",
                failure=FailureKind.UNREACHABLE,
            )
        except (OSError, subprocess.SubprocessError) as e:
            return ApplyResult.failed(f"Failed to run install command: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[-OUTPUT_TAIL:]
            logger.warning(
                "Install command failed",
                target=target.id,
                returncode=result.returncode,
            )
            return ApplyResult.failed(
                f"Install command exited with {result.returncode}: {stderr}".rstrip(": ")
            )

        return ApplyResult.success((result.stdout or "").strip()[-OUTPUT_TAIL:])
