"""Health probing of deployment targets over HTTP."""

import time
from typing import Any, Protocol

import httpx

from rolloutctl.core.logging import StructuredLogger
from rolloutctl.rollout.models import (
    Artifact,
    HealthStatus,
    ProbeResult,
    Target,
    VerificationStep,
)

logger = StructuredLogger(__name__)


class HealthProber(Protocol):
    """Determines whether the version running on a target is healthy."""

    def probe(
        self,
        target: Target,
        artifact: Artifact | None = None,
        timeout: float = 10.0,
        credentials: dict[str, str] | None = None,
    ) -> ProbeResult: ...


class HttpHealthProber:
    """Run an artifact's verification steps against the target's HTTP API.

    ``unreachable`` means no usable response arrived within the timeout.
    ``unhealthy`` means the target answered and reported a bad state.
    """

    TOKEN_KEY = "PROBE_TOKEN"

    def __init__(
        self,
        default_path: str = "/health",
        headers: dict[str, str] | None = None,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        self._default_path = default_path
        self._headers = headers or {}
        self._verify_tls = verify_tls
        self._transport = transport

    def _steps(self, artifact: Artifact | None) -> tuple[VerificationStep, ...]:
        if artifact is not None and artifact.manifest:
            return artifact.manifest
        return (VerificationStep(name="health", path=self._default_path),)

    def _client(
        self,
        target: Target,
        timeout: float,
        credentials: dict[str, str] | None,
    ) -> httpx.Client:
        headers = dict(self._headers)
        token = (credentials or {}).get(self.TOKEN_KEY)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        kwargs: dict[str, Any] = {
            "base_url": target.endpoint,
            "headers": headers,
            "timeout": timeout,
            "follow_redirects": True,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            kwargs["verify"] = self._verify_tls
        return httpx.Client(**kwargs)

    def probe(
        self,
        target: Target,
        artifact: Artifact | None = None,
        timeout: float = 10.0,
        credentials: dict[str, str] | None = None,
    ) -> ProbeResult:
        """Probe a target.

        Args:
            target: Target to probe
            artifact: Artifact expected to be running; its manifest supplies the steps
            timeout: Per-request timeout in seconds
            credentials: Leased credentials; PROBE_TOKEN is sent as a bearer token

        Returns:
            ProbeResult; never raises for transport problems
        """
        if not target.endpoint:
            return ProbeResult(HealthStatus.UNREACHABLE, f"Target {target.id} has no endpoint")

        expected_version = artifact.version if artifact else None
        checks: list[dict[str, Any]] = []

        with self._client(target, timeout, credentials) as client:
            for step in self._steps(artifact):
                started = time.perf_counter()
                try:
                    response = client.get(step.path)
                except httpx.TimeoutException as e:
                    return ProbeResult(
                        HealthStatus.UNREACHABLE,
                        f"{step.name}: timed out after {timeout}s",
                        {"step": step.name, "error": str(e), "checks": checks},
                    )
                except httpx.RequestError as e:
                    return ProbeResult(
                        HealthStatus.UNREACHABLE,
                        f"{step.name}: {e}",
                        {"step": step.name, "error": str(e), "checks": checks},
                    )

                check = {
                    "step": step.name,
                    "status_code": response.status_code,
                    "response_time_ms": int((time.perf_counter() - started) * 1000),
                }
                checks.append(check)

                if response.status_code != step.expect_status:
                    return ProbeResult(
                        HealthStatus.UNHEALTHY,
                        f"{step.name}: HTTP {response.status_code}, expected {step.expect_status}",
                        {"checks": checks},
                    )

                if step.expect_version and expected_version:
                    reported = self._reported_version(response)
                    if reported is not None and reported != expected_version:
                        return ProbeResult(
                            HealthStatus.UNHEALTHY,
                            f"{step.name}: running {reported}, expected {expected_version}",
                            {"checks": checks},
                        )

        logger.debug("Probe passed", target=target.id, steps=len(checks))
        return ProbeResult(HealthStatus.HEALTHY, "OK", {"checks": checks})

    @staticmethod
    def _reported_version(response: httpx.Response) -> str | None:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and body.get("version") is not None:
            return str(body["version"])
        return None
