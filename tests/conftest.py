"""Pytest fixtures for rolloutctl tests."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from rolloutctl.config import ProfileConfig, RolloutConfig, StateConfig
from rolloutctl.core.context import RolloutContext
from rolloutctl.core.output import OutputFormat
from rolloutctl.rollout.alerts import Alerter
from rolloutctl.rollout.audit import AuditSink
from rolloutctl.rollout.models import (
    ApplyResult,
    Artifact,
    HealthStatus,
    ProbeResult,
    ResolveResult,
    Target,
    VerificationStep,
)
from rolloutctl.rollout.reconciler import ReconcileOptions, Reconciler
from rolloutctl.rollout.records import RecordStore
from rolloutctl.rollout.registry import TargetRegistry
from rolloutctl.rollout.secrets import EnvSecretStore

SECRET_PREFIX = "ROLLOUT_TEST_SECRET_"


def make_artifact(version: str) -> Artifact:
    return Artifact(
        version=version,
        fingerprint=f"sha256:{version.replace('.', '') * 8}",
        locator=f"/artifacts/{version}/app.tar.gz",
        manifest=(VerificationStep(name="health"),),
    )


class FakeResolver:
    """Resolver returning published artifacts, with scripted results first."""

    def __init__(self, versions: list[str] | None = None):
        self.artifacts = {v: make_artifact(v) for v in versions or []}
        self.scripted: dict[str, list[ResolveResult]] = {}
        self.calls: list[str] = []

    def publish(self, version: str) -> None:
        self.artifacts[version] = make_artifact(version)

    def script(self, version: str, *results: ResolveResult) -> None:
        self.scripted.setdefault(version, []).extend(results)

    def resolve(self, version: str) -> ResolveResult:
        self.calls.append(version)
        queued = self.scripted.get(version)
        if queued:
            return queued.pop(0)
        if version in self.artifacts:
            return ResolveResult.found(self.artifacts[version])
        return ResolveResult.not_found(f"{version} is not published")


class FakeProber:
    """Prober that is healthy unless told otherwise per (target, version)."""

    def __init__(self):
        self.scripted: dict[tuple[str, str], list[HealthStatus]] = {}
        self.always: dict[tuple[str, str], HealthStatus] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.credentials: list[dict[str, str] | None] = []

    def script(self, target_id: str, version: str, *statuses: HealthStatus) -> None:
        self.scripted.setdefault((target_id, version), []).extend(statuses)

    def set(self, target_id: str, version: str, status: HealthStatus) -> None:
        self.always[(target_id, version)] = status

    def probe(self, target, artifact=None, timeout=10.0, credentials=None) -> ProbeResult:
        version = artifact.version if artifact else None
        self.calls.append((target.id, version))
        self.credentials.append(credentials)
        key = (target.id, version)
        queued = self.scripted.get(key)
        if queued:
            return ProbeResult(queued.pop(0), "scripted")
        return ProbeResult(self.always.get(key, HealthStatus.HEALTHY), "fake")


class FakeInstaller:
    """Install action recording every apply call."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.failing: set[tuple[str, str]] = set()
        self.seen_credentials: list[dict[str, str]] = []

    def fail(self, target_id: str, version: str) -> None:
        self.failing.add((target_id, version))

    def apply(self, target: Target, artifact: Artifact, credentials: dict[str, str]) -> ApplyResult:
        self.calls.append((target.id, artifact.version))
        self.seen_credentials.append(dict(credentials))
        if (target.id, artifact.version) in self.failing:
            return ApplyResult.failed("exit status 2")
        return ApplyResult.success("installed")

    def count(self, target_id: str) -> int:
        return sum(1 for tid, _ in self.calls if tid == target_id)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def registry(state_dir: Path) -> TargetRegistry:
    return TargetRegistry(state_dir)


@pytest.fixture
def records(state_dir: Path) -> RecordStore:
    return RecordStore(state_dir)


@pytest.fixture
def audit(state_dir: Path) -> AuditSink:
    return AuditSink(state_dir / "audit")


@pytest.fixture
def alerter() -> Alerter:
    return Alerter()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver(["1.0", "2.0"])


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def secrets(monkeypatch: pytest.MonkeyPatch) -> EnvSecretStore:
    monkeypatch.setenv(f"{SECRET_PREFIX}DEPLOY_TOKEN", "shared-token")
    return EnvSecretStore(prefix=SECRET_PREFIX, default_ttl=60)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def reconciler(
    registry: TargetRegistry,
    records: RecordStore,
    resolver: FakeResolver,
    prober: FakeProber,
    installer: FakeInstaller,
    secrets: EnvSecretStore,
    audit: AuditSink,
    alerter: Alerter,
    sleep: RecordingSleep,
) -> Reconciler:
    return Reconciler(
        registry=registry,
        records=records,
        resolver=resolver,
        prober=prober,
        installer=installer,
        secrets=secrets,
        audit=audit,
        alerter=alerter,
        sleep=sleep,
    )


@pytest.fixture
def options() -> ReconcileOptions:
    """Reconcile options with backoff disabled."""
    return ReconcileOptions(plan_id="plan-1", backoff_base=0.0, backoff_max=0.0)


@pytest.fixture
def mock_config(state_dir: Path) -> RolloutConfig:
    return RolloutConfig(
        profiles={"default": ProfileConfig(state=StateConfig(state_dir=str(state_dir)))}
    )


@pytest.fixture
def mock_context(mock_config: RolloutConfig) -> RolloutContext:
    return RolloutContext(
        config=mock_config,
        profile="default",
        output_format=OutputFormat.TABLE,
        color=False,
    )
