"""Tests for the HTTP health prober."""

import httpx

from rolloutctl.rollout.health import HttpHealthProber
from rolloutctl.rollout.models import Artifact, HealthStatus, Target, VerificationStep


def make_target(endpoint: str = "http://site-a.internal") -> Target:
    return Target(id="site-a", endpoint=endpoint)


def make_artifact(version: str = "2.0", *steps: VerificationStep) -> Artifact:
    return Artifact(
        version=version,
        fingerprint="sha256:00",
        locator="/artifacts/app.tar.gz",
        manifest=steps,
    )


def prober_for(handler) -> HttpHealthProber:
    return HttpHealthProber(transport=httpx.MockTransport(handler))


class TestHttpHealthProber:
    """Tests for HttpHealthProber."""

    def test_healthy(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"status": "ok", "version": "2.0"})

        result = prober_for(handler).probe(make_target(), make_artifact())

        assert result.status == HealthStatus.HEALTHY
        assert seen == ["/health"]
        assert result.details["checks"][0]["status_code"] == 200

    def test_response_time_recorded(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"version": "2.0"})

        result = prober_for(handler).probe(make_target(), make_artifact())

        check = result.details["checks"][0]
        assert isinstance(check["response_time_ms"], int)
        assert check["response_time_ms"] >= 0

    def test_manifest_steps_run_in_order(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"version": "2.0"})

        artifact = make_artifact(
            "2.0",
            VerificationStep(name="ready", path="/ready"),
            VerificationStep(name="api", path="/api/health"),
        )
        result = prober_for(handler).probe(make_target(), artifact)

        assert result.status == HealthStatus.HEALTHY
        assert seen == ["/ready", "/api/health"]

    def test_bad_status_is_unhealthy(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="starting")

        result = prober_for(handler).probe(make_target(), make_artifact())

        assert result.status == HealthStatus.UNHEALTHY
        assert "503" in result.message

    def test_wrong_version_is_unhealthy(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"version": "1.0"})

        result = prober_for(handler).probe(make_target(), make_artifact("2.0"))

        assert result.status == HealthStatus.UNHEALTHY
        assert "running 1.0" in result.message

    def test_version_check_can_be_disabled(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"version": "1.0"})

        artifact = make_artifact("2.0", VerificationStep(name="ping", path="/ping", expect_version=False))
        result = prober_for(handler).probe(make_target(), artifact)

        assert result.status == HealthStatus.HEALTHY

    def test_non_json_body_accepted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="OK")

        result = prober_for(handler).probe(make_target(), make_artifact())

        assert result.status == HealthStatus.HEALTHY

    def test_connection_error_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = prober_for(handler).probe(make_target(), make_artifact())

        assert result.status == HealthStatus.UNREACHABLE

    def test_timeout_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        result = prober_for(handler).probe(make_target(), make_artifact(), timeout=2.0)

        assert result.status == HealthStatus.UNREACHABLE
        assert "timed out" in result.message

    def test_no_endpoint_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        result = prober_for(handler).probe(make_target(endpoint=""))

        assert result.status == HealthStatus.UNREACHABLE

    def test_probe_token_sent_as_bearer(self):
        headers = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers.get("Authorization"))
            return httpx.Response(200)

        prober = HttpHealthProber(
            headers={"X-Fleet": "retail"},
            transport=httpx.MockTransport(handler),
        )
        prober.probe(make_target(), credentials={"PROBE_TOKEN": "s3cret"})

        assert headers == ["Bearer s3cret"]

    def test_default_path_without_artifact(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200)

        prober = HttpHealthProber(default_path="/status", transport=httpx.MockTransport(handler))
        result = prober.probe(make_target())

        assert result.status == HealthStatus.HEALTHY
        assert seen == ["/status"]
