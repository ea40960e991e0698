"""Tests for filesystem artifact resolution."""

import hashlib
from pathlib import Path

import pytest
import yaml

from rolloutctl.rollout.artifacts import FileArtifactResolver, normalize_fingerprint, parse_steps
from rolloutctl.rollout.models import FailureKind, VerificationStep

PACKAGE = b"release payload\n"


def publish(
    root: Path,
    version: str,
    payload: bytes = PACKAGE,
    fingerprint: str | None = "auto",
    **manifest,
) -> Path:
    """Write a release into the store and return its directory."""
    version_dir = root / version
    version_dir.mkdir(parents=True)
    (version_dir / "app.tar.gz").write_bytes(payload)

    data = {"version": version, "package": "app.tar.gz", **manifest}
    if fingerprint == "auto":
        data["fingerprint"] = f"sha256:{hashlib.sha256(PACKAGE).hexdigest()}"
    elif fingerprint is not None:
        data["fingerprint"] = fingerprint
    with open(version_dir / "manifest.yaml", "w") as f:
        yaml.safe_dump(data, f)
    return version_dir


@pytest.fixture
def store(tmp_path: Path) -> Path:
    root = tmp_path / "artifacts"
    root.mkdir()
    return root


class TestFileArtifactResolver:
    """Tests for FileArtifactResolver."""

    def test_resolve_found(self, store):
        publish(store, "1.4.2", verify=[{"name": "api", "path": "/api/health"}])

        result = FileArtifactResolver(store).resolve("1.4.2")

        assert result.ok
        artifact = result.artifact
        assert artifact.version == "1.4.2"
        assert artifact.fingerprint == f"sha256:{hashlib.sha256(PACKAGE).hexdigest()}"
        assert artifact.locator == str(store / "1.4.2" / "app.tar.gz")
        assert artifact.manifest == (VerificationStep(name="api", path="/api/health"),)

    def test_unpublished_version_is_not_found(self, store):
        result = FileArtifactResolver(store).resolve("9.9")

        assert not result.ok
        assert result.failure == FailureKind.NOT_FOUND

    def test_missing_manifest_is_not_found(self, store):
        (store / "1.0").mkdir()

        result = FileArtifactResolver(store).resolve("1.0")

        assert result.failure == FailureKind.NOT_FOUND

    def test_missing_package_is_not_found(self, store):
        version_dir = publish(store, "1.0")
        (version_dir / "app.tar.gz").unlink()

        result = FileArtifactResolver(store).resolve("1.0")

        assert result.failure == FailureKind.NOT_FOUND
        assert "not uploaded" in result.message

    def test_digest_mismatch_is_corrupt(self, store):
        publish(store, "1.0", payload=b"tampered\n")

        result = FileArtifactResolver(store).resolve("1.0")

        assert result.failure == FailureKind.CORRUPT
        assert "Fingerprint mismatch" in result.message
        assert not result.failure.is_retryable

    def test_version_mismatch_is_corrupt(self, store):
        version_dir = publish(store, "1.0")
        with open(version_dir / "manifest.yaml", "w") as f:
            yaml.safe_dump({"version": "1.1", "package": "app.tar.gz"}, f)

        result = FileArtifactResolver(store).resolve("1.0")

        assert result.failure == FailureKind.CORRUPT

    def test_checksum_file_fallback(self, store):
        version_dir = publish(store, "2.0", fingerprint=None)
        digest = hashlib.sha256(PACKAGE).hexdigest()
        (version_dir / "app.tar.gz.sha256").write_text(f"{digest}  app.tar.gz\n")

        result = FileArtifactResolver(store).resolve("2.0")

        assert result.ok
        assert result.artifact.fingerprint == f"sha256:{digest}"

    def test_no_fingerprint_is_corrupt(self, store):
        publish(store, "2.0", fingerprint=None)

        result = FileArtifactResolver(store).resolve("2.0")

        assert result.failure == FailureKind.CORRUPT

    def test_unparseable_manifest_is_corrupt(self, store):
        version_dir = store / "1.0"
        version_dir.mkdir()
        (version_dir / "manifest.yaml").write_text("version: [unclosed\n")

        result = FileArtifactResolver(store).resolve("1.0")

        assert result.failure == FailureKind.CORRUPT

    @pytest.mark.parametrize("version", ["", "../etc", ".hidden", "a/b"])
    def test_invalid_version(self, store, version):
        result = FileArtifactResolver(store).resolve(version)

        assert result.failure == FailureKind.CORRUPT


class TestManifestHelpers:
    """Tests for fingerprint and step parsing."""

    def test_normalize_fingerprint(self):
        assert normalize_fingerprint("ABCDEF") == "sha256:abcdef"
        assert normalize_fingerprint("sha256:abcdef") == "sha256:abcdef"
        assert normalize_fingerprint("abcdef  app.tar.gz") == "sha256:abcdef"

    def test_parse_steps(self):
        steps = parse_steps(
            [
                "/ready",
                {"name": "version", "path": "/version", "expect_status": 204, "expect_version": False},
            ]
        )

        assert steps[0] == VerificationStep(name="/ready", path="/ready")
        assert steps[1].expect_status == 204
        assert steps[1].expect_version is False

    def test_parse_steps_empty(self):
        assert parse_steps(None) == ()

    def test_parse_steps_rejects_scalar(self):
        with pytest.raises(ValueError):
            parse_steps("/health")
