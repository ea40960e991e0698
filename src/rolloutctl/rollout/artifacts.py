"""Artifact resolution against a filesystem artifact store.

Store layout::

    <root>/<version>/manifest.yaml
    <root>/<version>/<package>
    <root>/<version>/<package>.sha256     (optional, when the manifest has no fingerprint)

Manifest keys: ``version``, ``package``, ``fingerprint`` (``sha256:<hex>``)
and ``verify``, the ordered post-install verification steps.
"""

import hashlib
from pathlib import Path
from typing import Any, Protocol

import yaml

from rolloutctl.core.exceptions import ArtifactError
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.rollout.models import Artifact, ResolveResult, VerificationStep

logger = StructuredLogger(__name__)

MANIFEST_NAMES = ("manifest.yaml", "manifest.yml")
CHUNK_SIZE = 1024 * 1024


class ArtifactResolver(Protocol):
    """Locates and validates an immutable package artifact."""

    def resolve(self, version: str) -> ResolveResult: ...


def sha256_file(path: Path) -> str:
    """Stream a file through SHA-256 and return the hex digest."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def normalize_fingerprint(value: str) -> str:
    """Return ``sha256:<hex>`` in lower case, accepting a bare hex digest."""
    value = value.strip().lower()
    if value.startswith("sha256:"):
        value = value[len("sha256:"):]
    # sha256sum output is "<hex>  <filename>"
    value = value.split()[0] if value else value
    return f"sha256:{value}"


def parse_steps(raw: Any) -> tuple[VerificationStep, ...]:
    """Parse manifest ``verify`` entries into verification steps."""
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValueError("'verify' must be a list")

    steps = []
    for i, item in enumerate(raw):
        if isinstance(item, str):
            steps.append(VerificationStep(name=item, path=item))
            continue
        if not isinstance(item, dict):
            raise ValueError(f"verify[{i}] must be a mapping or a path")
        steps.append(
            VerificationStep(
                name=str(item.get("name") or item.get("path") or f"step-{i + 1}"),
                path=str(item.get("path", "/health")),
                expect_status=int(item.get("expect_status", 200)),
                expect_version=bool(item.get("expect_version", True)),
            )
        )
    return tuple(steps)


class FileArtifactResolver:
    """Resolve artifacts from a directory tree, verifying their digests."""

    def __init__(self, root: str | Path):
        """Initialize resolver.

        Args:
            root: Artifact store root directory
        """
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _manifest_path(self, version_dir: Path) -> Path | None:
        for name in MANIFEST_NAMES:
            candidate = version_dir / name
            if candidate.is_file():
                return candidate
        return None

    def resolve(self, version: str) -> ResolveResult:
        """Resolve and validate an artifact version.

        ``not_found`` means the release is not (fully) published yet and may
        be retried. ``corrupt`` means it is published but damaged; callers
        must not retry it.
        """
        if not version or "/" in version or version.startswith("."):
            return ResolveResult.corrupt(f"Invalid artifact version: {version!r}")

        version_dir = self._root / version
        if not version_dir.is_dir():
            return ResolveResult.not_found(f"Artifact {version} is not published")

        manifest_path = self._manifest_path(version_dir)
        if manifest_path is None:
            return ResolveResult.not_found(f"Artifact {version} has no manifest yet")

        try:
            with open(manifest_path) as f:
                manifest = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            return ResolveResult.corrupt(f"Unparseable manifest for {version}: {e}")
        except OSError as e:
            return ResolveResult.not_found(f"Cannot read manifest for {version}: {e}")

        if not isinstance(manifest, dict):
            return ResolveResult.corrupt(f"Manifest for {version} is not a mapping")

        declared = str(manifest.get("version", version))
        if declared != version:
            return ResolveResult.corrupt(
                f"Manifest version {declared} does not match requested {version}"
            )

        package = manifest.get("package")
        if not package:
            return ResolveResult.corrupt(f"Manifest for {version} names no package")
        package_path = version_dir / str(package)
        if not package_path.is_file():
            return ResolveResult.not_found(f"Package {package} for {version} is not uploaded yet")

        try:
            steps = parse_steps(manifest.get("verify"))
        except (TypeError, ValueError) as e:
            return ResolveResult.corrupt(f"Invalid verification steps for {version}: {e}")

        try:
            expected = self._expected_fingerprint(manifest, package_path)
        except ArtifactError as e:
            return ResolveResult.corrupt(e.message)

        try:
            actual = f"sha256:{sha256_file(package_path)}"
        except OSError as e:
            return ResolveResult.not_found(f"Cannot read package for {version}: {e}")

        if actual != expected:
            logger.error(
                "Artifact fingerprint mismatch",
                version=version,
                expected=expected,
                actual=actual,
            )
            return ResolveResult.corrupt(
                f"Fingerprint mismatch for {version}: expected {expected}, got {actual}"
            )

        artifact = Artifact(
            version=version,
            fingerprint=actual,
            locator=str(package_path),
            manifest=steps,
        )
        logger.debug("Resolved artifact", version=version, fingerprint=actual)
        return ResolveResult.found(artifact)

    def _expected_fingerprint(self, manifest: dict[str, Any], package_path: Path) -> str:
        declared = manifest.get("fingerprint")
        if declared:
            return normalize_fingerprint(str(declared))

        checksum_file = package_path.with_name(package_path.name + ".sha256")
        if checksum_file.is_file():
            content = checksum_file.read_text().strip()
            if content:
                return normalize_fingerprint(content)

        raise ArtifactError(
            f"No fingerprint published for {package_path.name}",
            version=str(manifest.get("version")),
        )
