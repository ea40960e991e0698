"""Target registry persistence."""

import copy
import json
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

from rolloutctl.core.exceptions import RegistryError, TargetNotFoundError
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.core.utils import atomic_write_json, state_filename
from rolloutctl.rollout.models import Target, TargetState, utcnow

logger = StructuredLogger(__name__)

TargetPredicate = Callable[[Target], bool]


class TargetListing:
    """Lazy, restartable view over a point-in-time registry snapshot.

    Records are copied when the listing is created; filtering happens on
    iteration. Later upserts never show up in an existing listing.
    """

    def __init__(self, snapshot: list[Target], predicate: TargetPredicate | None = None):
        self._snapshot = snapshot
        self._predicate = predicate

    def __iter__(self) -> Iterator[Target]:
        for target in self._snapshot:
            if self._predicate is None or self._predicate(target):
                yield copy.deepcopy(target)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def ids(self) -> list[str]:
        return [t.id for t in self]


class TargetRegistry:
    """Arena of target records addressed by id.

    Every record lives in its own JSON file. ``upsert`` replaces the whole
    record and is durable before it returns.
    """

    def __init__(self, state_dir: str | Path):
        """Initialize the registry.

        Args:
            state_dir: Root state directory; records go under ``targets/``
        """
        self._dir = Path(state_dir) / "targets"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._targets: dict[str, Target] | None = None

    def _path(self, target_id: str) -> Path:
        return self._dir / state_filename(target_id, ".json")

    def _load_all(self) -> dict[str, Target]:
        if self._targets is None:
            targets: dict[str, Target] = {}
            for state_file in sorted(self._dir.glob("*.json")):
                try:
                    with open(state_file) as f:
                        target = Target.from_dict(json.load(f))
                except (OSError, ValueError, KeyError) as e:
                    raise RegistryError(f"Corrupt target record {state_file.name}: {e}")
                targets[target.id] = target
            self._targets = targets
        return self._targets

    def get(self, target_id: str) -> Target:
        """Get a snapshot of a target.

        Raises:
            TargetNotFoundError: If the id is not registered
        """
        with self._lock:
            target = self._load_all().get(target_id)
            if target is None:
                raise TargetNotFoundError(f"Target not found: {target_id}", target_id=target_id)
            return copy.deepcopy(target)

    def exists(self, target_id: str) -> bool:
        with self._lock:
            return target_id in self._load_all()

    def upsert(self, target: Target) -> Target:
        """Atomically replace the whole record for ``target.id``.

        Returns:
            Snapshot of the stored record
        """
        with self._lock:
            stored = copy.deepcopy(target)
            stored.updated_at = utcnow()
            try:
                atomic_write_json(self._path(stored.id), stored.to_dict())
            except OSError as e:
                raise RegistryError(f"Failed to persist target {stored.id}: {e}", target_id=stored.id)
            self._load_all()[stored.id] = stored
            logger.debug("Saved target", id=stored.id, state=stored.state.value)
            return copy.deepcopy(stored)

    def list(
        self,
        state: TargetState | None = None,
        labels: dict[str, str] | None = None,
        include_decommissioned: bool = False,
        predicate: TargetPredicate | None = None,
    ) -> TargetListing:
        """List targets as of now.

        Args:
            state: Only targets in this state
            labels: Only targets carrying all of these labels
            include_decommissioned: Include decommissioned targets
            predicate: Extra filter callable

        Returns:
            TargetListing over a snapshot taken at call time
        """
        with self._lock:
            snapshot = [copy.deepcopy(t) for t in self._load_all().values()]
        snapshot.sort(key=lambda t: t.id)

        def matches(target: Target) -> bool:
            if target.decommissioned and not include_decommissioned:
                return False
            if state is not None and target.state != state:
                return False
            if labels and any(target.labels.get(k) != v for k, v in labels.items()):
                return False
            return predicate is None or predicate(target)

        return TargetListing(snapshot, matches)

    def register(
        self,
        target_id: str,
        endpoint: str,
        labels: dict[str, str] | None = None,
        observed_version: str | None = None,
    ) -> Target:
        """Register a new target in the idle state.

        Raises:
            RegistryError: If the id is already registered
        """
        with self._lock:
            if target_id in self._load_all():
                raise RegistryError(f"Target already registered: {target_id}", target_id=target_id)
            target = Target(
                id=target_id,
                endpoint=endpoint,
                labels=labels or {},
                observed_version=observed_version,
            )
            logger.info("Registered target", id=target_id)
            return self.upsert(target)

    def decommission(self, target_id: str) -> Target:
        """Mark a target decommissioned. Records are never deleted."""
        with self._lock:
            target = self.get(target_id)
            target.decommissioned = True
            logger.info("Decommissioned target", id=target_id)
            return self.upsert(target)
