"""Deployment plan run state persistence."""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from rolloutctl.core.exceptions import PlanNotFoundError, RolloutError
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.core.utils import atomic_write_json, state_filename
from rolloutctl.rollout.models import PlanStatus, RolloutReport, utcnow
from rolloutctl.rollout.schema import DeploymentPlan

logger = StructuredLogger(__name__)


class PlanRun:
    """Stored view of one plan run."""

    def __init__(
        self,
        plan: DeploymentPlan,
        status: PlanStatus = PlanStatus.PENDING,
        abort_requested: bool = False,
        report: dict[str, Any] | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ):
        self.plan = plan
        self.status = status
        self.abort_requested = abort_requested
        self.report = report
        self.created_at = created_at or utcnow()
        self.updated_at = updated_at or self.created_at

    @property
    def id(self) -> str:
        return self.plan.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.plan.id,
            "plan": self.plan.model_dump(mode="json"),
            "status": self.status.value,
            "abort_requested": self.abort_requested,
            "report": self.report,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanRun":
        return cls(
            plan=DeploymentPlan.model_validate(data["plan"]),
            status=PlanStatus(data.get("status", "pending")),
            abort_requested=data.get("abort_requested", False),
            report=data.get("report"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
        )


class PlanStore:
    """Manage plan run state so other processes can query and abort it.

    The run document is written only by the process driving the plan. An
    abort request from another process lands in a separate marker file,
    so neither writer can overwrite the other's update.
    """

    def __init__(self, state_dir: str | Path):
        self._dir = Path(state_dir) / "plans"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, plan_id: str) -> Path:
        return self._dir / state_filename(plan_id, ".json")

    def _abort_path(self, plan_id: str) -> Path:
        return self._dir / state_filename(plan_id, ".abort")

    def _write(self, run: PlanRun) -> None:
        run.updated_at = utcnow()
        try:
            atomic_write_json(self._path(run.id), run.to_dict())
        except OSError as e:
            raise RolloutError(f"Failed to save plan state: {e}", {"plan_id": run.id})

    def _read(self, path: Path) -> PlanRun:
        with open(path) as f:
            run = PlanRun.from_dict(json.load(f))
        if self._abort_path(run.id).exists():
            run.abort_requested = True
        return run

    def save(self, plan: DeploymentPlan) -> PlanRun:
        """Store a new plan run in the pending state."""
        with self._lock:
            if self._path(plan.id).exists():
                raise RolloutError(f"Plan already exists: {plan.id}", {"plan_id": plan.id})
            run = PlanRun(plan)
            self._write(run)
        logger.debug("Created plan run", id=plan.id)
        return run

    def load(self, plan_id: str) -> PlanRun:
        """Load a plan run.

        Raises:
            PlanNotFoundError: If no state exists for the id
        """
        path = self._path(plan_id)
        if not path.exists():
            raise PlanNotFoundError(f"Plan not found: {plan_id}", plan_id=plan_id)
        try:
            return self._read(path)
        except (OSError, ValueError, KeyError) as e:
            raise RolloutError(f"Failed to load plan state: {e}", {"plan_id": plan_id})

    def set_status(
        self,
        plan_id: str,
        status: PlanStatus,
        report: RolloutReport | None = None,
    ) -> PlanRun:
        with self._lock:
            run = self.load(plan_id)
            run.status = status
            if report is not None:
                run.report = report.to_dict()
            self._write(run)
            return run

    def request_abort(self, plan_id: str) -> PlanRun:
        """Flag a plan for abort; the running coordinator polls the flag."""
        with self._lock:
            run = self.load(plan_id)
            if run.status.is_complete:
                return run
            try:
                atomic_write_json(self._abort_path(plan_id), {"requested_at": utcnow().isoformat()})
            except OSError as e:
                raise RolloutError(f"Failed to request abort: {e}", {"plan_id": plan_id})
            run.abort_requested = True
        logger.info("Abort requested", id=plan_id)
        return run

    def abort_requested(self, plan_id: str) -> bool:
        try:
            return self.load(plan_id).abort_requested
        except PlanNotFoundError:
            return False

    def list(self, status: PlanStatus | None = None, limit: int = 20) -> "list[PlanRun]":
        """List plan runs, newest first."""
        runs: list[PlanRun] = []
        for path in self._dir.glob("*.json"):
            try:
                run = self._read(path)
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to load plan {path.name}: {e}")
                continue
            if status and run.status != status:
                continue
            runs.append(run)

        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]
