"""Structured audit trail of reconciler state transitions."""

import threading
from pathlib import Path
from typing import Any

from rolloutctl.core.logging import StructuredLogger
from rolloutctl.core.utils import append_json_line, read_json_lines
from rolloutctl.rollout.models import StateTransition

logger = StructuredLogger(__name__)


class AuditSink:
    """Append-only sink for transition and outcome records.

    Entries go to ``audit/<YYYY-MM-DD>.jsonl`` under the state directory
    and are mirrored to the logger. When no directory is configured the
    sink only logs.
    """

    def __init__(self, log_dir: str | Path | None = None):
        """Initialize audit sink.

        Args:
            log_dir: Directory to store audit logs
        """
        if log_dir:
            self._log_dir: Path | None = Path(log_dir)
            self._log_dir.mkdir(parents=True, exist_ok=True)
        else:
            self._log_dir = None
        self._lock = threading.Lock()

    def emit(
        self,
        target_id: str,
        artifact_version: str,
        transition: StateTransition,
        outcome: str | None = None,
        plan_id: str | None = None,
        record_id: str | None = None,
    ) -> dict[str, Any]:
        """Record one state transition.

        Returns:
            The audit entry as written
        """
        entry = {
            "timestamp": transition.timestamp.isoformat(),
            "target_id": target_id,
            "artifact_version": artifact_version,
            "from_state": transition.from_state.value,
            "to_state": transition.to_state.value,
            "outcome": outcome,
            "reason": transition.reason,
            "plan_id": plan_id,
            "record_id": record_id,
        }

        if self._log_dir:
            path = self._log_dir / f"{transition.timestamp.strftime('%Y-%m-%d')}.jsonl"
            with self._lock:
                append_json_line(path, entry)

        logger.info(
            "Transition",
            target=target_id,
            version=artifact_version,
            change=f"{transition.from_state.value}->{transition.to_state.value}",
            outcome=outcome,
        )
        return entry

    def history(
        self,
        target_id: str | None = None,
        plan_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Get audit entries, newest first.

        Args:
            target_id: Filter by target
            plan_id: Filter by plan
            limit: Maximum entries to return

        Returns:
            List of audit entries
        """
        if not self._log_dir:
            return []

        entries: list[dict[str, Any]] = []
        for path in sorted(self._log_dir.glob("*.jsonl"), reverse=True):
            with self._lock:
                day = read_json_lines(path)
            for entry in reversed(day):
                if target_id and entry.get("target_id") != target_id:
                    continue
                if plan_id and entry.get("plan_id") != plan_id:
                    continue
                entries.append(entry)
                if len(entries) >= limit:
                    return entries
        return entries
