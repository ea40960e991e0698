"""Append-only store of reconciliation records."""

import threading
from pathlib import Path

from rolloutctl.core.logging import StructuredLogger
from rolloutctl.core.utils import append_json_line, read_json_lines, state_filename
from rolloutctl.rollout.models import ReconciliationRecord, RecordOutcome

logger = StructuredLogger(__name__)


class RecordStore:
    """Per-target JSON-lines files of closed reconciliation records."""

    def __init__(self, state_dir: str | Path):
        self._dir = Path(state_dir) / "records"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, target_id: str) -> Path:
        return self._dir / state_filename(target_id, ".jsonl")

    def append(self, record: ReconciliationRecord) -> None:
        """Append a closed record. Records are never rewritten."""
        if not record.is_closed:
            raise ValueError(f"Record {record.id} is still open")
        with self._lock:
            append_json_line(self._path(record.target_id), record.to_dict())
        logger.debug(
            "Appended reconciliation record",
            id=record.id,
            target=record.target_id,
            outcome=record.outcome.value if record.outcome else None,
        )

    def for_target(self, target_id: str) -> list[ReconciliationRecord]:
        """All records for a target, oldest first."""
        with self._lock:
            entries = read_json_lines(self._path(target_id))
        return [ReconciliationRecord.from_dict(e) for e in entries]

    def for_plan(self, plan_id: str) -> list[ReconciliationRecord]:
        records: list[ReconciliationRecord] = []
        for path in sorted(self._dir.glob("*.jsonl")):
            with self._lock:
                entries = read_json_lines(path)
            records.extend(
                ReconciliationRecord.from_dict(e) for e in entries if e.get("plan_id") == plan_id
            )
        records.sort(key=lambda r: r.started_at)
        return records

    def latest(self, target_id: str) -> ReconciliationRecord | None:
        records = self.for_target(target_id)
        return records[-1] if records else None

    def previous_good_version(self, target_id: str, current: str | None) -> str | None:
        """Most recent successfully installed version other than ``current``."""
        for record in reversed(self.for_target(target_id)):
            if record.outcome == RecordOutcome.SUCCEEDED and record.artifact_version != current:
                return record.artifact_version
        return None
