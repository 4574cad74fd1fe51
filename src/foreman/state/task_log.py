from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foreman.tasks import Task, utcnow_iso


class TaskLogError(RuntimeError):
    """Raised when the task log on disk cannot be read."""


class PersistenceWarning(UserWarning):
    """A snapshot could not be written; in-memory state is still authoritative."""

    def __init__(self, path: Path, reason: str, *, revision: int | None = None) -> None:
        super().__init__(f"Could not write task log {path}: {reason}")
        self.path = path
        self.reason = reason
        self.revision = revision

    def to_dict(self) -> dict[str, Any]:
        return {"path": str(self.path), "reason": self.reason, "revision": self.revision}


@dataclass(slots=True)
class TaskLogSnapshot:
    revision: int = 0
    timestamp: str | None = None
    tasks: list[Task] = field(default_factory=list)
    convergence: list[dict[str, Any]] = field(default_factory=list)


class TaskLog:
    SCHEMA_VERSION = 1

    def __init__(self, path: Path) -> None:
        self.path = path
        self.revision = 0

    def load(self) -> TaskLogSnapshot:
        if not self.path.exists():
            return TaskLogSnapshot()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise TaskLogError(f"Task log is not valid JSON: {self.path}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("tasks"), list):
            raise TaskLogError(f"Task log has no task list: {self.path}")
        schema_version = int(raw.get("schema_version") or self.SCHEMA_VERSION)
        if schema_version > self.SCHEMA_VERSION:
            raise TaskLogError(
                f"Task log schema {schema_version} is newer than supported {self.SCHEMA_VERSION}."
            )
        try:
            tasks = [Task.from_dict(item) for item in raw["tasks"]]
        except (KeyError, TypeError, ValueError) as exc:
            raise TaskLogError(f"Task log contains an invalid task: {exc}") from exc
        convergence = raw.get("convergence")
        snapshot = TaskLogSnapshot(
            revision=int(raw.get("revision") or 0),
            timestamp=raw.get("timestamp"),
            tasks=tasks,
            convergence=list(convergence) if isinstance(convergence, list) else [],
        )
        self.revision = max(self.revision, snapshot.revision)
        return snapshot

    def save(self, tasks: list[Task], convergence: list[dict[str, Any]] | None = None) -> int:
        """Overwrite the log atomically and return the new revision."""
        revision = self.revision + 1
        payload = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "timestamp": utcnow_iso(),
            "tasks": [task.to_dict() for task in tasks],
            "convergence": list(convergence or []),
        }
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}-",
            suffix=".tmp",
            delete=False,
        ) as temp_file:
            temp_path = Path(temp_file.name)
            try:
                temp_file.write(serialized)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            except BaseException:
                temp_file.close()
                temp_path.unlink(missing_ok=True)
                raise
        try:
            os.replace(temp_path, self.path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        self.revision = revision
        return revision
