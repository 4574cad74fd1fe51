from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class Specialization(StrEnum):
    SUPERVISOR = "supervisor"
    DEVELOPER = "developer"
    TESTER = "tester"
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    FIXER = "fixer"


class Priority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class TaskStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMED_OUT})
ACTIVE_STATUSES = frozenset(
    {TaskStatus.PENDING, TaskStatus.READY, TaskStatus.DISPATCHED, TaskStatus.RUNNING}
)


@dataclass(slots=True)
class Task:
    id: str
    description: str
    specialization: Specialization
    priority: Priority = Priority.MEDIUM
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    attempt: int = 0
    result: str | None = None
    error: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    ended_at: str | None = None
    checkable: bool = False
    group: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = str(self.id).strip()
        if not self.id:
            raise ValueError("Task id must be a non-empty string.")
        self.specialization = Specialization(self.specialization)
        self.priority = Priority(self.priority)
        self.status = TaskStatus(self.status)
        deduped: list[str] = []
        for dep in self.dependencies:
            dep_id = str(dep).strip()
            if dep_id and dep_id not in deduped:
                deduped.append(dep_id)
        self.dependencies = deduped
        if self.checkable and self.group is None:
            self.group = self.id

    @property
    def duration_seconds(self) -> float | None:
        if not self.started_at or not self.ended_at:
            return None
        started = datetime.fromisoformat(self.started_at)
        ended = datetime.fromisoformat(self.ended_at)
        return round((ended - started).total_seconds(), 3)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "specialization": self.specialization.value,
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "attempt": self.attempt,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "checkable": self.checkable,
            "group": self.group,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        metadata = payload.get("metadata")
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            specialization=Specialization(str(payload["specialization"])),
            priority=Priority(str(payload.get("priority", Priority.MEDIUM.value))),
            dependencies=[str(dep) for dep in payload.get("dependencies") or []],
            status=TaskStatus(str(payload.get("status", TaskStatus.PENDING.value))),
            attempt=int(payload.get("attempt") or 0),
            result=payload.get("result"),
            error=payload.get("error"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            started_at=payload.get("started_at"),
            ended_at=payload.get("ended_at"),
            checkable=bool(payload.get("checkable", False)),
            group=payload.get("group"),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )
