from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any

from foreman.tasks import TERMINAL_STATUSES, Task, TaskStatus

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY}),
    TaskStatus.READY: frozenset({TaskStatus.DISPATCHED}),
    TaskStatus.DISPATCHED: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMED_OUT}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.TIMED_OUT: frozenset(),
}
UPDATABLE_FIELDS = frozenset({"result", "error", "started_at", "ended_at", "metadata"})


class TaskGraphError(RuntimeError):
    """Base class for task graph failures."""


class DuplicateTaskError(TaskGraphError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' already exists.")
        self.task_id = task_id


class CyclicDependencyError(TaskGraphError):
    def __init__(self, task_id: str, path: list[str]) -> None:
        super().__init__(
            f"Adding dependencies of '{task_id}' would create a cycle: {' -> '.join(path)}"
        )
        self.task_id = task_id
        self.path = path


class UnknownTaskError(TaskGraphError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Unknown task '{task_id}'.")
        self.task_id = task_id

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidTransitionError(TaskGraphError):
    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
        super().__init__(
            f"Task '{task_id}' cannot move from {current.value} to {requested.value}."
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


class TaskImmutableError(TaskGraphError):
    """Raised when fields of a terminal task would be rewritten."""


class TaskGraph:
    """Task records plus dependency edges.

    Dependencies may name ids that are not in the graph yet; such tasks stay
    pending until the dependency arrives and completes. The dependents index is
    keyed by dependency id so forward references are tracked as well.
    """

    def __init__(self, tasks: Iterable[Task] | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        self._order: dict[str, int] = {}
        self._dependents: dict[str, list[str]] = {}
        for task in tasks or []:
            self.add_task(task)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def position(self, task_id: str) -> int:
        """Insertion index, used to break priority ties."""
        if task_id not in self._order:
            raise UnknownTaskError(task_id)
        return self._order[task_id]

    def dependents(self, task_id: str) -> list[str]:
        return list(self._dependents.get(task_id, []))

    def _find_path(self, start: str, target: str) -> list[str] | None:
        """Follow dependency edges from ``start``; return the path if ``target`` is hit."""
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        seen: set[str] = set()
        while stack:
            current, path = stack.pop()
            if current == target:
                return path
            if current in seen:
                continue
            seen.add(current)
            task = self._tasks.get(current)
            if task is None:
                continue
            for dep in reversed(task.dependencies):
                stack.append((dep, [*path, dep]))
        return None

    def add_task(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise DuplicateTaskError(task.id)
        for dep in task.dependencies:
            if dep == task.id:
                raise CyclicDependencyError(task.id, [task.id, task.id])
            path = self._find_path(dep, task.id)
            if path is not None:
                raise CyclicDependencyError(task.id, [task.id, *path])

        self._tasks[task.id] = task
        self._order[task.id] = len(self._order)
        for dep in task.dependencies:
            self._dependents.setdefault(dep, []).append(task.id)
        return task

    def update_status(self, task_id: str, new_status: TaskStatus, **fields: Any) -> Task:
        task = self.get(task_id)
        new_status = TaskStatus(new_status)
        if task.status in TERMINAL_STATUSES and fields:
            raise TaskImmutableError(
                f"Task '{task_id}' is {task.status.value}; its fields cannot be rewritten."
            )
        if new_status not in ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTransitionError(task_id, task.status, new_status)
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise TaskGraphError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        task.status = new_status
        for key, value in fields.items():
            if key == "metadata":
                task.metadata.update(value or {})
            else:
                setattr(task, key, value)
        return task

    def annotate(self, task_id: str, **metadata: Any) -> Task:
        """Add metadata keys; allowed on terminal tasks since core fields stay untouched."""
        task = self.get(task_id)
        overlap = set(metadata) & set(task.metadata)
        if task.status in TERMINAL_STATUSES and overlap:
            raise TaskImmutableError(
                f"Task '{task_id}' is terminal; metadata keys cannot be rewritten: "
                + ", ".join(sorted(overlap))
            )
        task.metadata.update(metadata)
        return task

    def dependencies_completed(self, task: Task) -> bool:
        for dep in task.dependencies:
            dep_task = self._tasks.get(dep)
            if dep_task is None or dep_task.status != TaskStatus.COMPLETED:
                return False
        return True

    def ready_tasks(self) -> list[Task]:
        ready = [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.PENDING and self.dependencies_completed(task)
        ]
        ready.sort(key=lambda task: (task.priority.rank, self._order[task.id]))
        return ready

    def is_converged(self) -> bool:
        return not any(task.status.is_active for task in self._tasks.values())

    def in_flight(self) -> list[Task]:
        return [
            task
            for task in self._tasks.values()
            if task.status in {TaskStatus.READY, TaskStatus.DISPATCHED, TaskStatus.RUNNING}
        ]

    def blocked_tasks(self) -> list[Task]:
        doomed: dict[str, bool] = {}

        def _is_doomed(task_id: str, trail: frozenset[str]) -> bool:
            if task_id in doomed:
                return doomed[task_id]
            task = self._tasks.get(task_id)
            if task is None:
                result = True
            elif task.status in {TaskStatus.FAILED, TaskStatus.TIMED_OUT}:
                result = True
            elif task.status == TaskStatus.COMPLETED or task_id in trail:
                result = False
            else:
                result = any(_is_doomed(dep, trail | {task_id}) for dep in task.dependencies)
            doomed[task_id] = result
            return result

        return [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.PENDING
            and any(_is_doomed(dep, frozenset({task.id})) for dep in task.dependencies)
        ]

    def redirect_dependency(self, old_id: str, new_id: str) -> list[str]:
        """Point non-terminal dependents of ``old_id`` at ``new_id``.

        Returns the ids of the rewired tasks. Terminal dependents keep their
        recorded history.
        """
        if new_id not in self._tasks:
            raise UnknownTaskError(new_id)
        if old_id == new_id:
            return []
        candidates = [
            dependent_id
            for dependent_id in self._dependents.get(old_id, [])
            if self._tasks[dependent_id].status not in TERMINAL_STATUSES
        ]
        for dependent_id in candidates:
            if dependent_id == new_id:
                raise CyclicDependencyError(dependent_id, [dependent_id, new_id])
            path = self._find_path(new_id, dependent_id)
            if path is not None:
                raise CyclicDependencyError(dependent_id, [dependent_id, *path])

        for dependent_id in candidates:
            task = self._tasks[dependent_id]
            rewired: list[str] = []
            for dep in task.dependencies:
                replacement = new_id if dep == old_id else dep
                if replacement not in rewired:
                    rewired.append(replacement)
            task.dependencies = rewired
            self._dependents[old_id].remove(dependent_id)
            new_dependents = self._dependents.setdefault(new_id, [])
            if dependent_id not in new_dependents:
                new_dependents.append(dependent_id)
        if old_id in self._dependents and not self._dependents[old_id]:
            del self._dependents[old_id]
        return candidates

    def progress(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        total = len(self._tasks)
        completed = counts[TaskStatus.COMPLETED.value]
        percentage = math.floor(completed * 100 / total + 0.5) if total else 0
        return {
            "total": total,
            "completed": completed,
            "failed": counts[TaskStatus.FAILED.value],
            "timed_out": counts[TaskStatus.TIMED_OUT.value],
            "percentage": percentage,
            "by_status": counts,
        }
