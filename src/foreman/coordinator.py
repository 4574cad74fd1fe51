from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from foreman.channel import ExecutionChannel, Outcome, OutcomeKind
from foreman.graph import CyclicDependencyError, DuplicateTaskError, TaskGraph, TaskGraphError
from foreman.reports import parse_check_report
from foreman.state.task_log import PersistenceWarning, TaskLog
from foreman.tasks import Task, TaskStatus, utcnow_iso

logger = structlog.get_logger(__name__)


class ExecutionCoordinator:
    """Single writer for the task graph.

    Every mutation runs under one lock and is followed by a full snapshot to the
    task log. A failed write leaves the in-memory graph as is; the next mutation
    writes the snapshot again.
    """

    def __init__(self, graph: TaskGraph | None = None, task_log: TaskLog | None = None) -> None:
        self.graph = graph if graph is not None else TaskGraph()
        self.task_log = task_log
        self.warnings: list[PersistenceWarning] = []
        self.rejected: list[TaskGraphError] = []
        self._lock = asyncio.Lock()
        self._convergence_state: Callable[[], list[dict[str, Any]]] = list

    def attach_convergence_state(self, provider: Callable[[], list[dict[str, Any]]]) -> None:
        self._convergence_state = provider

    def _persist(self) -> PersistenceWarning | None:
        if self.task_log is None:
            return None
        try:
            self.task_log.save(self.graph.tasks(), self._convergence_state())
        except (OSError, TypeError, ValueError) as exc:
            warning = PersistenceWarning(
                self.task_log.path, str(exc), revision=self.task_log.revision + 1
            )
            self.warnings.append(warning)
            logger.warning("task_log_write_failed", path=str(self.task_log.path), error=str(exc))
            return warning
        return None

    async def persist(self) -> PersistenceWarning | None:
        async with self._lock:
            return self._persist()

    async def add_task(self, task: Task) -> PersistenceWarning | None:
        async with self._lock:
            self.graph.add_task(task)
            logger.debug("task_added", task_id=task.id, specialization=task.specialization.value)
            return self._persist()

    async def add_tasks(self, tasks: Iterable[Task]) -> PersistenceWarning | None:
        """Insert a batch; nothing is inserted if any task is rejected."""
        batch = list(tasks)
        async with self._lock:
            TaskGraph([*self.graph.tasks(), *batch])
            for task in batch:
                self.graph.add_task(task)
            logger.debug("tasks_added", count=len(batch))
            return self._persist()

    async def insert_plan(self, tasks: Iterable[Task]) -> list[TaskGraphError]:
        """Insert tasks one at a time; a duplicate or cyclic task is skipped and recorded."""
        rejected: list[TaskGraphError] = []
        async with self._lock:
            for task in tasks:
                try:
                    self.graph.add_task(task)
                except (DuplicateTaskError, CyclicDependencyError) as exc:
                    rejected.append(exc)
                    logger.warning("task_rejected", task_id=task.id, error=str(exc))
            self.rejected.extend(rejected)
            self._persist()
        return rejected

    async def claim(self, task_id: str) -> bool:
        async with self._lock:
            task = self.graph.get(task_id)
            if task.status != TaskStatus.PENDING or not self.graph.dependencies_completed(task):
                return False
            self.graph.update_status(task_id, TaskStatus.READY)
            self._persist()
            return True

    async def claim_ready(self) -> list[Task]:
        async with self._lock:
            ready = self.graph.ready_tasks()
            for task in ready:
                self.graph.update_status(task.id, TaskStatus.READY)
            if ready:
                self._persist()
            return ready

    async def redirect_dependency(self, old_id: str, new_id: str) -> list[str]:
        async with self._lock:
            rewired = self.graph.redirect_dependency(old_id, new_id)
            if rewired:
                logger.info("dependency_redirected", old=old_id, new=new_id, tasks=rewired)
                self._persist()
            return rewired

    def _terminal_fields(self, task: Task, outcome: Outcome) -> tuple[TaskStatus, dict[str, Any]]:
        fields: dict[str, Any] = {"ended_at": utcnow_iso()}
        if outcome.kind != OutcomeKind.COMPLETED:
            fields["error"] = outcome.text
            return outcome.status, fields

        fields["result"] = outcome.text
        if not task.checkable:
            return TaskStatus.COMPLETED, fields

        report = parse_check_report(outcome.text)
        if report is None:
            fields["error"] = "No check report found in agent output."
            return TaskStatus.FAILED, fields
        fields["metadata"] = {"report": report.to_dict()}
        if report.has_failures:
            fields["error"] = report.summary()
            return TaskStatus.FAILED, fields
        return TaskStatus.COMPLETED, fields

    async def run_task(
        self, task_id: str, channel: ExecutionChannel, timeout_seconds: float
    ) -> Task:
        log = logger.bind(task_id=task_id, specialization=channel.specialization.value)
        async with self._lock:
            task = self.graph.update_status(task_id, TaskStatus.DISPATCHED)
            self._persist()
        log.info("task_dispatched")

        async def _on_start() -> None:
            async with self._lock:
                self.graph.update_status(task_id, TaskStatus.RUNNING, started_at=utcnow_iso())
                self._persist()
            log.info("task_started")

        outcome = await channel.submit(task, timeout_seconds=timeout_seconds, on_start=_on_start)

        async with self._lock:
            status, fields = self._terminal_fields(task, outcome)
            task = self.graph.update_status(task_id, status, **fields)
            self._persist()
        if status == TaskStatus.COMPLETED:
            log.info("task_completed", duration_seconds=task.duration_seconds)
        else:
            log.warning(f"task_{status.value}", error=task.error)
        return task
