from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from foreman.channel import TimeoutPolicy
from foreman.context import ExecutionContext
from foreman.coordinator import ExecutionCoordinator
from foreman.reports import CheckFailure, CheckReport, parse_check_report
from foreman.tasks import Priority, Specialization, Task, TaskStatus

logger = structlog.get_logger(__name__)

__all__ = [
    "CheckFailure",
    "CheckReport",
    "ConvergenceExhaustedError",
    "ConvergenceLoop",
    "ConvergenceRecord",
    "ConvergenceStatus",
    "IterationResult",
]


class ConvergenceExhaustedError(RuntimeError):
    """A check group still fails after the configured number of fix cycles."""

    def __init__(self, group: str, iterations: int, failures: list[CheckFailure]) -> None:
        ids = ", ".join(failure.id for failure in failures) or "unknown"
        super().__init__(
            f"Check group '{group}' did not converge after {iterations} fix iterations; "
            f"remaining failures: {ids}"
        )
        self.group = group
        self.iterations = iterations
        self.failures = failures


class ConvergenceStatus(StrEnum):
    RUNNING = "running"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(slots=True)
class IterationResult:
    iteration: int
    task_id: str
    passed: int
    failed: int
    skipped: int
    failure_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "task_id": self.task_id,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "failure_ids": list(self.failure_ids),
        }


@dataclass(slots=True)
class ConvergenceRecord:
    group: str
    bound: int
    iteration: int = 0
    status: ConvergenceStatus = ConvergenceStatus.RUNNING
    history: list[IterationResult] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    fix_task_ids: list[str] = field(default_factory=list)
    remaining_failures: list[CheckFailure] = field(default_factory=list)
    resolved_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group,
            "iteration": self.iteration,
            "bound": self.bound,
            "status": self.status.value,
            "history": [entry.to_dict() for entry in self.history],
            "task_ids": list(self.task_ids),
            "fix_task_ids": list(self.fix_task_ids),
            "remaining_failures": [failure.to_dict() for failure in self.remaining_failures],
            "resolved_by": self.resolved_by,
        }


class ConvergenceLoop:
    """Analyze, fix and re-run checkable task groups until they pass or the bound is hit.

    ``max_iterations`` counts fix/re-run cycles, so a group runs its check at most
    ``max_iterations + 1`` times.
    """

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        context: ExecutionContext,
        *,
        max_iterations: int = 3,
        fixer: Specialization | str = Specialization.FIXER,
        timeouts: TimeoutPolicy | None = None,
    ) -> None:
        if max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        self.coordinator = coordinator
        self.context = context
        self.max_iterations = max_iterations
        self.fixer = Specialization(fixer)
        self.timeouts = timeouts or TimeoutPolicy()
        self.active: dict[str, ConvergenceRecord] = {}
        self.finished: list[ConvergenceRecord] = []
        self.errors: list[ConvergenceExhaustedError] = []
        coordinator.attach_convergence_state(self.snapshot)

    def snapshot(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in [*self.finished, *self.active.values()]]

    def record_for(self, group: str) -> ConvergenceRecord | None:
        if group in self.active:
            return self.active[group]
        for record in self.finished:
            if record.group == group:
                return record
        return None

    @staticmethod
    def watches(task: Task) -> bool:
        return task.checkable and task.status.is_terminal

    def report_for(self, task: Task) -> CheckReport:
        stored = task.metadata.get("report")
        if isinstance(stored, dict):
            return CheckReport.from_dict(stored)
        if task.status == TaskStatus.COMPLETED:
            parsed = parse_check_report(task.result)
            if parsed is not None:
                return parsed
        failure_id = "timeout" if task.status == TaskStatus.TIMED_OUT else "run-error"
        return CheckReport(
            failed=1,
            failures=[
                CheckFailure(id=failure_id, diagnostic=task.error or f"check {task.status.value}")
            ],
        )

    @staticmethod
    def _failures(report: CheckReport) -> list[CheckFailure]:
        failures = report.distinct_failures()
        if not failures:
            failures = [CheckFailure(id="unlisted-failures", diagnostic=report.summary())]
        return failures

    def _fix_task(
        self,
        record: ConvergenceRecord,
        source: Task,
        first: Task,
        iteration: int,
        index: int,
        failure: CheckFailure,
    ) -> Task:
        description = (
            f"Fix the failing check '{failure.id}' reported by task {source.id}.\n\n"
            f"Check under repair:\n{first.description.strip()}\n\n"
            f"Diagnostic:\n{failure.diagnostic.strip() or 'no diagnostic provided'}"
        )
        return Task(
            id=f"{record.group}.fix-{iteration}-{index}",
            description=description,
            specialization=self.fixer,
            priority=Priority.HIGH,
            group=record.group,
            attempt=iteration,
            metadata={"failure_id": failure.id, "source_task": source.id},
        )

    async def _close(self, record: ConvergenceRecord) -> None:
        self.active.pop(record.group, None)
        self.finished.append(record)
        await self.coordinator.persist()

    async def handle(self, task_id: str) -> ConvergenceRecord:
        graph = self.coordinator.graph
        task = graph.get(task_id)
        if not self.watches(task):
            raise ValueError(f"Task '{task_id}' is not a finished checkable task.")
        group = task.group or task.id
        first = graph.get(group)
        record = self.active.get(group)
        if record is None:
            record = ConvergenceRecord(group=group, bound=self.max_iterations)
            self.active[group] = record
        if task.id not in record.task_ids:
            record.task_ids.append(task.id)
        log = logger.bind(group=group, task_id=task.id, iteration=record.iteration)

        report = self.report_for(task)
        failures = self._failures(report) if report.has_failures else []
        record.history.append(
            IterationResult(
                iteration=record.iteration,
                task_id=task.id,
                passed=report.passed,
                failed=report.failed,
                skipped=report.skipped,
                failure_ids=[failure.id for failure in failures],
            )
        )

        if not failures:
            record.status = ConvergenceStatus.CONVERGED
            record.resolved_by = task.id
            for member in record.task_ids:
                if member != task.id:
                    await self.coordinator.redirect_dependency(member, task.id)
            log.info("convergence_converged")
            await self._close(record)
            return record

        if record.iteration >= record.bound:
            record.status = ConvergenceStatus.FAILED
            record.remaining_failures = failures
            error = ConvergenceExhaustedError(group, record.iteration, failures)
            self.errors.append(error)
            log.error("convergence_exhausted", failures=[failure.id for failure in failures])
            await self._close(record)
            return record

        iteration = record.iteration + 1
        fix_tasks = [
            self._fix_task(record, task, first, iteration, index, failure)
            for index, failure in enumerate(failures, start=1)
        ]
        await self.coordinator.add_tasks(fix_tasks)
        for fix_task in fix_tasks:
            await self.coordinator.claim(fix_task.id)
        record.fix_task_ids.extend(fix_task.id for fix_task in fix_tasks)
        log.info("convergence_fixing", fix_tasks=len(fix_tasks))

        channel = self.context.channel(self.fixer)
        timeout_seconds = self.timeouts.for_specialization(self.fixer)
        await asyncio.gather(
            *(
                self.coordinator.run_task(fix_task.id, channel, timeout_seconds)
                for fix_task in fix_tasks
            )
        )

        record.iteration = iteration
        rerun = Task(
            id=f"{group}.rerun-{iteration}",
            description=first.description,
            specialization=first.specialization,
            priority=first.priority,
            dependencies=list(first.dependencies),
            attempt=iteration,
            checkable=True,
            group=group,
        )
        record.task_ids.append(rerun.id)
        await self.coordinator.add_task(rerun)
        log.info("convergence_rerun_scheduled", rerun=rerun.id)
        return record
