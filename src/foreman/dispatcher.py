from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog

from foreman.channel import TimeoutPolicy
from foreman.context import ExecutionContext
from foreman.convergence import ConvergenceLoop, ConvergenceStatus
from foreman.coordinator import ExecutionCoordinator
from foreman.tasks import Specialization, TaskStatus, utcnow_iso

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class RunSummary:
    objective: str
    run_id: str
    started_at: str
    ended_at: str
    total_tasks: int
    completed_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    timed_out_ids: list[str] = field(default_factory=list)
    blocked_ids: list[str] = field(default_factory=list)
    remediated_ids: list[str] = field(default_factory=list)
    durations: dict[str, float] = field(default_factory=dict)
    convergence: list[dict[str, Any]] = field(default_factory=list)
    exhausted_groups: list[str] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    rejected: list[dict[str, str]] = field(default_factory=list)
    converged: bool = False

    @property
    def completed_tasks(self) -> int:
        return len(self.completed_ids)

    @property
    def failed_tasks(self) -> int:
        return len(self.failed_ids)

    @property
    def timed_out_tasks(self) -> int:
        return len(self.timed_out_ids)

    @property
    def blocked_tasks(self) -> int:
        return len(self.blocked_ids)

    @property
    def succeeded(self) -> bool:
        unremediated = set(self.failed_ids) | set(self.timed_out_ids)
        unremediated -= set(self.remediated_ids)
        return (
            self.converged
            and not unremediated
            and not self.blocked_ids
            and not self.rejected
            and not self.exhausted_groups
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "objective": self.objective,
            "run_id": self.run_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "succeeded": self.succeeded,
            "counts": {
                "total": self.total_tasks,
                "completed": self.completed_tasks,
                "failed": self.failed_tasks,
                "timed_out": self.timed_out_tasks,
                "blocked": self.blocked_tasks,
                "remediated": len(self.remediated_ids),
                "rejected": len(self.rejected),
            },
            "completed": list(self.completed_ids),
            "failed": list(self.failed_ids),
            "timed_out": list(self.timed_out_ids),
            "blocked": list(self.blocked_ids),
            "remediated": list(self.remediated_ids),
            "durations": dict(self.durations),
            "convergence": list(self.convergence),
            "exhausted_groups": list(self.exhausted_groups),
            "warnings": list(self.warnings),
            "rejected": list(self.rejected),
        }


class Dispatcher:
    """Runs every ready task on its specialization lane until the graph settles."""

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        context: ExecutionContext,
        convergence: ConvergenceLoop,
        *,
        timeouts: TimeoutPolicy | None = None,
        objective: str = "",
        run_id: str | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.context = context
        self.convergence = convergence
        self.timeouts = timeouts or TimeoutPolicy()
        self.objective = objective
        self.run_id = run_id or uuid.uuid4().hex[:12]

    def _next_for_lane(self, queue: list[str]) -> str:
        graph = self.coordinator.graph
        queue.sort(key=lambda task_id: (graph.get(task_id).priority.rank, graph.position(task_id)))
        return queue.pop(0)

    async def _run_lane_task(self, task_id: str) -> str:
        task = self.coordinator.graph.get(task_id)
        channel = self.context.channel(task.specialization)
        timeout_seconds = self.timeouts.for_specialization(task.specialization)
        await self.coordinator.run_task(task_id, channel, timeout_seconds)
        return task_id

    async def run(self) -> RunSummary:
        started_at = utcnow_iso()
        log = logger.bind(run_id=self.run_id)
        log.info("dispatch_started", tasks=len(self.coordinator.graph))

        queues: dict[Specialization, list[str]] = {}
        lanes: dict[Specialization, asyncio.Task[str]] = {}
        convergence_jobs: set[asyncio.Task[Any]] = set()
        try:
            while True:
                for task in await self.coordinator.claim_ready():
                    queues.setdefault(task.specialization, []).append(task.id)

                for specialization, queue in queues.items():
                    if queue and specialization not in lanes:
                        task_id = self._next_for_lane(queue)
                        lanes[specialization] = asyncio.create_task(
                            self._run_lane_task(task_id), name=f"lane-{specialization.value}"
                        )

                in_flight = [*lanes.values(), *convergence_jobs]
                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for job in done:
                    if job in convergence_jobs:
                        convergence_jobs.discard(job)
                        job.result()
                        continue
                    specialization = next(spec for spec, lane in lanes.items() if lane is job)
                    del lanes[specialization]
                    finished = self.coordinator.graph.get(job.result())
                    if self.convergence.watches(finished):
                        convergence_jobs.add(
                            asyncio.create_task(
                                self.convergence.handle(finished.id),
                                name=f"converge-{finished.id}",
                            )
                        )
        finally:
            pending = [job for job in [*lanes.values(), *convergence_jobs] if not job.done()]
            for job in pending:
                job.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        summary = self.summarize(started_at)
        log.info(
            "dispatch_finished",
            completed=summary.completed_tasks,
            failed=summary.failed_tasks,
            timed_out=summary.timed_out_tasks,
            blocked=summary.blocked_tasks,
            succeeded=summary.succeeded,
        )
        return summary

    def summarize(self, started_at: str | None = None) -> RunSummary:
        graph = self.coordinator.graph
        converged_groups = {
            record.group
            for record in self.convergence.finished
            if record.status == ConvergenceStatus.CONVERGED
        }
        summary = RunSummary(
            objective=self.objective,
            run_id=self.run_id,
            started_at=started_at or utcnow_iso(),
            ended_at=utcnow_iso(),
            total_tasks=len(graph),
            convergence=self.convergence.snapshot(),
            exhausted_groups=[
                record.group
                for record in self.convergence.finished
                if record.status == ConvergenceStatus.FAILED
            ],
            warnings=[warning.to_dict() for warning in self.coordinator.warnings],
            rejected=[
                {"task_id": getattr(error, "task_id", ""), "error": str(error)}
                for error in self.coordinator.rejected
            ],
            converged=graph.is_converged(),
        )
        for task in graph.tasks():
            if task.status == TaskStatus.COMPLETED:
                summary.completed_ids.append(task.id)
            elif task.status == TaskStatus.FAILED:
                summary.failed_ids.append(task.id)
            elif task.status == TaskStatus.TIMED_OUT:
                summary.timed_out_ids.append(task.id)
            elif task.status == TaskStatus.PENDING:
                summary.blocked_ids.append(task.id)
            if task.status in {TaskStatus.FAILED, TaskStatus.TIMED_OUT} and (
                task.group in converged_groups
            ):
                summary.remediated_ids.append(task.id)
            if task.duration_seconds is not None:
                summary.durations[task.id] = task.duration_seconds
        return summary
