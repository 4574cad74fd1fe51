import asyncio
import json
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path

from foreman.backends.base import AgentEvent, AgentExecutionService, AgentSession
from foreman.channel import TimeoutPolicy
from foreman.context import ExecutionContext
from foreman.convergence import (
    CheckReport,
    ConvergenceExhaustedError,
    ConvergenceLoop,
    ConvergenceStatus,
)
from foreman.coordinator import ExecutionCoordinator
from foreman.dispatcher import Dispatcher, RunSummary
from foreman.graph import TaskGraph
from foreman.specialists import SpecialistProfile
from foreman.state import TaskLog
from foreman.tasks import Specialization, Task, TaskStatus


def _report(*failing: str, passed: int = 5) -> str:
    failures = [{"id": name, "diagnostic": f"{name} assertion failed"} for name in failing]
    payload = {"passed": passed, "failed": len(failures), "skipped": 0, "failures": failures}
    return "Test run finished.\n```json\n" + json.dumps(payload, indent=2) + "\n```"


class FlakyRepoSession(AgentSession):
    """Tester reports the repo's open failures; each fixer run repairs the named failure."""

    def __init__(self, service: "FlakyRepoService", profile: SpecialistProfile) -> None:
        self.service = service
        self.profile = profile

    async def submit(self, prompt: str) -> AsyncIterator[AgentEvent]:
        await asyncio.sleep(0.005)
        specialization = self.profile.specialization
        self.service.calls.append((specialization, prompt.splitlines()[0]))
        if specialization == Specialization.TESTER:
            if self.service.hang_tests:
                await asyncio.sleep(5)
            yield AgentEvent.message(_report(*sorted(self.service.open_failures)))
        elif specialization == Specialization.FIXER:
            for name in list(self.service.open_failures):
                if f"'{name}'" in prompt and self.service.fixable:
                    self.service.open_failures.discard(name)
            yield AgentEvent.message("patched")
        else:
            yield AgentEvent.message("implemented")
        yield AgentEvent.idle()


class FlakyRepoService(AgentExecutionService):
    def __init__(self, failures: set[str], *, fixable: bool = True, hang_tests: bool = False):
        self.open_failures = set(failures)
        self.fixable = fixable
        self.hang_tests = hang_tests
        self.calls: list[tuple[Specialization, str]] = []

    async def open_session(self, profile: SpecialistProfile) -> FlakyRepoSession:
        return FlakyRepoSession(self, profile)


def _plan() -> list[Task]:
    return [
        Task(id="T1", description="implement auth", specialization=Specialization.DEVELOPER),
        Task(
            id="T2",
            description="run the auth tests",
            specialization=Specialization.TESTER,
            dependencies=["T1"],
            checkable=True,
        ),
        Task(
            id="T3",
            description="document auth",
            specialization=Specialization.DEVELOPER,
            dependencies=["T2"],
        ),
    ]


def _run(
    service: FlakyRepoService,
    *,
    max_iterations: int = 3,
    timeouts: TimeoutPolicy | None = None,
    task_log: TaskLog | None = None,
) -> tuple[RunSummary, ConvergenceLoop, ExecutionCoordinator]:
    coordinator = ExecutionCoordinator(TaskGraph(), task_log)
    context = ExecutionContext(service)
    timeouts = timeouts or TimeoutPolicy(default_seconds=1.0, extended_seconds=1.0)
    loop = ConvergenceLoop(
        coordinator, context, max_iterations=max_iterations, timeouts=timeouts
    )

    async def _main() -> RunSummary:
        async with context:
            await coordinator.add_tasks(_plan())
            dispatcher = Dispatcher(coordinator, context, loop, timeouts=timeouts)
            return await dispatcher.run()

    return asyncio.run(_main()), loop, coordinator


def test_three_failures_converge_after_one_iteration(tmp_path: Path) -> None:
    service = FlakyRepoService({"login", "logout", "refresh"})
    task_log = TaskLog(tmp_path / "task-log.json")

    summary, loop, coordinator = _run(service, task_log=task_log)
    graph = coordinator.graph

    record = loop.record_for("T2")
    assert record is not None
    assert record.status == ConvergenceStatus.CONVERGED
    assert record.iteration == 1
    assert record.resolved_by == "T2.rerun-1"
    assert [entry.failed for entry in record.history] == [3, 0]
    assert record.fix_task_ids == ["T2.fix-1-1", "T2.fix-1-2", "T2.fix-1-3"]
    for fix_id in record.fix_task_ids:
        fix_task = graph.get(fix_id)
        assert fix_task.status == TaskStatus.COMPLETED
        assert fix_task.specialization == Specialization.FIXER
        assert fix_task.dependencies == []
    rerun = graph.get("T2.rerun-1")
    assert rerun.attempt == 1
    assert rerun.dependencies == ["T1"]
    assert rerun.description == "run the auth tests"
    assert graph.get("T3").dependencies == ["T2.rerun-1"]
    assert graph.get("T3").status == TaskStatus.COMPLETED

    assert summary.succeeded is True
    assert summary.failed_ids == ["T2"]
    assert summary.remediated_ids == ["T2"]
    assert summary.exhausted_groups == []

    snapshot = task_log.load()
    assert snapshot.convergence[0]["status"] == "converged"
    assert {task.id for task in snapshot.tasks} == {task.id for task in graph.tasks()}


def test_fix_tasks_share_the_fixer_channel_one_at_a_time() -> None:
    service = FlakyRepoService({"a", "b"})

    _, _, coordinator = _run(service)

    fixer_calls = [line for spec, line in service.calls if spec == Specialization.FIXER]
    assert len(fixer_calls) == 2
    assert all("fixer" in line for line in fixer_calls)
    fix_1 = coordinator.graph.get("T2.fix-1-1")
    fix_2 = coordinator.graph.get("T2.fix-1-2")
    assert datetime.fromisoformat(fix_1.ended_at) <= datetime.fromisoformat(fix_2.started_at)


def test_unresolvable_failures_exhaust_after_bound() -> None:
    service = FlakyRepoService({"login", "logout"}, fixable=False)

    summary, loop, coordinator = _run(service, max_iterations=2)

    record = loop.record_for("T2")
    assert record is not None
    assert record.status == ConvergenceStatus.FAILED
    assert record.to_dict()["status"] == "failed"
    assert record.iteration == 2
    assert len(record.history) == 3
    assert [failure.id for failure in record.remaining_failures] == ["login", "logout"]
    assert len(loop.errors) == 1
    error = loop.errors[0]
    assert isinstance(error, ConvergenceExhaustedError)
    assert error.group == "T2"
    assert "login" in str(error) and "logout" in str(error)

    assert summary.succeeded is False
    assert summary.exhausted_groups == ["T2"]
    assert summary.blocked_ids == ["T3"]
    assert "T2.rerun-2" in summary.failed_ids
    assert "T2.rerun-3" not in coordinator.graph


def test_zero_bound_exhausts_without_fixing() -> None:
    service = FlakyRepoService({"login"})

    summary, loop, coordinator = _run(service, max_iterations=0)

    assert loop.finished[0].status == ConvergenceStatus.FAILED
    assert loop.finished[0].fix_task_ids == []
    assert "T2.fix-1-1" not in coordinator.graph
    assert summary.succeeded is False


def test_timed_out_check_becomes_single_synthetic_failure() -> None:
    service = FlakyRepoService(set(), hang_tests=True)
    timeouts = TimeoutPolicy(default_seconds=1.0, extended_seconds=0.05)

    summary, loop, coordinator = _run(service, max_iterations=1, timeouts=timeouts)

    record = loop.record_for("T2")
    assert record is not None
    assert record.history[0].failure_ids == ["timeout"]
    fix_task = coordinator.graph.get("T2.fix-1-1")
    assert fix_task.metadata["failure_id"] == "timeout"
    assert "timed out" in fix_task.description
    assert "T2" in summary.timed_out_ids
    assert record.status == ConvergenceStatus.FAILED


def test_report_for_reuses_stored_report() -> None:
    coordinator = ExecutionCoordinator()
    loop = ConvergenceLoop(coordinator, ExecutionContext(FlakyRepoService(set())))
    task = Task(
        id="T9",
        description="check",
        specialization=Specialization.TESTER,
        checkable=True,
        status=TaskStatus.FAILED,
        error="1 of 2 checks failed: a",
        metadata={"report": {"passed": 1, "failed": 1, "failures": [{"id": "a"}]}},
    )

    report = loop.report_for(task)

    assert isinstance(report, CheckReport)
    assert report.failure_ids() == ["a"]
