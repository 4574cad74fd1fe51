import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from foreman.backends.base import AgentEvent, AgentExecutionService, AgentSession
from foreman.channel import ExecutionChannel
from foreman.coordinator import ExecutionCoordinator
from foreman.graph import CyclicDependencyError, DuplicateTaskError, TaskGraph
from foreman.specialists import SpecialistProfile, build_profile
from foreman.state import PersistenceWarning, TaskLog
from foreman.tasks import Specialization, Task, TaskStatus


class ReplySession(AgentSession):
    def __init__(self, reply: str) -> None:
        self.reply = reply

    async def submit(self, prompt: str) -> AsyncIterator[AgentEvent]:
        _ = prompt
        yield AgentEvent.message(self.reply)
        yield AgentEvent.idle()


class ReplyService(AgentExecutionService):
    def __init__(self, reply: str) -> None:
        self.reply = reply

    async def open_session(self, profile: SpecialistProfile) -> ReplySession:
        _ = profile
        return ReplySession(self.reply)


def _channel(reply: str, specialization=Specialization.DEVELOPER) -> ExecutionChannel:
    return ExecutionChannel(ReplyService(reply), build_profile(specialization))


def _task(task_id: str, *deps: str, **kwargs) -> Task:
    return Task(
        id=task_id,
        description=f"work for {task_id}",
        specialization=kwargs.pop("specialization", Specialization.DEVELOPER),
        dependencies=list(deps),
        **kwargs,
    )


def test_run_task_walks_lifecycle_and_snapshots_every_step(tmp_path: Path) -> None:
    task_log = TaskLog(tmp_path / "task-log.json")
    coordinator = ExecutionCoordinator(TaskGraph(), task_log)

    async def _run() -> Task:
        await coordinator.add_task(_task("T1"))
        assert await coordinator.claim("T1") is True
        return await coordinator.run_task("T1", _channel("built it"), 1.0)

    task = asyncio.run(_run())

    assert task.status == TaskStatus.COMPLETED
    assert task.result == "built it"
    assert task.started_at is not None
    assert task.ended_at is not None
    # add, claim, dispatched, running, completed
    assert task_log.revision == 5
    on_disk = json.loads(task_log.path.read_text(encoding="utf-8"))
    assert on_disk["tasks"][0]["status"] == "completed"
    assert on_disk["revision"] == 5


def test_claim_refuses_tasks_with_incomplete_dependencies() -> None:
    coordinator = ExecutionCoordinator()

    async def _run() -> bool:
        await coordinator.add_tasks([_task("A"), _task("B", "A")])
        return await coordinator.claim("B")

    assert asyncio.run(_run()) is False
    assert coordinator.graph.get("B").status == TaskStatus.PENDING


def test_add_tasks_is_all_or_nothing() -> None:
    coordinator = ExecutionCoordinator()

    async def _run() -> None:
        await coordinator.add_task(_task("A", "C"))
        await coordinator.add_tasks([_task("B"), _task("C", "A")])

    with pytest.raises(CyclicDependencyError):
        asyncio.run(_run())

    assert [task.id for task in coordinator.graph.tasks()] == ["A"]


def test_insert_plan_rejects_only_the_offending_tasks(tmp_path: Path) -> None:
    task_log = TaskLog(tmp_path / "task-log.json")
    coordinator = ExecutionCoordinator(TaskGraph(), task_log)
    plan = [
        _task("A", "C"),
        _task("B"),
        _task("C", "A"),
        _task("B"),
        _task("D", "B"),
    ]

    rejected = asyncio.run(coordinator.insert_plan(plan))

    assert [type(error) for error in rejected] == [CyclicDependencyError, DuplicateTaskError]
    assert [error.task_id for error in rejected] == ["C", "B"]
    assert [task.id for task in coordinator.graph.tasks()] == ["A", "B", "D"]
    assert coordinator.rejected == rejected
    assert [task.id for task in task_log.load().tasks] == ["A", "B", "D"]


def test_checkable_task_with_failures_is_marked_failed() -> None:
    coordinator = ExecutionCoordinator()
    report = {
        "passed": 4,
        "failed": 2,
        "skipped": 0,
        "failures": [
            {"id": "login works", "diagnostic": "expected 200"},
            {"id": "logout works", "diagnostic": "expected redirect"},
        ],
    }

    async def _run() -> Task:
        await coordinator.add_task(_task("T2", specialization=Specialization.TESTER, checkable=True))
        await coordinator.claim("T2")
        channel = _channel(f"ran tests\n{json.dumps(report)}", Specialization.TESTER)
        return await coordinator.run_task("T2", channel, 1.0)

    task = asyncio.run(_run())

    assert task.status == TaskStatus.FAILED
    assert task.error == "2 of 6 checks failed: login works, logout works"
    assert task.metadata["report"]["failed"] == 2


def test_checkable_task_without_report_is_marked_failed() -> None:
    coordinator = ExecutionCoordinator()

    async def _run() -> Task:
        await coordinator.add_task(_task("T2", specialization=Specialization.TESTER, checkable=True))
        await coordinator.claim("T2")
        return await coordinator.run_task("T2", _channel("all good, trust me"), 1.0)

    task = asyncio.run(_run())

    assert task.status == TaskStatus.FAILED
    assert "No check report" in (task.error or "")
    assert "report" not in task.metadata


def test_write_failure_returns_persistence_warning_and_keeps_state(tmp_path: Path) -> None:
    blocked_path = tmp_path / "task-log.json"
    blocked_path.mkdir()
    coordinator = ExecutionCoordinator(TaskGraph(), TaskLog(blocked_path))

    warning = asyncio.run(coordinator.add_task(_task("T1")))

    assert isinstance(warning, PersistenceWarning)
    assert isinstance(warning, UserWarning)
    assert "T1" in coordinator.graph
    assert coordinator.warnings == [warning]
    assert list(tmp_path.glob("*.tmp")) == []
