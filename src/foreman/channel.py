from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum

import structlog

from foreman.backends.base import (
    AgentExecutionService,
    AgentSession,
    BackendExecutionError,
    EventKind,
)
from foreman.specialists import SpecialistProfile, render_task_prompt
from foreman.tasks import Specialization, Task, TaskStatus

logger = structlog.get_logger(__name__)


class ChannelTimeoutError(RuntimeError):
    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Task '{task_id}' timed out after {timeout_seconds:g}s.")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class AgentError(RuntimeError):
    """Raised when the execution service reports an error for a task."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class OutcomeKind(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(slots=True, frozen=True)
class Outcome:
    task_id: str
    kind: OutcomeKind
    text: str
    timeout_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.COMPLETED

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.kind.value)

    def raise_for_status(self) -> str:
        if self.kind == OutcomeKind.TIMED_OUT:
            raise ChannelTimeoutError(self.task_id, self.timeout_seconds or 0.0)
        if self.kind == OutcomeKind.FAILED:
            raise AgentError(self.task_id, self.text)
        return self.text


@dataclass(slots=True, frozen=True)
class TimeoutPolicy:
    default_seconds: float = 300.0
    extended_seconds: float = 600.0
    extended: frozenset[Specialization] = frozenset({Specialization.TESTER, Specialization.FIXER})

    def for_specialization(self, specialization: Specialization | str) -> float:
        if Specialization(specialization) in self.extended:
            return self.extended_seconds
        return self.default_seconds


class ExecutionChannel:
    """Serialized lane to one service session.

    Submissions wait on a FIFO lock, so at most one task per specialization is
    talking to the session at any time.
    """

    def __init__(self, service: AgentExecutionService, profile: SpecialistProfile) -> None:
        self.service = service
        self.profile = profile
        self._lock = asyncio.Lock()
        self._session: AgentSession | None = None
        self.active_task_id: str | None = None
        self.submitted = 0

    @property
    def specialization(self) -> Specialization:
        return self.profile.specialization

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def _ensure_session(self) -> AgentSession:
        if self._session is None:
            self._session = await self.service.open_session(self.profile)
        return self._session

    async def _consume(self, task: Task) -> str:
        session = await self._ensure_session()
        prompt = render_task_prompt(task, self.profile)
        chunks: list[str] = []
        async with aclosing(session.submit(prompt)) as events:
            async for event in events:
                if event.kind == EventKind.MESSAGE:
                    chunks.append(event.content)
                elif event.kind == EventKind.TOOL_START:
                    logger.debug("channel_tool_start", task_id=task.id, tool=event.content)
                elif event.kind == EventKind.IDLE:
                    return "".join(chunks).strip()
                elif event.kind == EventKind.ERROR:
                    raise AgentError(task.id, event.content or "agent reported an error")
        raise AgentError(task.id, "agent stream ended without a terminal event")

    async def submit(
        self,
        task: Task,
        *,
        timeout_seconds: float,
        on_start: Callable[[], Awaitable[None]] | None = None,
    ) -> Outcome:
        async with self._lock:
            self.active_task_id = task.id
            self.submitted += 1
            log = logger.bind(task_id=task.id, specialization=self.specialization.value)
            try:
                if on_start is not None:
                    await on_start()
                try:
                    text = await asyncio.wait_for(self._consume(task), timeout_seconds)
                except TimeoutError:
                    log.warning("channel_timeout", timeout_seconds=timeout_seconds)
                    error = ChannelTimeoutError(task.id, timeout_seconds)
                    return Outcome(task.id, OutcomeKind.TIMED_OUT, str(error), timeout_seconds)
                except (AgentError, BackendExecutionError) as exc:
                    log.warning("channel_agent_error", error=str(exc))
                    return Outcome(task.id, OutcomeKind.FAILED, str(exc))
                except Exception as exc:
                    log.warning("channel_agent_error", error=str(exc), error_type=type(exc).__name__)
                    return Outcome(task.id, OutcomeKind.FAILED, f"{type(exc).__name__}: {exc}")
                log.debug("channel_completed", chars=len(text))
                return Outcome(task.id, OutcomeKind.COMPLETED, text)
            finally:
                self.active_task_id = None

    async def close(self) -> None:
        async with self._lock:
            if self._session is not None:
                await self._session.close()
                self._session = None
