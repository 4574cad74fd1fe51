from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from foreman.specialists import SpecialistProfile


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class EventKind(StrEnum):
    MESSAGE = "message"
    TOOL_START = "tool_start"
    IDLE = "idle"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in {EventKind.IDLE, EventKind.ERROR}


@dataclass(slots=True, frozen=True)
class AgentEvent:
    kind: EventKind
    content: str = ""

    @classmethod
    def message(cls, content: str) -> AgentEvent:
        return cls(EventKind.MESSAGE, content)

    @classmethod
    def tool_start(cls, name: str) -> AgentEvent:
        return cls(EventKind.TOOL_START, name)

    @classmethod
    def idle(cls, content: str = "") -> AgentEvent:
        return cls(EventKind.IDLE, content)

    @classmethod
    def error(cls, content: str) -> AgentEvent:
        return cls(EventKind.ERROR, content)


class AgentSession(ABC):
    """One conversation with the execution service, bound to a specialist profile."""

    @abstractmethod
    def submit(self, prompt: str) -> AsyncIterator[AgentEvent]:
        """Send a prompt and stream events until exactly one terminal event."""

    async def close(self) -> None:
        return None


class AgentExecutionService(ABC):
    name: str = "agent"

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def open_session(self, profile: SpecialistProfile) -> AgentSession:
        """Open a session for one specialization."""
