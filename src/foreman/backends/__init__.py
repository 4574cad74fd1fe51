from foreman.backends.base import (
    AgentEvent,
    AgentExecutionService,
    AgentSession,
    BackendExecutionError,
    BackendProcessError,
    EventKind,
)
from foreman.backends.cli import CliAgentService
from foreman.backends.echo import EchoAgentService

BACKEND_KINDS = ("claude", "codex", "echo")

__all__ = [
    "BACKEND_KINDS",
    "AgentEvent",
    "AgentExecutionService",
    "AgentSession",
    "BackendExecutionError",
    "BackendProcessError",
    "CliAgentService",
    "EchoAgentService",
    "EventKind",
]
