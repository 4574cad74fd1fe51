from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

from foreman.backends.base import AgentEvent, AgentExecutionService, AgentSession
from foreman.specialists import CHECK_REPORT_MARKER, SpecialistProfile
from foreman.tasks import Specialization

DRY_RUN_PLAN = (
    "T1: Implement the objective | priority: high | assignee: developer | depends: []\n"
    "T2: Verify the implementation | priority: medium | assignee: tester | depends: [T1]"
)


class EchoAgentSession(AgentSession):
    def __init__(self, profile: SpecialistProfile, *, delay_seconds: float = 0.0) -> None:
        self.profile = profile
        self.delay_seconds = delay_seconds
        self.prompts: list[str] = []

    def _reply(self, prompt: str) -> str:
        if CHECK_REPORT_MARKER in prompt:
            return json.dumps({"passed": 1, "failed": 0, "skipped": 0, "failures": []})
        if self.profile.specialization == Specialization.SUPERVISOR:
            return DRY_RUN_PLAN
        first_line = next((line for line in prompt.splitlines() if line.strip()), "")
        return f"echo[{self.profile.specialization.value}] {first_line}"

    async def submit(self, prompt: str) -> AsyncIterator[AgentEvent]:
        self.prompts.append(prompt)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        yield AgentEvent.message(self._reply(prompt))
        yield AgentEvent.idle()


class EchoAgentService(AgentExecutionService):
    """Dry-run service: answers every prompt without calling an agent."""

    name = "echo"

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds
        self.sessions: list[EchoAgentSession] = []

    async def open_session(self, profile: SpecialistProfile) -> EchoAgentSession:
        session = EchoAgentSession(profile, delay_seconds=self.delay_seconds)
        self.sessions.append(session)
        return session
