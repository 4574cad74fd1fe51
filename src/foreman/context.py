from __future__ import annotations

from collections.abc import Mapping

import structlog

from foreman.backends.base import AgentExecutionService
from foreman.channel import ExecutionChannel
from foreman.specialists import SpecialistProfile, build_profile
from foreman.tasks import Specialization

logger = structlog.get_logger(__name__)


class ExecutionContext:
    """Owns the execution service and one lazily created channel per specialization."""

    def __init__(
        self,
        service: AgentExecutionService,
        *,
        profiles: Mapping[Specialization, SpecialistProfile] | None = None,
        model: str | None = None,
    ) -> None:
        self.service = service
        self.model = model
        self._profiles = dict(profiles or {})
        self._channels: dict[Specialization, ExecutionChannel] = {}
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def channels(self) -> dict[Specialization, ExecutionChannel]:
        return dict(self._channels)

    async def open(self) -> ExecutionContext:
        if not self._opened:
            await self.service.start()
            self._opened = True
            logger.debug("execution_context_opened", backend=self.service.name)
        return self

    def profile(self, specialization: Specialization | str) -> SpecialistProfile:
        specialization = Specialization(specialization)
        profile = self._profiles.get(specialization)
        if profile is None:
            profile = build_profile(specialization, model=self.model)
            self._profiles[specialization] = profile
        return profile

    def channel(self, specialization: Specialization | str) -> ExecutionChannel:
        if not self._opened:
            raise RuntimeError("Execution context is not open.")
        specialization = Specialization(specialization)
        channel = self._channels.get(specialization)
        if channel is None:
            channel = ExecutionChannel(self.service, self.profile(specialization))
            self._channels[specialization] = channel
            logger.debug("channel_created", specialization=specialization.value)
        return channel

    async def close(self) -> None:
        if not self._opened:
            return
        try:
            for channel in self._channels.values():
                await channel.close()
        finally:
            self._channels.clear()
            self._opened = False
            await self.service.stop()
            logger.debug("execution_context_closed", backend=self.service.name)

    async def __aenter__(self) -> ExecutionContext:
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
