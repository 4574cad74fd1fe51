from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import structlog

from foreman.backends.base import (
    AgentEvent,
    AgentExecutionService,
    AgentSession,
    BackendProcessError,
)
from foreman.specialists import SpecialistProfile

logger = structlog.get_logger(__name__)

SUPPORTED_FLAVORS = ("claude", "codex")
CODEX_TOOL_ITEMS = {"command_execution", "mcp_tool_call", "file_change", "web_search"}


def _extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type", "text") == "text":
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return _extract_content(message)

    return ""


def _appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def _error_text(payload: dict[str, Any], fallback: str) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    for key in ("message", "result"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return fallback


def claude_events(payload: dict[str, Any]) -> list[AgentEvent]:
    """Map one ``claude --output-format stream-json`` line to events."""
    event_type = str(payload.get("type", ""))
    if event_type == "result":
        subtype = str(payload.get("subtype", ""))
        if payload.get("is_error") or subtype.startswith("error"):
            return [AgentEvent.error(_error_text(payload, subtype or "claude run failed"))]
        result = payload.get("result")
        return [AgentEvent.idle(result if isinstance(result, str) else "")]
    if event_type == "assistant":
        message = payload.get("message")
        events: list[AgentEvent] = []
        items = message.get("content") if isinstance(message, dict) else None
        if isinstance(items, list):
            for item in items:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "tool_use":
                    events.append(AgentEvent.tool_start(str(item.get("name", "tool"))))
                elif item.get("type") == "text" and isinstance(item.get("text"), str):
                    events.append(AgentEvent.message(item["text"]))
            return events
        content = _extract_content(payload)
        return [AgentEvent.message(content)] if content else []
    if event_type in {"system", "user"}:
        return []
    if event_type == "error":
        return [AgentEvent.error(_error_text(payload, "claude reported an error"))]
    content = _extract_content(payload)
    return [AgentEvent.message(content)] if content else []


def codex_events(payload: dict[str, Any]) -> list[AgentEvent]:
    """Map one ``codex exec --json`` line to events."""
    event_type = str(payload.get("type", ""))
    item = payload.get("item")
    if event_type == "item.started" and isinstance(item, dict):
        item_type = str(item.get("type", ""))
        if item_type in CODEX_TOOL_ITEMS:
            return [AgentEvent.tool_start(str(item.get("command") or item_type))]
        return []
    if event_type == "item.completed" and isinstance(item, dict):
        if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
            return [AgentEvent.message(item["text"])]
        return []
    if event_type == "turn.completed":
        return [AgentEvent.idle()]
    if event_type in {"turn.failed", "error"}:
        return [AgentEvent.error(_error_text(payload, "codex run failed"))]
    if event_type.startswith(("thread.", "turn.", "item.")):
        return []
    content = _extract_content(payload)
    return [AgentEvent.message(content)] if content else []


class CliAgentSession(AgentSession):
    def __init__(self, service: CliAgentService, profile: SpecialistProfile) -> None:
        self.service = service
        self.profile = profile

    def build_command(self, prompt: str) -> list[str]:
        service = self.service
        model = self.profile.model or service.model
        if service.flavor == "claude":
            command = [
                service.binary,
                "-p",
                prompt,
                "--output-format",
                "stream-json",
                "--verbose",
                "--append-system-prompt",
                self.profile.system_prompt,
            ]
            if model:
                command.extend(["--model", model])
            return command

        command = [
            service.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(self.profile.system_prompt, ensure_ascii=False)}",
        ]
        if model:
            command.extend(["-m", model])
        command.append(prompt)
        return command

    def _events(self, payload: dict[str, Any]) -> list[AgentEvent]:
        if self.service.flavor == "claude":
            return claude_events(payload)
        return codex_events(payload)

    async def submit(self, prompt: str) -> AsyncIterator[AgentEvent]:
        command = self.build_command(prompt)
        log = logger.bind(
            backend=self.service.flavor, specialization=self.profile.specialization.value
        )
        log.debug("cli_session_start", command=command[:2])
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.service.working_directory) if self.service.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.service.flavor} binary not found: {self.service.binary}",
                backend=self.service.flavor,
            ) from exc
        except OSError as exc:
            raise BackendProcessError(
                f"{self.service.flavor} process could not start: {exc}",
                backend=self.service.flavor,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.service.flavor} backend did not expose stdout.",
                backend=self.service.flavor,
            )

        stderr_reader = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    payload = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if _appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    log.debug("cli_json_parse_fallback", line=line[:200])
                    continue
                if not isinstance(payload, dict):
                    continue

                for event in self._events(payload):
                    yield event
                    if event.kind.is_terminal:
                        return

            if parse_buffer:
                log.debug("cli_json_buffer_flush", bytes=len(parse_buffer))

            return_code = await process.wait()
            stderr_output = ""
            if stderr_reader is not None:
                stderr_output = (await stderr_reader).decode("utf-8", errors="replace").strip()
            log.debug("cli_session_exit", exit_code=return_code)
            if return_code != 0:
                yield AgentEvent.error(
                    f"{self.service.flavor} backend failed with exit code "
                    f"{return_code}: {stderr_output}"
                )
                return
            yield AgentEvent.idle()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if stderr_reader is not None and not stderr_reader.done():
                stderr_reader.cancel()


class CliAgentService(AgentExecutionService):
    """Runs a coding-agent CLI once per prompt and maps its JSON lines to events."""

    def __init__(
        self,
        flavor: str = "claude",
        *,
        binary: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> None:
        if flavor not in SUPPORTED_FLAVORS:
            raise ValueError(f"Unsupported CLI backend: {flavor}")
        self.flavor = flavor
        self.name = flavor
        self.binary = binary or flavor
        self.model = model
        self.working_directory = working_directory

    async def open_session(self, profile: SpecialistProfile) -> CliAgentSession:
        return CliAgentSession(self, profile)
