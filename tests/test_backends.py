import asyncio
from pathlib import Path
from typing import Any

import pytest

from foreman.backends.base import AgentEvent, BackendProcessError, EventKind
from foreman.backends.cli import CliAgentService, claude_events, codex_events
from foreman.backends.echo import EchoAgentService
from foreman.specialists import CHECK_REPORT_INSTRUCTIONS, build_profile
from foreman.tasks import Specialization


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeProcess:
    def __init__(self, lines: list[bytes], *, exit_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self._exit_code = exit_code
        self.killed = False

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = self._exit_code
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> list[tuple]:
    calls: list[tuple] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        calls.append((args, kwargs))
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return calls


def _collect(service, prompt: str = "Task T1", specialization=Specialization.DEVELOPER):
    async def _run() -> list[AgentEvent]:
        session = await service.open_session(build_profile(specialization))
        return [event async for event in session.submit(prompt)]

    return asyncio.run(_run())


def test_claude_build_command_shape() -> None:
    service = CliAgentService("claude", model="claude-sonnet-4-5", working_directory=Path("."))
    session = asyncio.run(service.open_session(build_profile(Specialization.TESTER)))

    command = session.build_command("run the tests")

    assert command[0:3] == ["claude", "-p", "run the tests"]
    assert "stream-json" in command
    assert "--verbose" in command
    assert command[command.index("--append-system-prompt") + 1].startswith("You are the Tester")
    assert command[-2:] == ["--model", "claude-sonnet-4-5"]


def test_codex_build_command_shape() -> None:
    service = CliAgentService("codex", binary="/opt/codex")
    profile = build_profile(Specialization.FIXER, model="gpt-5-codex")
    session = asyncio.run(service.open_session(profile))

    command = session.build_command("fix it")

    assert command[0:3] == ["/opt/codex", "exec", "--json"]
    assert any(part.startswith("instructions=") for part in command)
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert command[-1] == "fix it"


def test_unknown_flavor_is_rejected() -> None:
    with pytest.raises(ValueError):
        CliAgentService("gemini")


def test_claude_stream_lines_map_to_events() -> None:
    assistant = {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Running tests"},
                {"type": "tool_use", "name": "Bash", "input": {"command": "npm test"}},
            ]
        },
    }

    assert claude_events({"type": "system", "subtype": "init"}) == []
    assert claude_events(assistant) == [
        AgentEvent.message("Running tests"),
        AgentEvent.tool_start("Bash"),
    ]
    assert claude_events({"type": "result", "subtype": "success", "result": "ok"}) == [
        AgentEvent.idle("ok")
    ]
    failed = claude_events({"type": "result", "subtype": "error_max_turns", "is_error": True})
    assert failed == [AgentEvent.error("error_max_turns")]


def test_codex_stream_lines_map_to_events() -> None:
    assert codex_events({"type": "thread.started", "thread_id": "abc"}) == []
    assert codex_events(
        {"type": "item.started", "item": {"type": "command_execution", "command": "pytest"}}
    ) == [AgentEvent.tool_start("pytest")]
    assert codex_events(
        {"type": "item.completed", "item": {"type": "agent_message", "text": "All green"}}
    ) == [AgentEvent.message("All green")]
    assert codex_events({"type": "turn.completed", "usage": {}}) == [AgentEvent.idle()]
    assert codex_events({"type": "turn.failed", "error": {"message": "quota"}}) == [
        AgentEvent.error("quota")
    ]


def test_cli_session_streams_until_terminal_event(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"hel"}]}}\n',
            b"noise-before-json\n",
            b'{"type":"assistant","message":{"content":\n',
            b'[{"type":"text","text":"lo"}]}}\n',
            b'{"type":"result","subtype":"success","result":"hello"}\n',
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"late"}]}}\n',
        ]
    )
    calls = _patch_process(monkeypatch, process)

    events = _collect(CliAgentService("claude", working_directory=Path("/tmp")))

    assert [event.kind for event in events] == [
        EventKind.MESSAGE,
        EventKind.MESSAGE,
        EventKind.IDLE,
    ]
    assert "".join(event.content for event in events[:2]) == "hello"
    assert process.killed is True
    assert calls[0][1]["cwd"] == "/tmp"


def test_cli_session_reports_nonzero_exit_as_error(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [b'{"type":"item.completed","item":{"type":"agent_message","text":"hi"}}\n'],
        exit_code=2,
        stderr=b"auth expired\n",
    )
    _patch_process(monkeypatch, process)

    events = _collect(CliAgentService("codex"))

    assert events[0] == AgentEvent.message("hi")
    assert events[-1].kind == EventKind.ERROR
    assert "exit code 2" in events[-1].content
    assert "auth expired" in events[-1].content


def test_cli_session_clean_exit_without_terminal_line_is_idle(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _patch_process(monkeypatch, FakeProcess([b'{"type":"turn.started"}\n']))

    events = _collect(CliAgentService("codex"))

    assert events == [AgentEvent.idle()]


def test_missing_binary_raises_process_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendProcessError) as excinfo:
        _collect(CliAgentService("claude", binary="claude-missing"))
    assert excinfo.value.backend == "claude"


def test_echo_service_reports_passing_checks_and_dry_run_plans() -> None:
    service = EchoAgentService()

    check = _collect(service, f"Task T2\n\n{CHECK_REPORT_INSTRUCTIONS}", Specialization.TESTER)
    plan = _collect(service, "Decompose", Specialization.SUPERVISOR)
    work = _collect(service, "Task T1 (developer)\n\nbuild it")

    assert '"failed": 0' in check[0].content
    assert check[-1].kind == EventKind.IDLE
    assert plan[0].content.startswith("T1: ")
    assert work[0].content == "echo[developer] Task T1 (developer)"
    assert len(service.sessions) == 3


def test_unstartable_binary_raises_process_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise OSError(7, "Argument list too long")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendProcessError) as excinfo:
        _collect(CliAgentService("codex"))
    assert "Argument list too long" in str(excinfo.value)


class GatedStdout(FakeStdout):
    """Emits its lines only once stderr has been drained."""

    def __init__(self, lines: list[bytes], drained: asyncio.Event) -> None:
        super().__init__(lines)
        self.drained = drained

    async def __anext__(self) -> bytes:
        await self.drained.wait()
        return await super().__anext__()


class DrainTrackingStderr(FakeStderr):
    def __init__(self, data: bytes, drained: asyncio.Event) -> None:
        super().__init__(data)
        self.drained = drained

    async def read(self) -> bytes:
        self.drained.set()
        return await super().read()


def test_stderr_is_drained_while_stdout_streams(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _run() -> list[AgentEvent]:
        drained = asyncio.Event()
        process = FakeProcess([], exit_code=1)
        process.stdout = GatedStdout([b'{"type":"turn.started"}\n'], drained)
        process.stderr = DrainTrackingStderr(b"x" * 70000, drained)
        _patch_process(monkeypatch, process)
        session = await CliAgentService("codex").open_session(build_profile("developer"))
        return [event async for event in session.submit("go")]

    events = asyncio.run(asyncio.wait_for(_run(), 2.0))

    assert events[-1].kind == EventKind.ERROR
    assert "exit code 1" in events[-1].content
