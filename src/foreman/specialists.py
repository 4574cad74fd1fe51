from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from foreman.tasks import Specialization

if TYPE_CHECKING:
    from foreman.tasks import Task

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}

CHECK_REPORT_MARKER = "Check report format:"
CHECK_REPORT_INSTRUCTIONS = f"""
{CHECK_REPORT_MARKER}
Finish with a single JSON object on its own line:
{{"passed": <int>, "failed": <int>, "skipped": <int>, "failures": [{{"id": "<test name>", "diagnostic": "<failure message>"}}]}}
List every failing check in "failures".
""".strip()

SYSTEM_PROMPTS: dict[Specialization, str] = {
    Specialization.SUPERVISOR: """
You are the Supervisor.
Break the objective into small tasks with explicit dependencies.
Assign each task to exactly one specialist.
""".strip(),
    Specialization.DEVELOPER: """
You are the Developer specialist.
Implement the requested change with small, testable edits.
Summarize the files you touched.
""".strip(),
    Specialization.TESTER: """
You are the Tester/QA specialist.
Design and run tests for happy path, edge cases, and failures.
Report clear pass/fail outcomes.
""".strip(),
    Specialization.FRONTEND: """
You are the Frontend specialist.
Build UI components and client-side behavior.
Keep accessibility and existing styling conventions intact.
""".strip(),
    Specialization.BACKEND: """
You are the Backend specialist.
Build server endpoints, services and integrations.
Validate inputs and report API changes.
""".strip(),
    Specialization.DATABASE: """
You are the Database specialist.
Design schemas, migrations and queries.
Keep migrations reversible.
""".strip(),
    Specialization.FIXER: """
You are the Fixer.
Analyze one failing check and change the code so that it passes.
Do not weaken or delete the check.
""".strip(),
}

DEFAULT_TOOLS: dict[Specialization, tuple[str, ...]] = {
    Specialization.SUPERVISOR: ("read_file", "search"),
    Specialization.TESTER: ("read_file", "run_command", "search", "write_file"),
}
DEFAULT_WRITE_TOOLS = ("edit_file", "read_file", "run_command", "search", "write_file")


def normalize_allowed_tools(allowed_tools: list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    if not allowed_tools:
        return ()
    normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
    unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
    if unknown:
        raise ValueError(
            "Tool policy rejected unknown tools for specialist profile: " + ", ".join(unknown)
        )
    return tuple(normalized)


@dataclass(slots=True, frozen=True)
class SpecialistProfile:
    specialization: Specialization
    system_prompt: str
    allowed_tools: tuple[str, ...] = field(default_factory=tuple)
    model: str | None = None


def build_profile(
    specialization: Specialization | str,
    *,
    model: str | None = None,
    allowed_tools: list[str] | None = None,
    system_prompt: str | None = None,
) -> SpecialistProfile:
    specialization = Specialization(specialization)
    tools = (
        allowed_tools
        if allowed_tools is not None
        else DEFAULT_TOOLS.get(specialization, DEFAULT_WRITE_TOOLS)
    )
    return SpecialistProfile(
        specialization=specialization,
        system_prompt=(system_prompt or SYSTEM_PROMPTS[specialization]).strip(),
        allowed_tools=normalize_allowed_tools(tools),
        model=model,
    )


def render_task_prompt(task: Task, profile: SpecialistProfile | None = None) -> str:
    header = f"Task {task.id} ({task.specialization.value}, priority {task.priority.value}"
    if task.attempt:
        header += f", attempt {task.attempt}"
    parts = [f"{header})", task.description.strip()]
    if profile is not None and profile.allowed_tools:
        parts.append("Allowed tools: " + ", ".join(profile.allowed_tools))
    if task.checkable:
        parts.append(CHECK_REPORT_INSTRUCTIONS)
    return "\n\n".join(parts)
