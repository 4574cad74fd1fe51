from __future__ import annotations

import json
import re
import tomllib
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog

from foreman.tasks import Priority, Specialization, Task

logger = structlog.get_logger(__name__)

PLAN_LINE_PATTERN = re.compile(r"^\s*(?:[-*]\s*)?(?P<id>[A-Za-z][\w.-]*)\s*:\s*(?P<rest>.*\|.*)$")
FIELD_PATTERN = re.compile(r"^(?P<key>[A-Za-z_ ]+?)\s*:\s*(?P<value>.*)$")
FIELD_ALIASES = {
    "priority": "priority",
    "assignee": "specialization",
    "assigned": "specialization",
    "assigned_to": "specialization",
    "specialization": "specialization",
    "depends": "dependencies",
    "depends_on": "dependencies",
    "dependencies": "dependencies",
}
DEFAULT_CHECKABLE = (Specialization.TESTER,)


class PlanError(ValueError):
    """Raised when a plan document cannot be turned into tasks."""


def build_decomposition_prompt(objective: str) -> str:
    specializations = ", ".join(
        spec.value for spec in Specialization if spec != Specialization.SUPERVISOR
    )
    return f"""
Decompose the objective below into concrete development tasks.

Objective:
{objective.strip()}

Provide one line per task, numbered T1, T2, T3, ... in this exact format:
T1: <description> | priority: high | assignee: developer | depends: []
T2: <description> | priority: medium | assignee: tester | depends: [T1]

Priority is one of high, medium, low.
Assignee is one of {specializations}.
Depends lists the ids that must finish first.
""".strip()


def _parse_dependencies(raw: str) -> list[str]:
    cleaned = raw.strip().strip("[]")
    return [part.strip().strip("'\"") for part in cleaned.split(",") if part.strip().strip("'\"")]


def _coerce_specialization(value: Any) -> Specialization:
    try:
        return Specialization(str(value).strip().lower())
    except ValueError as exc:
        raise PlanError(f"Unknown specialization: {value}") from exc


def _coerce_priority(value: Any) -> Priority:
    try:
        return Priority(str(value).strip().lower())
    except ValueError as exc:
        raise PlanError(f"Unknown priority: {value}") from exc


def _parse_line(task_id: str, rest: str) -> dict[str, Any]:
    segments = [segment.strip() for segment in rest.split("|")]
    entry: dict[str, Any] = {"id": task_id, "description": segments[0]}
    for segment in segments[1:]:
        if not segment:
            continue
        match = FIELD_PATTERN.match(segment)
        key = None
        value = segment
        if match:
            key = FIELD_ALIASES.get(match.group("key").strip().lower().replace(" ", "_"))
            if key is not None:
                value = match.group("value")
        if key is None:
            lowered = segment.lower()
            if lowered in {p.value for p in Priority}:
                key = "priority"
            elif lowered in {s.value for s in Specialization}:
                key = "specialization"
            elif segment.startswith("["):
                key = "dependencies"
            else:
                continue
        if key == "dependencies":
            entry["dependencies"] = _parse_dependencies(value)
        else:
            entry[key] = value.strip()
    return entry


def parse_plan_lines(
    text: str,
    *,
    checkable_specializations: Iterable[Specialization | str] = DEFAULT_CHECKABLE,
) -> list[Task]:
    """Parse ``T1: description | priority: high | assignee: developer | depends: [T0]`` lines."""
    entries: list[dict[str, Any]] = []
    seen: set[str] = set()
    for raw_line in text.splitlines():
        match = PLAN_LINE_PATTERN.match(raw_line)
        if not match:
            continue
        entry = _parse_line(match.group("id"), match.group("rest"))
        if not entry["description"] or entry["id"] in seen:
            logger.debug("plan_line_skipped", line=raw_line.strip()[:200])
            continue
        entry.setdefault("specialization", Specialization.DEVELOPER.value)
        try:
            _coerce_specialization(entry["specialization"])
            _coerce_priority(entry.get("priority", Priority.MEDIUM.value))
        except PlanError as exc:
            logger.warning("plan_line_skipped", line=raw_line.strip()[:200], error=str(exc))
            continue
        seen.add(entry["id"])
        entries.append(entry)
    return tasks_from_entries(entries, checkable_specializations=checkable_specializations)


def tasks_from_entries(
    entries: Iterable[dict[str, Any]],
    *,
    checkable_specializations: Iterable[Specialization | str] = DEFAULT_CHECKABLE,
) -> list[Task]:
    checkable_default = {Specialization(spec) for spec in checkable_specializations}
    tasks: list[Task] = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise PlanError(f"Plan entry {index} must be a table/object.")
        task_id = str(entry.get("id") or "").strip()
        if not task_id:
            raise PlanError(f"Plan entry {index} has no id.")
        description = str(entry.get("description") or "").strip()
        if not description:
            raise PlanError(f"Plan entry '{task_id}' has no description.")
        raw_specialization = (
            entry.get("specialization") or entry.get("assignee") or entry.get("assigned")
        )
        if raw_specialization is None:
            raise PlanError(f"Plan entry '{task_id}' has no specialization.")
        specialization = _coerce_specialization(raw_specialization)
        dependencies = entry.get("dependencies", entry.get("depends", []))
        if isinstance(dependencies, str):
            dependencies = _parse_dependencies(dependencies)
        if not isinstance(dependencies, list):
            raise PlanError(f"Plan entry '{task_id}' has invalid dependencies.")
        checkable = entry.get("checkable")
        tasks.append(
            Task(
                id=task_id,
                description=description,
                specialization=specialization,
                priority=_coerce_priority(entry.get("priority") or Priority.MEDIUM.value),
                dependencies=[str(dep) for dep in dependencies],
                checkable=(
                    specialization in checkable_default if checkable is None else bool(checkable)
                ),
            )
        )
    return tasks


def load_plan_file(
    path: Path,
    *,
    checkable_specializations: Iterable[Specialization | str] = DEFAULT_CHECKABLE,
) -> list[Task]:
    if not path.exists():
        raise PlanError(f"Plan file not found: {path}")
    raw_text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".toml":
            document: Any = tomllib.loads(raw_text)
        else:
            document = json.loads(raw_text)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise PlanError(f"Plan file is not valid: {path}: {exc}") from exc

    if isinstance(document, dict):
        entries = document.get("tasks")
    else:
        entries = document
    if not isinstance(entries, list) or not entries:
        raise PlanError(f"Plan file has no tasks: {path}")
    return tasks_from_entries(entries, checkable_specializations=checkable_specializations)
