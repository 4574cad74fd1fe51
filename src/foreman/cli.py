from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

import click
import structlog

from foreman import __version__
from foreman.backends import (
    BACKEND_KINDS,
    AgentExecutionService,
    CliAgentService,
    EchoAgentService,
)
from foreman.channel import AgentError, ChannelTimeoutError, TimeoutPolicy
from foreman.config import (
    ConfigError,
    ForemanConfig,
    configure_logging,
    load_config,
    resolve_log_level,
    save_config,
)
from foreman.context import ExecutionContext
from foreman.convergence import ConvergenceLoop
from foreman.coordinator import ExecutionCoordinator
from foreman.dispatcher import Dispatcher, RunSummary
from foreman.graph import TaskGraph, TaskGraphError
from foreman.planning import (
    PlanError,
    build_decomposition_prompt,
    load_plan_file,
    parse_plan_lines,
)
from foreman.state import TaskLog, TaskLogError
from foreman.tasks import Specialization, Task

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG = "foreman.toml"
DEFAULT_REPORT = "foreman-report.json"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    task_log: TaskLog
    context: ExecutionContext
    coordinator: ExecutionCoordinator
    convergence: ConvergenceLoop
    timeouts: TimeoutPolicy


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _build_service(config: ForemanConfig, repo_root: Path) -> AgentExecutionService:
    if config.backend.kind == "echo":
        return EchoAgentService()
    return CliAgentService(
        config.backend.kind,
        binary=config.backend.binary or None,
        model=config.backend.model or None,
        working_directory=repo_root,
    )


def _load_config(
    repo_root: Path, config_value: str, backend: str | None
) -> tuple[Path, ForemanConfig]:
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.backend.kind = backend  # type: ignore[assignment]
    configure_logging(resolve_log_level(config), config.logging.format)
    return config_path, config


def _load_runtime(repo_root: Path, config_path: Path, config: ForemanConfig) -> Runtime:
    task_log = TaskLog(_resolve_path(repo_root, config.state.task_log))
    context = ExecutionContext(
        _build_service(config, repo_root), model=config.backend.model or None
    )
    coordinator = ExecutionCoordinator(TaskGraph(), task_log)
    timeouts = config.channels.timeout_policy()
    convergence = ConvergenceLoop(
        coordinator,
        context,
        max_iterations=config.convergence.max_iterations,
        fixer=config.convergence.fixer,
        timeouts=timeouts,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        task_log=task_log,
        context=context,
        coordinator=coordinator,
        convergence=convergence,
        timeouts=timeouts,
    )


async def _decompose(runtime: Runtime, objective: str) -> list[Task]:
    channel = runtime.context.channel(Specialization.SUPERVISOR)
    planning_task = Task(
        id="plan",
        description=build_decomposition_prompt(objective),
        specialization=Specialization.SUPERVISOR,
    )
    outcome = await channel.submit(
        planning_task,
        timeout_seconds=runtime.timeouts.for_specialization(Specialization.SUPERVISOR),
    )
    text = outcome.raise_for_status()
    tasks = parse_plan_lines(
        text, checkable_specializations=runtime.config.convergence.checkable_specializations
    )
    if not tasks:
        raise PlanError("Supervisor output contained no task lines.")
    logger.info("objective_decomposed", tasks=len(tasks))
    return tasks


async def _run_objective(
    runtime: Runtime, objective: str, planned: list[Task] | None, run_id: str | None
) -> RunSummary:
    async with runtime.context:
        tasks = planned if planned is not None else await _decompose(runtime, objective)
        await runtime.coordinator.insert_plan(tasks)
        dispatcher = Dispatcher(
            runtime.coordinator,
            runtime.context,
            runtime.convergence,
            timeouts=runtime.timeouts,
            objective=objective,
            run_id=run_id,
        )
        return await dispatcher.run()


@click.group()
@click.version_option(__version__, prog_name="foreman")
def cli() -> None:
    """Foreman CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_KINDS), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path, config = _load_config(repo_root, config_value, backend)
    save_config(config_path, config)
    click.echo(f"Initialized Foreman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.kind}")
    click.echo(f"Task log: {_resolve_path(repo_root, config.state.task_log)}")


@cli.command("run")
@click.argument("objective", required=False)
@click.option(
    "--objective-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON or TOML plan; skips supervisor decomposition.",
)
@click.option("--output", "output_value", default=DEFAULT_REPORT, show_default=True)
@click.option("--run-id", default=None)
@click.option("--backend", type=click.Choice(BACKEND_KINDS), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    objective: str | None,
    objective_file: Path | None,
    plan_path: Path | None,
    output_value: str,
    run_id: str | None,
    backend: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    if objective and objective_file:
        raise click.UsageError("Pass the objective inline or with --objective-file, not both.")
    if objective_file is not None:
        objective = objective_file.read_text(encoding="utf-8")
    objective = (objective or "").strip()
    if not objective and plan_path is None:
        raise click.UsageError("An objective or --plan is required.")

    config_path, config = _load_config(repo_root, config_value, backend)
    planned: list[Task] | None = None
    if plan_path is not None:
        try:
            planned = load_plan_file(
                plan_path, checkable_specializations=config.convergence.checkable_specializations
            )
        except PlanError as exc:
            raise click.ClickException(str(exc)) from exc
        objective = objective or f"plan {plan_path.name}"

    runtime = _load_runtime(repo_root, config_path, config)
    try:
        summary = asyncio.run(_run_objective(runtime, objective, planned, run_id))
    except (AgentError, ChannelTimeoutError, PlanError, TaskGraphError) as exc:
        raise click.ClickException(str(exc)) from exc

    output_path = _resolve_path(repo_root, output_value)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        json.dumps(summary.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
    )

    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Tasks: {summary.completed_tasks}/{summary.total_tasks} completed")
    if summary.failed_ids:
        click.echo(f"Failed: {', '.join(summary.failed_ids)}")
    if summary.timed_out_ids:
        click.echo(f"Timed out: {', '.join(summary.timed_out_ids)}")
    if summary.blocked_ids:
        click.echo(f"Blocked: {', '.join(summary.blocked_ids)}")
    if summary.rejected:
        click.echo(f"Rejected: {', '.join(item['task_id'] for item in summary.rejected)}")
    for error in runtime.convergence.errors:
        click.echo(f"Exhausted: {error}")
    if summary.warnings:
        click.echo(f"Persistence warnings: {len(summary.warnings)}")
    click.echo(f"Report: {output_path}")
    if not summary.succeeded:
        ctx.exit(1)


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    _, config = _load_config(repo_root, config_value, None)
    task_log = TaskLog(_resolve_path(repo_root, config.state.task_log))
    try:
        snapshot = task_log.load()
        graph = TaskGraph(snapshot.tasks)
    except (TaskLogError, TaskGraphError) as exc:
        raise click.ClickException(str(exc)) from exc
    payload: dict = {
        "task_log": str(task_log.path),
        "revision": snapshot.revision,
        "timestamp": snapshot.timestamp,
        "progress": graph.progress(),
    }
    if verbose:
        payload["tasks"] = [
            {
                "id": task.id,
                "specialization": task.specialization.value,
                "status": task.status.value,
                "attempt": task.attempt,
                "error": task.error,
            }
            for task in graph.tasks()
        ]
        payload["convergence"] = snapshot.convergence
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
