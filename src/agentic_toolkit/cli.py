from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from agentic_toolkit import __version__
from agentic_toolkit.backends import (
    BackendExecutionError,
    CommandBackend,
    EchoBackend,
    ExecutionBackend,
    ResilientBackend,
    RetryPolicy,
)
from agentic_toolkit.complexity import analyze
from agentic_toolkit.config import ConfigError, ToolkitConfig, load_config, save_config
from agentic_toolkit.executor import AutoExecutor, ExecutionOptions, RunSummary
from agentic_toolkit.planning import parse_plan
from agentic_toolkit.resolver import blocked_tasks, dependency_report, is_satisfied, next_task
from agentic_toolkit.rules import PolicyBlockedError, RulesEngine
from agentic_toolkit.state import (
    ExecutionLog,
    InvalidTransitionError,
    LeaseError,
    LoopAlreadyRunningError,
    RunLease,
    StoreError,
    TaskStore,
)
from agentic_toolkit.state.task_store import TASK_PRIORITIES, TASK_STATUSES

logger = logging.getLogger(__name__)

CONFIG_OPTION_DEFAULT = "agentic.toml"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: ToolkitConfig
    store: TaskStore
    execution_log: ExecutionLog


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def _load_runtime(root: Path, config_value: str) -> Runtime:
    config_path = _resolve_path(root, config_value)
    try:
        config = load_config(config_path)
    except (ConfigError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration in {config_path}: {exc}") from exc
    configure_logging(config.logging.level)
    store = TaskStore(_resolve_path(root, config.store.tasks_file))
    store.load()
    if store.last_load_error is not None:
        click.echo(f"Warning: {store.last_load_error}; treating task list as empty.", err=True)
    execution_log = ExecutionLog(
        _resolve_path(root, config.store.log_file),
        capacity=config.store.log_capacity,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        execution_log=execution_log,
    )


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.info("backend event: %s", event)


def _build_backend(config: ToolkitConfig, root: Path) -> ExecutionBackend:
    executor_config = config.executor
    backend: ExecutionBackend
    if executor_config.backend == "command":
        backend = CommandBackend(
            executor_config.command,
            working_directory=root,
            event_hook=_log_backend_event,
        )
    else:
        backend = EchoBackend()
    if executor_config.task_timeout_seconds > 0 or executor_config.max_retries > 0:
        backend = ResilientBackend(
            backend,
            RetryPolicy(
                max_retries=max(0, executor_config.max_retries),
                backoff_seconds=max(0.0, executor_config.retry_backoff_seconds),
                timeout_seconds=executor_config.task_timeout_seconds,
            ),
            event_hook=_log_backend_event,
        )
    return backend


def _build_executor(runtime: Runtime) -> AutoExecutor:
    config = runtime.config
    # Outlive a single timed-out task even when heartbeats stall.
    lease_ttl = max(config.store.lease_ttl_seconds, config.executor.task_timeout_seconds * 2.0)
    return AutoExecutor(
        runtime.store,
        _build_backend(config, runtime.root),
        runtime.execution_log,
        gate=RulesEngine(disabled=list(config.rules.disabled)),
        lease=RunLease(
            _resolve_path(runtime.root, config.store.lease_file),
            ttl_seconds=lease_ttl,
        ),
        workspace_root=runtime.root,
    )


async def _run_with_signals(executor: AutoExecutor, options: ExecutionOptions) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, executor.stop)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    try:
        return await executor.run(options)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(
        f"Completed: {len(summary.completed)}  Failed: {len(summary.failed)}  "
        f"Iterations: {summary.iterations}  Stopped: {summary.stop_reason}"
    )
    if summary.blocked:
        click.echo("Not runnable yet:")
        for item in summary.blocked:
            click.echo(f"  {item.describe()}")


@click.group()
@click.version_option(__version__, prog_name="agentic-toolkit")
def cli() -> None:
    """Agentic toolkit task scheduler."""


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def init_command(force: bool, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    if config_path.exists() and not force:
        click.echo(f"Config already exists: {config_path}")
        return
    config = ToolkitConfig.default()
    save_config(config_path, config)
    click.echo(f"Wrote {config_path}")
    click.echo(f"Tasks file: {config.store.tasks_file}")
    click.echo(f"Execution log: {config.store.log_file}")


@cli.command("plan")
@click.argument("plan_file", default="plan.md")
@click.option("--force", is_flag=True, default=False, help="Replace an existing task list.")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def plan_command(plan_file: str, force: bool, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, config_value)
    plan_path = _resolve_path(root, plan_file)
    if not plan_path.exists():
        raise click.ClickException(f"Plan file not found: {plan_path}")
    if len(runtime.store) and not force:
        raise click.ClickException(
            f"{runtime.store.path.name} already has {len(runtime.store)} task(s); use --force."
        )
    document = parse_plan(plan_path.read_text(encoding="utf-8"))
    if not document["phases"]:
        raise click.ClickException(f"No tasks found in {plan_path}")
    try:
        runtime.store.replace_document(document)
    except StoreError as exc:
        raise click.ClickException(f"State error: {exc}") from exc
    click.echo(f"Generated {len(runtime.store)} task(s) in {runtime.store.path}")


@cli.command("next")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def next_command(config_value: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    task = next_task(runtime.store)
    if task is not None:
        click.echo(f"Next task: {task.id} {task.title}")
        click.echo(f"  priority={task.priority} agent={task.agent_type or '-'}")
        if task.description:
            click.echo(f"  {task.description}")
        return
    blocked = blocked_tasks(runtime.store)
    if not blocked:
        click.echo("No pending tasks.")
        return
    click.echo("No runnable task. Not runnable yet:")
    for item in blocked:
        click.echo(f"  {item.describe()}")


@cli.command("list")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--priority", type=click.Choice(TASK_PRIORITIES), default=None)
@click.option("--phase", default=None, help="Phase id or name.")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def list_command(
    status: str | None, priority: str | None, phase: str | None, config_value: str
) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    tasks = runtime.store.list_tasks(status=status, priority=priority, phase=phase)
    if not tasks:
        click.echo("No tasks found.")
        return
    for task in tasks:
        deps = f" <- {','.join(task.dependencies)}" if task.dependencies else ""
        click.echo(f"{task.id:<8} {task.status:<11} {task.priority:<8} {task.title}{deps}")
    stats = runtime.store.stats()
    click.echo(
        f"{stats['completed']}/{stats['total']} completed ({stats['completion_rate']}%)"
    )


@cli.command("update")
@click.argument("task_id")
@click.argument("status", type=click.Choice(TASK_STATUSES))
@click.option("--force", is_flag=True, default=False, help="Skip lifecycle checks.")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def update_command(task_id: str, status: str, force: bool, config_value: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    store = runtime.store
    task = store.get(task_id)
    if (
        task is not None
        and status == "in_progress"
        and not force
        and not is_satisfied(task, store)
    ):
        waiting = [
            dep
            for dep in task.dependencies
            if (dep_task := store.get(dep)) is None or dep_task.status != "completed"
        ]
        raise click.ClickException(
            f"Not runnable yet: task {task_id} is waiting on {', '.join(waiting)}"
        )
    try:
        updated = store.update_task_status(task_id, status, force=force)
    except InvalidTransitionError as exc:
        raise click.ClickException(f"State error: {exc} Use --force to override.") from exc
    except StoreError as exc:
        raise click.ClickException(f"State error: {exc}") from exc
    click.echo(f"Updated {updated.id} -> {updated.status}")


@cli.command("analyze")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def analyze_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    report = analyze(runtime.store.tasks)
    dependencies = dependency_report(runtime.store)
    if as_json:
        payload = {
            "complexity": report.to_dict(),
            "dependencies": dependencies,
            "stats": runtime.store.stats(),
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    click.echo(f"Complexity: {report.score} ({report.level})")
    click.echo(f"Tasks: {report.total_tasks}  High priority: {report.high_priority_tasks}")
    click.echo(f"Longest dependency chain: {dependencies['longest_chain']}")
    if dependencies["cycles"]:
        click.echo(f"Dependency cycles: {', '.join(dependencies['cycles'])}")
    for task_id, missing in dependencies["missing_dependencies"].items():
        click.echo(f"Missing dependencies for {task_id}: {', '.join(missing)}")
    click.echo("Recommendations:")
    for recommendation in report.recommendations:
        click.echo(f"  - {recommendation}")


@cli.command("auto")
@click.option("--parallel", is_flag=True, default=False, help="Select independent batches.")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--delay", "delay_ms", type=click.IntRange(min=0), default=None, help="Delay in ms.")
@click.option("--no-rules", is_flag=True, default=False, help="Skip the policy gate.")
@click.option("--continue-on-error", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def auto_command(
    parallel: bool,
    max_iterations: int | None,
    delay_ms: int | None,
    no_rules: bool,
    continue_on_error: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    options = ExecutionOptions.from_config(runtime.config.executor)
    if parallel:
        options.parallel_execution = True
    if max_iterations is not None:
        options.max_iterations = max_iterations
    if delay_ms is not None:
        options.delay_between_tasks_ms = delay_ms
    if no_rules:
        options.rules_check = False
    if continue_on_error:
        options.continue_on_error = True

    executor = _build_executor(runtime)
    try:
        summary = asyncio.run(_run_with_signals(executor, options))
    except LoopAlreadyRunningError as exc:
        raise click.ClickException(f"State error: {exc}") from exc
    except (PolicyBlockedError, BackendExecutionError) as exc:
        if executor.last_summary is not None:
            _echo_summary(executor.last_summary)
        raise click.ClickException(f"Task ran and failed: {exc}") from exc
    except (StoreError, LeaseError) as exc:
        raise click.ClickException(f"State error: {exc}") from exc
    _echo_summary(summary)


@cli.command("log")
@click.option("--type", "entry_type", type=click.Choice(["start", "complete", "fail", "error"]))
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def log_command(entry_type: str | None, limit: int, config_value: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    entries = runtime.execution_log.entries(entry_type=entry_type)
    if not entries:
        click.echo("No execution log entries.")
        return
    for entry in entries[-limit:]:
        task_id = entry.metadata.get("task_id", "-")
        detail = entry.metadata.get("error", "")
        line = f"{entry.timestamp} {entry.type:<8} {task_id:<8} {entry.message}"
        click.echo(f"{line} :: {detail}" if detail else line)


@cli.command("report")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def report_command(config_value: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    click.echo(json.dumps(runtime.execution_log.report(), ensure_ascii=False, indent=2))


@cli.command("check")
@click.argument("paths", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def check_command(paths: tuple[Path, ...], config_value: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    engine = RulesEngine(disabled=list(runtime.config.rules.disabled))
    blocking = 0
    for path in paths:
        for violation in engine.validate_file(path):
            if violation.action == "block":
                blocking += 1
            click.echo(
                f"{violation.file}:{violation.line} [{violation.action}] "
                f"{violation.rule_id}: {violation.description}"
            )
    if blocking:
        raise click.ClickException(f"{blocking} blocking violation(s) found.")
    click.echo("No blocking violations.")
