import json
from pathlib import Path

from click.testing import CliRunner

from agentic_toolkit.backends import ExecutionBackend, ExecutionResult
from agentic_toolkit.cli import _build_executor, _load_runtime, cli
from agentic_toolkit.config import load_config, save_config
from agentic_toolkit.state import ExecutionLog, Task, TaskStore

PLAN = """# Demo

## Setup
- Design schema (2h)
- Implement storage layer [depends: 1.1]

## Release
- Deploy service [depends: 1.2]
"""


class FailingBackend(ExecutionBackend):
    name = "failing"

    async def execute(self, task: Task) -> ExecutionResult:
        return ExecutionResult(success=False, error=f"could not finish {task.id}")


def _init_fast_config(runner: CliRunner, repo: Path) -> None:
    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0
    config_path = repo / "agentic.toml"
    config = load_config(config_path)
    config.executor.delay_between_tasks_ms = 0
    save_config(config_path, config)


def _write_tasks(repo: Path, *tasks: Task) -> None:
    store = TaskStore(repo / "tasks.json")
    for task in tasks:
        store.add(task, persist=False)
    store.save()


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_fast_config(runner, tmp_path)
    (tmp_path / "plan.md").write_text(PLAN, encoding="utf-8")

    plan_result = runner.invoke(cli, ["plan"])
    assert plan_result.exit_code == 0, plan_result.output
    assert "Generated 3 task(s)" in plan_result.output

    list_result = runner.invoke(cli, ["list"])
    assert list_result.exit_code == 0
    assert "1.2" in list_result.output
    assert "0/3 completed" in list_result.output

    next_result = runner.invoke(cli, ["next"])
    assert next_result.exit_code == 0
    assert "Next task: 1.1 Design schema" in next_result.output

    analyze_result = runner.invoke(cli, ["analyze", "--json"])
    assert analyze_result.exit_code == 0
    payload = json.loads(analyze_result.output)
    assert payload["dependencies"]["longest_chain"] == 3
    assert payload["complexity"]["total_tasks"] == 3
    assert payload["stats"]["pending"] == 3

    auto_result = runner.invoke(cli, ["auto"])
    assert auto_result.exit_code == 0, auto_result.output
    assert "Run ID:" in auto_result.output
    assert "Completed: 3" in auto_result.output
    assert "Stopped: no_work" in auto_result.output

    store = TaskStore(tmp_path / "tasks.json")
    store.load(strict=True)
    assert {task.status for task in store} == {"completed"}
    assert not (tmp_path / "tasks.json.lease").exists()

    log_result = runner.invoke(cli, ["log", "--type", "complete"])
    assert log_result.exit_code == 0
    assert log_result.output.count("complete") >= 3

    report_result = runner.invoke(cli, ["report"])
    assert report_result.exit_code == 0
    assert json.loads(report_result.output)["summary"]["successful"] == 3

    next_done = runner.invoke(cli, ["next"])
    assert "No pending tasks." in next_done.output


def test_plan_refuses_to_overwrite_without_force(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    (tmp_path / "plan.md").write_text(PLAN, encoding="utf-8")

    assert runner.invoke(cli, ["plan"]).exit_code == 0
    second = runner.invoke(cli, ["plan"])
    assert second.exit_code != 0
    assert "use --force" in second.output
    assert runner.invoke(cli, ["plan", "--force"]).exit_code == 0

    missing = runner.invoke(cli, ["plan", "nope.md", "--force"])
    assert missing.exit_code != 0
    assert "Plan file not found" in missing.output


def test_next_explains_blocked_tasks(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_tasks(
        tmp_path,
        Task(id="A", title="a", dependencies=["B"]),
        Task(id="B", title="b", dependencies=["A"]),
        Task(id="C", title="c", dependencies=["ghost"]),
    )

    result = CliRunner().invoke(cli, ["next"])

    assert result.exit_code == 0
    assert "No runnable task" in result.output
    assert "A: dependency cycle through A, B" in result.output
    assert "C: depends on unknown task(s) ghost" in result.output


def test_update_command_distinguishes_error_kinds(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_tasks(
        tmp_path,
        Task(id="A", title="a"),
        Task(id="B", title="b", dependencies=["A"]),
    )
    runner = CliRunner()

    blocked = runner.invoke(cli, ["update", "B", "in_progress"])
    assert blocked.exit_code != 0
    assert "Not runnable yet" in blocked.output

    invalid = runner.invoke(cli, ["update", "A", "completed"])
    assert invalid.exit_code != 0
    assert "State error" in invalid.output
    assert "--force" in invalid.output

    missing = runner.invoke(cli, ["update", "Z", "pending"])
    assert missing.exit_code != 0
    assert "Task not found: Z" in missing.output

    forced = runner.invoke(cli, ["update", "A", "completed", "--force"])
    assert forced.exit_code == 0
    assert "Updated A -> completed" in forced.output

    started = runner.invoke(cli, ["update", "B", "in_progress"])
    assert started.exit_code == 0


def test_auto_reports_task_failure(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_fast_config(runner, tmp_path)
    _write_tasks(tmp_path, Task(id="A", title="a"))
    monkeypatch.setattr(
        "agentic_toolkit.cli._build_backend", lambda config, root: FailingBackend()
    )

    result = runner.invoke(cli, ["auto", "--max-iterations", "2"])

    assert result.exit_code != 0
    assert "Task ran and failed" in result.output
    assert "could not finish A" in result.output
    store = TaskStore(tmp_path / "tasks.json")
    store.load(strict=True)
    assert store.require("A").status == "pending"

    continued = runner.invoke(
        cli, ["auto", "--max-iterations", "2", "--continue-on-error", "--delay", "0"]
    )
    assert continued.exit_code == 0
    assert "Failed: 2" in continued.output
    assert "Stopped: max_iterations" in continued.output
    fails = ExecutionLog(tmp_path / "execution-log.json").entries(entry_type="fail")
    assert len(fails) == 3


def test_auto_refuses_when_another_loop_holds_the_lease(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_fast_config(runner, tmp_path)
    _write_tasks(tmp_path, Task(id="A", title="a"))
    (tmp_path / "tasks.json.lease").write_text(
        json.dumps({"run_id": "run-other", "pid": 1, "expires_epoch": 4102444800}),
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["auto"])

    assert result.exit_code != 0
    assert "State error" in result.output
    assert "run-other" in result.output


def test_lease_ttl_outlives_task_timeout(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_fast_config(runner, tmp_path)
    config_path = tmp_path / "agentic.toml"
    config = load_config(config_path)
    config.store.lease_ttl_seconds = 60.0
    config.executor.task_timeout_seconds = 600.0
    save_config(config_path, config)

    executor = _build_executor(_load_runtime(tmp_path, "agentic.toml"))

    assert executor.lease.ttl_seconds == 1200.0


def test_list_filters_and_check_command(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_tasks(
        tmp_path,
        Task(id="A", title="alpha", priority="high"),
        Task(id="B", title="beta", priority="low"),
    )
    (tmp_path / "leak.py").write_text('secret = "s3cr3t"\n', encoding="utf-8")
    (tmp_path / "clean.py").write_text("x = 1\n", encoding="utf-8")
    runner = CliRunner()

    listed = runner.invoke(cli, ["list", "--priority", "high"])
    assert "alpha" in listed.output
    assert "beta" not in listed.output

    clean = runner.invoke(cli, ["check", "clean.py"])
    assert clean.exit_code == 0
    assert "No blocking violations." in clean.output

    leak = runner.invoke(cli, ["check", "leak.py"])
    assert leak.exit_code != 0
    assert "security-no-hardcoded-secrets" in leak.output


def test_corrupt_task_file_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "tasks.json").write_text("{broken", encoding="utf-8")

    result = CliRunner().invoke(cli, ["list"])

    assert result.exit_code == 0
    assert "treating task list as empty" in result.output
    assert "No tasks found." in result.output
