from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from persona_orchestrator.main import persona_orchestrator

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Command Line"),
]


def _invoke(runner: CliRunner, db_path: Path, *args: str):
    group, command, *rest = args
    return runner.invoke(persona_orchestrator, [group, command, "--db-path", str(db_path), *rest])


def _create_task(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = _invoke(runner, db_path, "task", "create", *args)
    assert result.exit_code == 0, result.output
    match = re.search(r"task_id=([a-f0-9]+)", result.output)
    assert match is not None
    return match.group(1)


@pytest.mark.usefixtures("echo_agent")
def test_development_task_flows_through_auto_review(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    for persona_id in ("developer", "qa-engineer"):
        added = _invoke(runner, db_path, "persona", "add", persona_id, "--prompt", "Be useful.")
        assert added.exit_code == 0, added.output
        assert f"Persona saved: {persona_id}" in added.output

    listed = _invoke(runner, db_path, "persona", "list")
    assert "Personas: 2" in listed.output

    task_id = _create_task(
        runner,
        db_path,
        "--title",
        "Add login form",
        "--assignee",
        "developer",
        "--priority",
        "3",
    )

    tick = _invoke(runner, db_path, "worker", "tick")
    assert tick.exit_code == 0, tick.output
    assert f"Task {task_id} -> review (persona=developer class=development)" in tick.output
    assert "Auto-review: approved" in tick.output
    assert "Workload: 0 interval=*/10 * * * *" in tick.output

    shown = _invoke(runner, db_path, "task", "show", task_id)
    assert "Status: review" in shown.output
    assert "Comments: 2" in shown.output
    assert "qa-engineer (AI Reviewer): **AUTO-REVIEW CYCLE 1** (APPROVE)" in shown.output

    status = _invoke(runner, db_path, "worker", "status")
    assert "Running: no" in status.output
    assert f"Last task: {task_id}" in status.output

    idle = _invoke(runner, db_path, "worker", "tick")
    assert "No assigned backlog tasks." in idle.output


@pytest.mark.usefixtures("echo_agent")
def test_research_task_produces_report(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _invoke(runner, db_path, "persona", "add", "analyst", "--research")
    task_id = _create_task(runner, db_path, "--title", "Vector stores", "--assignee", "analyst")

    tick = _invoke(runner, db_path, "worker", "tick")

    assert f"Task {task_id} -> done" in tick.output
    assert "Report: " in tick.output
    shown = _invoke(runner, db_path, "task", "show", task_id)
    assert "link [report] Research: Vector stores report://" in shown.output


def test_pipeline_seed_and_task_validation(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    seeded = _invoke(runner, db_path, "pipeline", "seed")
    assert seeded.exit_code == 0, seeded.output
    assert "Pipeline created: standard-development (Standard Development)" in seeded.output
    again = _invoke(runner, db_path, "pipeline", "seed")
    assert "Built-in pipelines already present." in again.output

    listed = _invoke(runner, db_path, "pipeline", "list")
    assert "Pipelines: 3" in listed.output
    assert "dev(general-developer, auto) -> qa(qa-engineer) -> security(security-reviewer)" in (
        listed.output
    )

    _create_task(runner, db_path, "--title", "Fix crash", "--pipeline", "bug-fix-pipeline")
    missing = _invoke(runner, db_path, "task", "create", "--title", "x", "--pipeline", "nope")
    assert missing.exit_code != 0
    assert "Pipeline not found: nope" in missing.output

    tasks = _invoke(runner, db_path, "task", "list", "--status", "backlog")
    assert "Tasks: 1" in tasks.output
    assert "pipeline=bug-fix-pipeline" in tasks.output

    deleted = _invoke(runner, db_path, "pipeline", "delete", "documentation-only")
    assert deleted.exit_code == 0, deleted.output
    assert "Pipeline deleted: documentation-only" in deleted.output
    assert "Pipelines: 2" in _invoke(runner, db_path, "pipeline", "list").output
    gone = _invoke(runner, db_path, "pipeline", "delete", "documentation-only")
    assert gone.exit_code != 0
    assert "Pipeline not found: documentation-only" in gone.output


def test_review_config_updates_and_rejects_bad_mapping(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    configured = _invoke(
        runner,
        db_path,
        "review",
        "config",
        "--max-cycles",
        "2",
        "--escalation",
        "auto-approve",
        "--reviewer",
        "API=code-reviewer",
    )
    assert configured.exit_code == 0, configured.output
    assert "Max cycles: 2" in configured.output
    assert "Escalation: auto-approve" in configured.output
    assert "  api -> code-reviewer" in configured.output

    broken = _invoke(runner, db_path, "review", "config", "--reviewer", "api")
    assert broken.exit_code != 0
    assert "Expected TAG=PERSONA" in broken.output


def test_worker_run_enables_and_stops_after_max_ticks(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    run = _invoke(runner, db_path, "worker", "run", "--max-ticks", "2", "--poll-seconds", "0")

    assert run.exit_code == 0, run.output
    assert "ticks=2 dispatched=0" in run.output
    assert "idle=2" in run.output
    status = _invoke(runner, db_path, "worker", "status")
    assert "Enabled: yes" in status.output

    disabled = _invoke(runner, db_path, "worker", "disable")
    assert "Enabled: no" in disabled.output


def test_resume_unknown_task_reports_error(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), tmp_path / "cli.db", "task", "resume", "missing")

    assert result.exit_code != 0
    assert "Task not found: missing" in result.output
