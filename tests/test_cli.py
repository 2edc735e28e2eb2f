import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from foreman.backends.base import AgentBackend
from foreman.cli import cli
from foreman.config import load_config


class FakeBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context, tools
        if "Plan the work" in user_prompt:
            yield "1. design\n2. build"
            return
        yield "work done"


def _setup(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("foreman.cli._build_backend", lambda config, workspace: FakeBackend())
    runner = CliRunner()
    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0, result.output
    return runner


def test_init_writes_config_catalog_and_ledger(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    assert (tmp_path / "foreman.toml").exists()
    assert (tmp_path / "agents.toml").exists()
    assert (tmp_path / ".foreman" / "index.json").exists()
    assert load_config(tmp_path / "foreman.toml").catalog.path == "agents.toml"

    again = runner.invoke(cli, ["init"])
    assert again.exit_code == 0
    assert "Already initialized" in again.output


def test_cli_epic_lifecycle(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    created = runner.invoke(cli, ["epic", "create", "Demo", "--request", "demo request"])
    assert created.exit_code == 0, created.output
    epic_id = created.output.strip()

    duplicate = runner.invoke(cli, ["epic", "create", "Other"])
    assert duplicate.exit_code != 0
    assert "ALREADY_ACTIVE" in duplicate.output

    first = runner.invoke(cli, ["task", "add", "Plan the work", "--agent", "code/planner"])
    second = runner.invoke(
        cli, ["task", "add", "Do the work", "--agent", "code/executor", "--depends-on", "1.1"]
    )
    assert first.output.strip() == "1.1"
    assert second.output.strip() == "1.2"

    blocked = runner.invoke(cli, ["task", "set", "1.2", "running"])
    assert blocked.exit_code != 0
    assert "DEPENDENCY_UNMET" in blocked.output

    ran = runner.invoke(cli, ["task", "run", "1.1"])
    assert ran.exit_code == 0, ran.output
    assert '"success": true' in ran.output
    assert "1. design" in ran.output

    status = runner.invoke(cli, ["status"])
    assert status.exit_code == 0
    assert f"Active epic: {epic_id} (in_progress)" in status.output
    assert "Tasks: 1/2 completed" in status.output

    run = runner.invoke(cli, ["run", "--timeout", "5"])
    assert run.exit_code == 0, run.output
    assert "Tasks: 2/2 completed" in run.output
    assert "Archived with outcome SUCCEEDED" in run.output

    exported = runner.invoke(cli, ["status", "--json"])
    payload = json.loads(exported.output)
    assert payload["active_epic"] is None
    assert payload["phase"] == "CLARIFY"
    assert payload["archive"] == [epic_id]

    shown = runner.invoke(cli, ["epic", "show", epic_id])
    assert shown.exit_code == 0
    assert json.loads(shown.output)["outcome"] == "SUCCEEDED"

    registry = runner.invoke(cli, ["registry", "list"])
    assert registry.exit_code == 0


def test_cli_task_run_reports_unknown_agent(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)
    runner.invoke(cli, ["epic", "create", "Demo"])
    runner.invoke(cli, ["task", "add", "Mystery", "--agent", "code/ghost"])

    result = runner.invoke(cli, ["task", "run", "1.1"])

    assert result.exit_code != 0
    assert "AGENT_NOT_FOUND" in result.output
    assert "code/executor" in result.output


def test_cli_learnings_and_handoff(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    learned = runner.invoke(cli, ["learn", "pattern", "Keep steps small"])
    assert learned.exit_code == 0
    assert learned.output.strip() == "[pattern] Keep steps small"

    listed = runner.invoke(cli, ["learnings", "--kind", "pattern"])
    assert "[pattern] Keep steps small" in listed.output

    invalid = runner.invoke(cli, ["learn", "gossip", "nope"])
    assert invalid.exit_code != 0

    created = runner.invoke(
        cli, ["handoff", "create", "session_break", "--resume", "foreman resume", "--summary", "midway"]
    )
    assert created.exit_code == 0
    shown = runner.invoke(cli, ["handoff", "show"])
    assert json.loads(shown.output)["summary"] == "midway"
    cleared = runner.invoke(cli, ["handoff", "clear"])
    assert "Handoff cleared." in cleared.output
    assert "No handoff." in runner.invoke(cli, ["handoff", "show"]).output


def test_cli_resume_recovers_and_finishes(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)
    runner.invoke(cli, ["epic", "create", "Demo"])
    runner.invoke(cli, ["task", "add", "Build", "--agent", "code/executor"])
    runner.invoke(cli, ["task", "set", "1.1", "running"])
    runner.invoke(cli, ["handoff", "create", "context_limit", "--resume", "continue 1.1"])

    result = runner.invoke(cli, ["resume", "--timeout", "5"])

    assert result.exit_code == 0, result.output
    assert "Handoff consumed: continue 1.1" in result.output
    assert "Reset to pending: 1.1" in result.output
    assert "Archived with outcome SUCCEEDED" in result.output


def test_cli_run_without_epic_fails(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["run"])

    assert result.exit_code != 0
    assert "NO_ACTIVE_EPIC" in result.output
