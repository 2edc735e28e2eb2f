from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import click

from foreman import __version__
from foreman.backends import AgentBackend, SubprocessHost
from foreman.config import ForemanConfig, load_config, save_config
from foreman.errors import Failure, ForemanError
from foreman.ledger import LedgerStore
from foreman.ledger.models import HANDOFF_REASONS, LEARNING_KINDS, OUTCOMES, TASK_STATUSES
from foreman.logging_setup import configure_logging
from foreman.orchestrator import Orchestrator

SAMPLE_CATALOG = """\
[agents."code/planner"]
version = "1.0"
description = "Breaks a request into an ordered plan."
allowed_tools = ["read_file", "search"]
system_prompt = "You are a planning specialist. Produce a short ordered plan."

[agents."code/executor"]
version = "1.0"
description = "Implements one planned step."
allowed_tools = ["read_file", "write_file", "edit_file", "run_command"]
system_prompt = "You are an implementation specialist. Complete exactly the assigned step."

[agents."code/reviewer"]
version = "1.0"
description = "Reviews finished work."
allowed_tools = ["read_file", "search"]
system_prompt = "You are a reviewer. Report blocking issues first."
"""


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: ForemanConfig
    ledger: LedgerStore


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = load_config(config_path)
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        config=config,
        ledger=LedgerStore.from_config(workspace, config.ledger),
    )


def _build_backend(config: ForemanConfig, workspace: Path) -> AgentBackend:
    return SubprocessHost(
        binary=config.host.binary,
        working_directory=workspace,
        glitch_markers=config.host.glitch_markers,
    )


def _build_orchestrator(runtime: Runtime) -> Orchestrator:
    return Orchestrator.from_workspace(
        runtime.workspace,
        runtime.config,
        backend=_build_backend(runtime.config, runtime.workspace),
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _raise_failure(failure: Failure) -> NoReturn:
    raise click.ClickException(f"{failure.code}: {failure.message}")


def _active_epic_id(runtime: Runtime) -> str:
    epic = runtime.ledger.get_active_epic()
    if epic is None:
        raise click.ClickException("NO_ACTIVE_EPIC: No active epic.")
    return epic.id


config_option = click.option("--config", "config_value", default="foreman.toml", show_default=True)


@click.group()
@click.version_option(__version__, prog_name="foreman")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug events to stderr.")
@click.option("--log-json", is_flag=True, default=False, help="Render log events as JSON.")
def cli(verbose: bool, log_json: bool) -> None:
    """Foreman task orchestration CLI."""
    configure_logging(verbose, json_output=log_json)


@cli.command("init")
@click.option("--catalog", "catalog_value", default=None, help="Agent catalog TOML path.")
@config_option
def init_command(catalog_value: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = load_config(config_path)
    if catalog_value:
        config.catalog.path = catalog_value
    save_config(config_path, config)

    ledger = LedgerStore.from_config(workspace, config.ledger)
    created = ledger.init()

    catalog_path = Path(config.catalog.path)
    if not catalog_path.is_absolute():
        catalog_path = workspace / catalog_path
    if not catalog_path.exists():
        catalog_path.write_text(SAMPLE_CATALOG, encoding="utf-8")
        click.echo(f"Wrote sample catalog: {catalog_path}")

    click.echo(f"{'Initialized' if created else 'Already initialized'} foreman in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Ledger: {ledger.root}")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if as_json:
        _echo_json(runtime.ledger.export())
        return

    status = runtime.ledger.status()
    click.echo(f"Phase: {status.phase}")
    epic = status.active_epic
    if epic is None:
        click.echo("Active epic: none")
    else:
        counts = epic.counts()
        click.echo(f"Active epic: {epic.id} ({epic.status})")
        click.echo(f"Tasks: {counts['completed']}/{counts['total']} completed")
        for task in epic.tasks:
            deps = f" after {','.join(task.dependencies)}" if task.dependencies else ""
            click.echo(f"  {task.id:<6} {task.status:<10} {task.agent:<20} {task.title}{deps}")
    click.echo(f"Handoff: {'yes' if status.has_handoff else 'no'}")
    for line in status.recent_learnings:
        click.echo(f"  {line}")


@cli.group("epic")
def epic_group() -> None:
    """Create, inspect and archive epics."""


@epic_group.command("create")
@click.argument("title")
@click.option("--request", default="", help="Original request text.")
@config_option
def epic_create_command(title: str, request: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        epic_id = runtime.ledger.create_epic(title, request or title)
    except ForemanError as exc:
        _raise_failure(exc.to_failure())
    click.echo(epic_id)


@epic_group.command("show")
@click.argument("epic_id", required=False)
@config_option
def epic_show_command(epic_id: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    target = epic_id or _active_epic_id(runtime)
    try:
        epic = runtime.ledger.get_epic(target)
    except ForemanError:
        epic = runtime.ledger.read_archived_epic(target)
        if epic is None:
            raise click.ClickException(f"EPIC_NOT_FOUND: Epic not found: {target}") from None
    _echo_json(epic.to_dict())


@epic_group.command("archive")
@click.option("--outcome", type=click.Choice(list(OUTCOMES)), default=None)
@config_option
def epic_archive_command(outcome: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        epic_id = runtime.ledger.archive_epic(outcome)
    except ForemanError as exc:
        _raise_failure(exc.to_failure())
    archived = runtime.ledger.read_archived_epic(epic_id)
    click.echo(f"Archived {epic_id} ({archived.outcome if archived else outcome})")


@cli.group("task")
def task_group() -> None:
    """Manage tasks of the active epic."""


@task_group.command("add")
@click.argument("title")
@click.option("--agent", required=True)
@click.option("--depends-on", "dependencies", multiple=True)
@click.option("--phase", type=int, default=1, show_default=True)
@click.option("--id", "task_id", default=None)
@config_option
def task_add_command(
    title: str,
    agent: str,
    dependencies: tuple[str, ...],
    phase: int,
    task_id: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        new_id = runtime.ledger.add_task(
            _active_epic_id(runtime),
            title,
            agent,
            dependencies,
            phase=phase,
            task_id=task_id,
        )
    except ForemanError as exc:
        _raise_failure(exc.to_failure())
    click.echo(new_id)


@task_group.command("set")
@click.argument("task_id")
@click.argument("status", type=click.Choice(list(TASK_STATUSES)))
@click.option("--result", default=None)
@click.option("--error", default=None)
@config_option
def task_set_command(
    task_id: str,
    status: str,
    result: str | None,
    error: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        task = runtime.ledger.update_task_status(
            _active_epic_id(runtime),
            task_id,
            status,
            result=result,
            error=error,
        )
    except ForemanError as exc:
        _raise_failure(exc.to_failure())
    click.echo(f"{task.id} {task.status}")


@task_group.command("run")
@click.argument("task_id")
@click.option("--timeout", type=float, default=None)
@config_option
def task_run_command(task_id: str, timeout: float | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    orchestrator = _build_orchestrator(runtime)

    async def _run() -> Any:
        try:
            return await orchestrator.run_task(task_id, mode="blocking", timeout=timeout)
        finally:
            await orchestrator.shutdown()

    outcome = asyncio.run(_run())
    if isinstance(outcome, Failure):
        _raise_failure(outcome)
    _echo_json(outcome.to_dict())
    if not outcome.success:
        raise click.ClickException(f"Task {task_id} did not complete: {outcome.status}")


@cli.command("learn")
@click.argument("kind", type=click.Choice(list(LEARNING_KINDS)))
@click.argument("text")
@click.option("--epic", "source_epic", default=None)
@click.option("--agent", "source_agent", default=None)
@config_option
def learn_command(
    kind: str,
    text: str,
    source_epic: str | None,
    source_agent: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        learning = runtime.ledger.add_learning(kind, text, source_epic, source_agent)
    except ForemanError as exc:
        _raise_failure(exc.to_failure())
    click.echo(learning.summary())


@cli.command("learnings")
@click.option("--kind", type=click.Choice(list(LEARNING_KINDS)), default=None)
@config_option
def learnings_command(kind: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    learnings = runtime.ledger.read_learnings(kind)
    if not learnings:
        click.echo("No learnings recorded.")
        return
    for learning in learnings:
        click.echo(f"{learning.created_at} [{learning.kind}] {learning.text}")


@cli.group("handoff")
def handoff_group() -> None:
    """Manage the single handoff slot."""


@handoff_group.command("create")
@click.argument("reason", type=click.Choice(list(HANDOFF_REASONS)))
@click.option("--resume", "resume_instruction", required=True)
@click.option("--summary", default="")
@config_option
def handoff_create_command(reason: str, resume_instruction: str, summary: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    handoff = runtime.ledger.create_handoff(reason, resume_instruction, summary)
    click.echo(f"Handoff recorded ({handoff.reason}) for epic {handoff.epic_id or '-'}")


@handoff_group.command("show")
@config_option
def handoff_show_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    handoff = runtime.ledger.get_handoff()
    if handoff is None:
        click.echo("No handoff.")
        return
    _echo_json(handoff.to_dict())


@handoff_group.command("clear")
@config_option
def handoff_clear_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    click.echo("Handoff cleared." if runtime.ledger.clear_handoff() else "No handoff.")


@cli.group("registry")
def registry_group() -> None:
    """Inspect the persisted task registry snapshot."""


@registry_group.command("list")
@click.option("--status", default=None)
@config_option
def registry_list_command(status: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    orchestrator = _build_orchestrator(runtime)
    entries = orchestrator.registry.list(status)
    if not entries:
        click.echo("No registry entries.")
        return
    for entry in entries:
        task = f"{entry.epic_id}/{entry.task_id}" if entry.task_id else "-"
        click.echo(f"{entry.id} {entry.status:<10} retries={entry.retry_count} {entry.agent_name} {task}")


@cli.command("run")
@click.option("--timeout", type=float, default=None)
@config_option
def run_command(timeout: float | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    orchestrator = _build_orchestrator(runtime)

    async def _run() -> Any:
        try:
            return await orchestrator.run_epic(timeout=timeout)
        finally:
            await orchestrator.shutdown()

    summary = asyncio.run(_run())
    if isinstance(summary, Failure):
        _raise_failure(summary)

    click.echo(f"Epic: {summary.epic_id}")
    click.echo(f"Tasks: {len(summary.completed)}/{summary.total_tasks} completed")
    for task_id, error in summary.failed.items():
        click.echo(f"Failed {task_id}: {error}")
    if summary.archived:
        click.echo(f"Archived with outcome {summary.outcome}")
    elif summary.pending:
        click.echo(f"Pending: {', '.join(summary.pending)}")


@cli.command("resume")
@click.option("--timeout", type=float, default=None)
@config_option
def resume_command(timeout: float | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    orchestrator = _build_orchestrator(runtime)

    async def _run() -> Any:
        try:
            return await orchestrator.resume(timeout=timeout)
        finally:
            await orchestrator.shutdown()

    summary = asyncio.run(_run())
    if summary.handoff is not None:
        click.echo(f"Handoff consumed: {summary.handoff.resume_instruction}")
    if summary.reset_tasks:
        click.echo(f"Reset to pending: {', '.join(summary.reset_tasks)}")
    if summary.run is None:
        click.echo("No active epic.")
    elif isinstance(summary.run, Failure):
        _raise_failure(summary.run)
    else:
        click.echo(f"Tasks: {len(summary.run.completed)}/{summary.run.total_tasks} completed")
        if summary.run.archived:
            click.echo(f"Archived with outcome {summary.run.outcome}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
