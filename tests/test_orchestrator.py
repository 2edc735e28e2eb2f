import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError
from foreman.catalog import AgentCatalog, AgentDescriptor
from foreman.config import ForemanConfig
from foreman.dispatch import DispatchResult
from foreman.errors import ErrorCode, Failure
from foreman.ledger import LedgerStore
from foreman.orchestrator import EpicRunSummary, Orchestrator
from foreman.registry import Handle


class FakeBackend(AgentBackend):
    name = "fake"

    def __init__(self, *, fail_marker: str = "FAILME", delay: float = 0.0) -> None:
        self.fail_marker = fail_marker
        self.delay = delay
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        self.prompts.append(user_prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_marker in user_prompt:
            raise BackendExecutionError("agent refused", backend=self.name, retriable=False)
        title = user_prompt.split("\n\nEpic:", 1)[0].rsplit("\n", 1)[-1]
        yield f"ok: {title}"


class FakeMemory:
    def __init__(self) -> None:
        self.stored: list[dict[str, Any]] = []

    def find(self, query: str, limit: int = 5) -> list[Any]:
        return []

    def store(self, record: dict[str, Any]) -> None:
        self.stored.append(record)


def _orchestrator(tmp_path: Path, backend: AgentBackend | None = None, **kwargs) -> Orchestrator:
    config = ForemanConfig.default()
    config.batch.poll_interval_seconds = 0.01
    ledger = LedgerStore.from_config(tmp_path, config.ledger)
    ledger.init()
    catalog = AgentCatalog(
        [
            AgentDescriptor(name="code/planner"),
            AgentDescriptor(name="code/executor"),
            AgentDescriptor(name="code/reviewer"),
        ],
        default_namespace="code",
    )
    return Orchestrator(ledger, catalog, backend or FakeBackend(), config=config, **kwargs)


def test_plan_epic_rejects_unknown_agents_before_creating_anything(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    result = orchestrator.plan_epic("Demo", "demo", [{"title": "Design", "agent": "code/ghost"}])

    assert isinstance(result, Failure)
    assert result.code == ErrorCode.AGENT_NOT_FOUND
    assert orchestrator.ledger.get_active_epic() is None


def test_plan_epic_rejects_oversized_plans(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    tasks = [{"title": f"Step {index}", "agent": "code/executor"} for index in range(4)]

    result = orchestrator.plan_epic("Demo", "demo", tasks)

    assert isinstance(result, Failure)
    assert result.code == ErrorCode.TASK_LIMIT_REACHED


def test_demo_scenario_enforces_dependency_order(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    epic_id = orchestrator.plan_epic(
        "Demo",
        "demo request",
        [
            {"title": "Plan the work", "agent": "code/planner"},
            {"title": "Do the work", "agent": "code/executor", "dependencies": ["1.1"]},
        ],
    )

    early = asyncio.run(orchestrator.run_task("1.2"))
    assert isinstance(early, Failure)
    assert early.code == ErrorCode.DEPENDENCY_UNMET

    first = asyncio.run(orchestrator.run_task("1.1"))
    assert isinstance(first, DispatchResult)
    assert first.success is True

    second = asyncio.run(orchestrator.run_task("1.2"))
    assert second.success is True

    epic = orchestrator.ledger.get_epic(epic_id)
    assert [task.status for task in epic.tasks] == ["completed", "completed"]
    assert epic.status == "completed"
    assert epic.task("1.1").result == "ok: Plan the work"
    assert epic.task("1.2").handle_id == second.handle.id
    assert "- [x] Task 1.2:" in (orchestrator.ledger.read_plan(epic_id) or "")


def test_run_task_passes_dependency_results(tmp_path: Path) -> None:
    backend = FakeBackend()
    orchestrator = _orchestrator(tmp_path, backend)
    orchestrator.plan_epic(
        "Demo",
        "demo request",
        [
            {"title": "Plan the work", "agent": "code/planner"},
            {"title": "Do the work", "agent": "code/executor", "dependencies": ["1.1"]},
        ],
    )

    asyncio.run(orchestrator.run_task("1.1"))
    asyncio.run(orchestrator.run_task("1.2", context={"files_assigned": ["src/app.py"]}))

    prompt = backend.prompts[-1]
    assert '"1.1": "ok: Plan the work"' in prompt
    assert "- src/app.py" in prompt


def test_run_task_without_active_epic(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)

    result = asyncio.run(orchestrator.run_task("1.1"))

    assert isinstance(result, Failure)
    assert result.code == ErrorCode.NO_ACTIVE_EPIC


def test_run_task_rejects_unknown_mode_before_touching_ledger(tmp_path: Path) -> None:
    backend = FakeBackend()
    orchestrator = _orchestrator(tmp_path, backend)
    epic_id = orchestrator.plan_epic("Demo", "demo", [{"title": "Build", "agent": "code/executor"}])

    result = asyncio.run(orchestrator.run_task("1.1", mode="detached"))

    assert isinstance(result, Failure)
    assert result.code == ErrorCode.INVALID_MODE
    assert result.details["supported"] == ["blocking", "background"]
    task = orchestrator.ledger.get_epic(epic_id).task("1.1")
    assert task.status == "pending"
    assert task.attempts == 0
    assert backend.prompts == []


def test_blocking_timeout_fails_ledger_task(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, FakeBackend(delay=1.0))
    epic_id = orchestrator.plan_epic("Demo", "demo", [{"title": "Slow", "agent": "code/executor"}])

    result = asyncio.run(orchestrator.run_task("1.1", timeout=0.01))

    assert result.timed_out is True
    task = orchestrator.ledger.get_epic(epic_id).task("1.1")
    assert task.status == "failed"
    assert "did not finish" in (task.error or "")


def test_background_run_task_records_handle(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    epic_id = orchestrator.plan_epic("Demo", "demo", [{"title": "Build", "agent": "code/executor"}])

    async def scenario() -> Handle:
        handle = await orchestrator.run_task("1.1", mode="background")
        await orchestrator.batch.gather([handle.id], timeout=2.0)
        await orchestrator.shutdown()
        return handle

    handle = asyncio.run(scenario())

    task = orchestrator.ledger.get_epic(epic_id).task("1.1")
    assert task.handle_id == handle.id
    assert task.status == "completed"
    assert task.result == "ok: Build"


def test_run_epic_completes_and_archives(tmp_path: Path) -> None:
    memory = FakeMemory()
    orchestrator = _orchestrator(tmp_path, memory=memory)
    epic_id = orchestrator.plan_epic(
        "Demo",
        "demo request",
        [
            {"title": "Design", "agent": "code/planner"},
            {"title": "Build", "agent": "code/executor", "dependencies": ["1.1"]},
            {"title": "Review", "agent": "code/reviewer", "dependencies": ["1.1"]},
        ],
    )
    orchestrator.ledger.add_learning("decision", "Keep modules small", source_epic=epic_id)

    summary = asyncio.run(orchestrator.run_epic(timeout=5.0))

    assert isinstance(summary, EpicRunSummary)
    assert summary.completed == ["1.1", "1.2", "1.3"]
    assert summary.archived is True
    assert summary.outcome == "SUCCEEDED"
    assert orchestrator.ledger.get_active_epic() is None
    assert orchestrator.ledger.list_archive() == [epic_id]
    assert orchestrator.supervisor.running is False
    assert [record["information"] for record in memory.stored] == ["Keep modules small"]


def test_run_epic_skips_dependents_of_failed_tasks(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    epic_id = orchestrator.plan_epic(
        "Demo",
        "demo request",
        [
            {"title": "Design", "agent": "code/planner"},
            {"title": "Build FAILME", "agent": "code/executor", "dependencies": ["1.1"]},
            {"title": "Review", "agent": "code/reviewer", "dependencies": ["1.2"]},
        ],
    )

    summary = asyncio.run(orchestrator.run_epic(timeout=5.0))

    assert summary.completed == ["1.1"]
    assert list(summary.failed) == ["1.2"]
    assert summary.failed["1.2"].startswith("SPAWN_FAILED")
    assert summary.outcome == "PARTIAL"
    archived = orchestrator.ledger.read_archived_epic(epic_id)
    assert archived.task("1.3").status == "skipped"


def test_run_epic_requires_tasks(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    orchestrator.plan_epic("Demo", "demo")

    result = asyncio.run(orchestrator.run_epic())

    assert isinstance(result, Failure)
    assert result.code == ErrorCode.NO_TASKS


def test_recover_resets_orphaned_running_tasks(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    epic_id = orchestrator.plan_epic("Demo", "demo", [{"title": "Build", "agent": "code/executor"}])
    orchestrator.ledger.update_task_status(epic_id, "1.1", "running", handle_id="h_gone")

    reset = orchestrator.recover()

    assert reset == ["1.1"]
    assert orchestrator.ledger.get_epic(epic_id).task("1.1").status == "pending"
    assert orchestrator.recover() == []


def test_resume_consumes_handoff_and_finishes_epic(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    epic_id = orchestrator.plan_epic("Demo", "demo", [{"title": "Build", "agent": "code/executor"}])
    orchestrator.ledger.update_task_status(epic_id, "1.1", "running")
    orchestrator.ledger.create_handoff("session_break", "resume the epic", "1.1 was in flight")

    summary = asyncio.run(orchestrator.resume(timeout=5.0))

    assert summary.handoff is not None
    assert summary.handoff.summary == "1.1 was in flight"
    assert summary.reset_tasks == ["1.1"]
    assert isinstance(summary.run, EpicRunSummary)
    assert summary.run.outcome == "SUCCEEDED"
    assert orchestrator.ledger.get_handoff() is None


def test_registry_snapshot_lives_under_ledger_root(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path)
    orchestrator.plan_epic("Demo", "demo", [{"title": "Build", "agent": "code/executor"}])

    async def scenario() -> None:
        handle = await orchestrator.run_task("1.1", mode="background")
        await orchestrator.batch.gather([handle.id], timeout=2.0, partial=True)
        await orchestrator.shutdown()

    asyncio.run(scenario())

    assert (tmp_path / ".foreman" / "registry.json").exists()
