from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from foreman.backends.base import AgentBackend
from foreman.backends.subprocess_host import SubprocessHost
from foreman.batch import BatchCoordinator
from foreman.catalog import AgentCatalog, load_catalog
from foreman.config import ForemanConfig
from foreman.dispatch import DispatchResult, Dispatcher, LongTermMemory, invalid_mode
from foreman.errors import ErrorCode, Failure, LedgerError
from foreman.ledger import Epic, Handoff, LedgerStore, Task
from foreman.ledger.files import utcnow_iso
from foreman.registry import EXECUTION_MODES, Handle, RegistryEntry, TaskRegistry
from foreman.supervisor import Supervisor

logger = structlog.get_logger()


@dataclass(slots=True)
class PlannedTask:
    title: str
    agent: str
    dependencies: list[str] = field(default_factory=list)
    id: str | None = None
    phase: int = 1

    @classmethod
    def coerce(cls, item: PlannedTask | Mapping[str, Any]) -> PlannedTask:
        if isinstance(item, PlannedTask):
            return item
        return cls(
            title=str(item.get("title", "")),
            agent=str(item.get("agent", "")),
            dependencies=[str(dep) for dep in item.get("dependencies", [])],
            id=item.get("id"),
            phase=int(item.get("phase", 1)),
        )


@dataclass(slots=True)
class EpicRunSummary:
    epic_id: str
    started_at: str
    ended_at: str
    total_tasks: int
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    timed_out: bool = False
    archived: bool = False
    outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "epic_id": self.epic_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "total_tasks": self.total_tasks,
            "completed": list(self.completed),
            "failed": dict(self.failed),
            "pending": list(self.pending),
            "timed_out": self.timed_out,
            "archived": self.archived,
            "outcome": self.outcome,
        }


@dataclass(slots=True)
class ResumeSummary:
    handoff: Handoff | None
    reset_tasks: list[str]
    run: EpicRunSummary | Failure | None


class Orchestrator:
    """Composes ledger, catalog, dispatcher, registry, supervisor and batch coordinator."""

    def __init__(
        self,
        ledger: LedgerStore,
        catalog: AgentCatalog,
        backend: AgentBackend,
        *,
        config: ForemanConfig | None = None,
        memory: LongTermMemory | None = None,
        registry: TaskRegistry | None = None,
    ) -> None:
        self.config = config or ForemanConfig.default()
        self.ledger = ledger
        self.catalog = catalog
        self.memory = memory
        self.registry = registry or TaskRegistry.from_config(
            self.config.registry,
            snapshot_path=ledger.root / "registry.json",
        )
        self.dispatcher = Dispatcher.from_config(
            self.config.dispatch,
            catalog,
            backend,
            self.registry,
            memory=memory,
        )
        self.supervisor = Supervisor.from_config(
            self.config.supervisor,
            self.registry,
            self.dispatcher,
            ledger=ledger,
        )
        self.batch = BatchCoordinator.from_config(self.config.batch, self.dispatcher, self.registry)
        self.registry.add_listener(self._propagate)

    @classmethod
    def from_workspace(
        cls,
        workspace: Path,
        config: ForemanConfig,
        *,
        backend: AgentBackend | None = None,
        memory: LongTermMemory | None = None,
    ) -> Orchestrator:
        catalog_path = Path(config.catalog.path)
        if not catalog_path.is_absolute():
            catalog_path = workspace / catalog_path
        catalog = load_catalog(catalog_path, default_namespace=config.catalog.default_namespace)
        host = backend or SubprocessHost(
            binary=config.host.binary,
            working_directory=workspace,
            glitch_markers=config.host.glitch_markers,
        )
        return cls(
            LedgerStore.from_config(workspace, config.ledger),
            catalog,
            host,
            config=config,
            memory=memory,
        )

    # ledger propagation ----------------------------------------------------

    def _propagate(self, entry: RegistryEntry) -> None:
        if not entry.epic_id or not entry.task_id:
            return
        try:
            if entry.status == "completed":
                self.ledger.update_task_status(
                    entry.epic_id, entry.task_id, "completed", result=entry.result or ""
                )
            else:
                self.ledger.update_task_status(
                    entry.epic_id,
                    entry.task_id,
                    "failed",
                    error=entry.error or entry.status,
                )
        except LedgerError as exc:
            logger.info(
                "orchestrator_propagation_skipped",
                entry_id=entry.id,
                task_id=entry.task_id,
                code=str(exc.code),
            )

    # planning --------------------------------------------------------------

    def plan_epic(
        self,
        title: str,
        request: str,
        tasks: Sequence[PlannedTask | Mapping[str, Any]] = (),
    ) -> str | Failure:
        planned = [PlannedTask.coerce(item) for item in tasks]
        missing = sorted({task.agent for task in planned if self.catalog.resolve(task.agent) is None})
        if missing:
            return Failure(
                code=ErrorCode.AGENT_NOT_FOUND,
                message=f"Unknown agents: {', '.join(missing)}",
                details={"missing": missing, "available": self.catalog.names()},
            )
        if len(planned) > self.ledger.max_tasks_per_epic:
            return Failure(
                code=ErrorCode.TASK_LIMIT_REACHED,
                message=f"An epic holds at most {self.ledger.max_tasks_per_epic} tasks; got {len(planned)}.",
            )

        try:
            epic_id = self.ledger.create_epic(title, request)
            for task in planned:
                self.ledger.add_task(
                    epic_id,
                    task.title,
                    task.agent,
                    task.dependencies,
                    phase=task.phase,
                    task_id=task.id,
                )
        except LedgerError as exc:
            return exc.to_failure()
        return epic_id

    # execution -------------------------------------------------------------

    @staticmethod
    def _task_prompt(epic: Epic, task: Task) -> str:
        return f"{task.title}\n\nEpic: {epic.title}\nRequest: {epic.request}".strip()

    @staticmethod
    def _task_context(epic: Epic, task: Task, extra: Mapping[str, Any] | None) -> dict[str, Any]:
        context: dict[str, Any] = {"epic_id": epic.id, "task_id": task.id}
        results = {
            dep: (epic.task(dep).result or "") for dep in task.dependencies if epic.task(dep) is not None
        }
        if results:
            context["dependency_results"] = results
        context.update(extra or {})
        return context

    async def run_task(
        self,
        task_id: str,
        mode: str = "blocking",
        context: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> DispatchResult | Handle | Failure:
        if mode not in EXECUTION_MODES:
            return invalid_mode(mode)
        epic = self.ledger.get_active_epic()
        if epic is None:
            return Failure(code=ErrorCode.NO_ACTIVE_EPIC, message="No active epic.")
        task = epic.task(task_id)
        if task is None:
            return Failure(code=ErrorCode.TASK_NOT_FOUND, message=f"Task not found: {task_id}")

        try:
            self.ledger.update_task_status(epic.id, task_id, "running")
        except LedgerError as exc:
            return exc.to_failure()

        outcome = await self.dispatcher.dispatch(
            task.agent,
            self._task_prompt(epic, task),
            self._task_context(epic, task, context),
            mode=mode,
            timeout=timeout,
            epic_id=epic.id,
            task_id=task_id,
        )

        if isinstance(outcome, Handle):
            self.ledger.update_task_status(epic.id, task_id, "running", handle_id=outcome.id)
            return outcome

        if outcome.success:
            self.ledger.update_task_status(
                epic.id,
                task_id,
                "completed",
                result=outcome.output,
                handle_id=outcome.handle.id if outcome.handle else None,
            )
        else:
            message = outcome.failure.message if outcome.failure else outcome.status
            self.ledger.update_task_status(
                epic.id,
                task_id,
                "failed",
                error=message,
                handle_id=outcome.handle.id if outcome.handle else None,
            )
        return outcome

    def _skip_unreachable(self, epic: Epic) -> list[str]:
        """Skip pending tasks that depend on a failed or skipped task."""
        skipped: list[str] = []
        changed = True
        while changed:
            changed = False
            for task in epic.tasks:
                if task.status not in ("pending", "blocked"):
                    continue
                broken = [
                    dep
                    for dep in task.dependencies
                    if epic.task(dep) is not None and epic.task(dep).status in ("failed", "skipped")
                ]
                if broken:
                    updated = self.ledger.update_task_status(
                        epic.id,
                        task.id,
                        "skipped",
                        error=f"dependency not completed: {', '.join(broken)}",
                    )
                    task.status = updated.status
                    skipped.append(task.id)
                    changed = True
        return skipped

    async def run_epic(self, timeout: float | None = None) -> EpicRunSummary | Failure:
        epic = self.ledger.get_active_epic()
        if epic is None:
            return Failure(code=ErrorCode.NO_ACTIVE_EPIC, message="No active epic.")
        if not epic.tasks:
            return Failure(code=ErrorCode.NO_TASKS, message=f"Epic {epic.id} has no tasks.")

        started_at = utcnow_iso()
        limit = self.config.batch.timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + limit
        summary = EpicRunSummary(
            epic_id=epic.id,
            started_at=started_at,
            ended_at=started_at,
            total_tasks=len(epic.tasks),
        )

        owns_supervisor = not self.supervisor.running
        if owns_supervisor:
            self.supervisor.start()
        try:
            while True:
                epic = self.ledger.get_epic(summary.epic_id)
                self._skip_unreachable(epic)
                epic = self.ledger.get_epic(summary.epic_id)
                if all(task.is_terminal for task in epic.tasks):
                    break

                handles: list[str] = []
                for task in self.ledger.ready_tasks(epic.id):
                    launched = await self.run_task(task.id, mode="background")
                    if isinstance(launched, Handle):
                        handles.append(launched.id)
                handles.extend(
                    entry.id
                    for entry in self.registry.outstanding()
                    if entry.epic_id == epic.id and entry.id not in handles
                )
                if not handles:
                    logger.warning("orchestrator_epic_stalled", epic_id=epic.id)
                    break

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    summary.timed_out = True
                    break
                gathered = await self.batch.gather(handles, timeout=remaining)
                if gathered.timed_out:
                    summary.timed_out = True
                    break
        finally:
            if owns_supervisor:
                await self.supervisor.stop()

        epic = self.ledger.get_epic(summary.epic_id)
        summary.completed = [task.id for task in epic.tasks if task.status == "completed"]
        summary.failed = {task.id: task.error or task.status for task in epic.tasks if task.status == "failed"}
        summary.pending = [task.id for task in epic.tasks if not task.is_terminal]
        if not summary.pending:
            summary.outcome = epic.derive_outcome()
            self.ledger.archive_epic(summary.outcome)
            summary.archived = True
            self._forward_learnings(epic.id)
        summary.ended_at = utcnow_iso()
        logger.info("orchestrator_epic_run_finished", **summary.to_dict())
        return summary

    def _forward_learnings(self, epic_id: str) -> None:
        if self.memory is None:
            return
        for learning in self.ledger.read_learnings():
            if learning.source_epic != epic_id:
                continue
            try:
                self.memory.store({"information": learning.text, "kind": learning.kind, **learning.to_dict()})
            except Exception as exc:
                logger.warning("memory_store_failed", epic_id=epic_id, error=str(exc))

    # recovery --------------------------------------------------------------

    def recover(self) -> list[str]:
        """Return running ledger tasks with no live registry entry to ``pending``."""
        epic = self.ledger.get_active_epic()
        if epic is None:
            return []
        live = {entry.id for entry in self.registry.outstanding()}
        reset: list[str] = []
        for task in epic.tasks:
            if task.status != "running" or (task.handle_id and task.handle_id in live):
                continue
            self.ledger.update_task_status(epic.id, task.id, "pending")
            reset.append(task.id)
        if reset:
            logger.info("orchestrator_recovered_tasks", epic_id=epic.id, tasks=reset)
        return reset

    async def resume(self, timeout: float | None = None) -> ResumeSummary:
        handoff = self.ledger.consume_handoff()
        reset = self.recover()
        run: EpicRunSummary | Failure | None = None
        if self.ledger.get_active_epic() is not None:
            run = await self.run_epic(timeout=timeout)
        return ResumeSummary(handoff=handoff, reset_tasks=reset, run=run)

    async def shutdown(self) -> None:
        await self.supervisor.stop()
        await self.dispatcher.shutdown()
