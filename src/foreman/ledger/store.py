from __future__ import annotations

import json
import shutil
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog

from foreman.config import LedgerConfig
from foreman.errors import ErrorCode, LedgerError
from foreman.ledger import templates
from foreman.ledger.files import (
    atomic_write_text,
    file_lock,
    normalize_envelope,
    read_json,
    read_text,
    utcnow_iso,
    write_envelope,
)
from foreman.ledger.models import (
    EPIC_STATUSES,
    FINAL_TASK_STATUSES,
    HANDOFF_REASONS,
    LEARNING_KINDS,
    OUTCOMES,
    PHASE_BY_EPIC_STATUS,
    TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    Epic,
    Handoff,
    Learning,
    LedgerStatus,
    Task,
    epic_id_for,
)

logger = structlog.get_logger()

ARTIFACTS = ("spec.md", "plan.md", "log.md")
IDLE_PHASE = "CLARIFY"


def _default_index() -> dict[str, Any]:
    return {
        "active_epic": None,
        "phase": IDLE_PHASE,
        "recent_learnings": [],
        "handoff": None,
    }


class LedgerStore:
    """Durable Epic/Task state rooted at ``<workspace>/<root_dir>``.

    Every mutation runs under the workspace lock file and writes through a temp
    file and ``os.replace``. Missing or unparseable artifacts read as absent.
    """

    def __init__(
        self,
        workspace: Path,
        *,
        root_dir: str = ".foreman",
        max_tasks_per_epic: int = 3,
        recent_learnings: int = 5,
        lock_timeout_seconds: float = 3.0,
        stale_lock_seconds: float = 60.0,
    ) -> None:
        self.workspace = workspace.resolve()
        self.root = self.workspace / root_dir
        self.index_file = self.root / "index.json"
        self.epics_dir = self.root / "epics"
        self.archive_dir = self.root / "archive"
        self.learnings_dir = self.root / "learnings"
        self.lock_file = self.root / ".lock"
        self.max_tasks_per_epic = max_tasks_per_epic
        self.recent_learnings = recent_learnings
        self.lock_timeout_seconds = lock_timeout_seconds
        self.stale_lock_seconds = stale_lock_seconds

    @classmethod
    def from_config(cls, workspace: Path, config: LedgerConfig) -> LedgerStore:
        return cls(
            workspace,
            root_dir=config.root_dir,
            max_tasks_per_epic=config.max_tasks_per_epic,
            recent_learnings=config.recent_learnings,
            lock_timeout_seconds=config.lock_timeout_seconds,
            stale_lock_seconds=config.stale_lock_seconds,
        )

    @property
    def initialized(self) -> bool:
        return self.index_file.exists()

    def init(self) -> bool:
        """Create the ledger layout. Returns ``False`` if it already existed."""
        with self._lock():
            for directory in (self.epics_dir, self.archive_dir, self.learnings_dir):
                directory.mkdir(parents=True, exist_ok=True)
            if self.index_file.exists():
                return False
            write_envelope(self.index_file, _default_index(), revision=1)
        logger.info("ledger_initialized", root=str(self.root))
        return True

    @contextmanager
    def _lock(self) -> Iterator[None]:
        with file_lock(self.lock_file, self.lock_timeout_seconds, self.stale_lock_seconds):
            yield

    # index -----------------------------------------------------------------

    def _read_index_envelope(self) -> dict[str, Any]:
        envelope = normalize_envelope(read_json(self.index_file), _default_index())
        data = envelope["data"] if isinstance(envelope["data"], dict) else {}
        envelope["data"] = {**_default_index(), **data}
        return envelope

    def _read_index(self) -> dict[str, Any]:
        return self._read_index_envelope()["data"]

    def _update_index(self, updater: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        # Caller must hold the lock.
        envelope = self._read_index_envelope()
        data = envelope["data"]
        updater(data)
        write_envelope(self.index_file, data, revision=envelope["revision"] + 1)
        return data

    # epics -----------------------------------------------------------------

    def _epic_dir(self, epic_id: str) -> Path:
        return self.epics_dir / epic_id

    @staticmethod
    def _load_epic_from(metadata_file: Path) -> Epic | None:
        raw = read_json(metadata_file)
        if raw is None:
            return None
        data = normalize_envelope(raw, None)["data"]
        if not isinstance(data, dict):
            return None
        try:
            return Epic.from_dict(data)
        except (KeyError, TypeError, ValueError):
            return None

    def _load_epic(self, epic_id: str) -> Epic | None:
        return self._load_epic_from(self._epic_dir(epic_id) / "metadata.json")

    def _require_epic(self, epic_id: str) -> Epic:
        epic = self._load_epic(epic_id)
        if epic is None:
            raise LedgerError(ErrorCode.EPIC_NOT_FOUND, f"Epic not found: {epic_id}")
        return epic

    def _save_epic(self, epic: Epic, directory: Path | None = None) -> None:
        metadata_file = (directory or self._epic_dir(epic.id)) / "metadata.json"
        revision = normalize_envelope(read_json(metadata_file), None)["revision"]
        epic.updated_at = utcnow_iso()
        write_envelope(metadata_file, epic.to_dict(), revision=revision + 1)

    def _unique_epic_id(self, title: str) -> str:
        base = epic_id_for(title)
        candidate = base
        suffix = 2
        while self._epic_dir(candidate).exists() or (self.archive_dir / candidate).exists():
            candidate = f"{base}_{suffix}"
            suffix += 1
        return candidate

    def _sync_phase(self, epic: Epic) -> None:
        def _updater(index: dict[str, Any]) -> None:
            if index.get("active_epic") == epic.id:
                index["phase"] = PHASE_BY_EPIC_STATUS.get(epic.status, IDLE_PHASE)

        self._update_index(_updater)

    def _append_log_locked(self, epic_id: str, message: str) -> None:
        log_file = self._epic_dir(epic_id) / "log.md"
        current = read_text(log_file) or ""
        atomic_write_text(log_file, current + templates.log_line(utcnow_iso(), message))

    def get_active_epic(self) -> Epic | None:
        active = self._read_index().get("active_epic")
        if not active:
            return None
        return self._load_epic(str(active))

    def get_epic(self, epic_id: str) -> Epic:
        return self._require_epic(epic_id)

    def create_epic(self, title: str, request: str) -> str:
        title = title.strip()
        with self._lock():
            active = self._read_index().get("active_epic")
            if active and self._load_epic(str(active)) is not None:
                raise LedgerError(
                    ErrorCode.ALREADY_ACTIVE,
                    f"Cannot create epic: '{active}' is still active.",
                    details={"active_epic": active},
                )

            epic = Epic(id=self._unique_epic_id(title), title=title, request=request, status="planning")
            directory = self._epic_dir(epic.id)
            directory.mkdir(parents=True, exist_ok=True)
            self._save_epic(epic)
            atomic_write_text(
                directory / "spec.md",
                templates.render_spec(epic, self.summarize_learnings(self.recent_learnings)),
            )
            atomic_write_text(directory / "plan.md", templates.render_plan(epic))
            atomic_write_text(directory / "log.md", templates.render_log_header(epic))
            self._append_log_locked(epic.id, f"Epic created: {title}")

            def _updater(index: dict[str, Any]) -> None:
                index["active_epic"] = epic.id
                index["phase"] = PHASE_BY_EPIC_STATUS[epic.status]

            self._update_index(_updater)

        logger.info("ledger_epic_created", epic_id=epic.id, title=title)
        return epic.id

    def update_epic_status(self, epic_id: str, status: str) -> Epic:
        if status not in EPIC_STATUSES:
            raise LedgerError(ErrorCode.INVALID_TRANSITION, f"Unknown epic status: {status}")
        with self._lock():
            epic = self._require_epic(epic_id)
            if epic.status == status:
                return epic
            epic.status = status
            self._save_epic(epic)
            self._append_log_locked(epic_id, f"Epic status -> {status}")
            self._sync_phase(epic)
        return epic

    # tasks -----------------------------------------------------------------

    @staticmethod
    def _next_task_id(epic: Epic, phase: int) -> str:
        prefix = f"{phase}."
        number = sum(1 for task in epic.tasks if task.id.startswith(prefix)) + 1
        while epic.task(f"{prefix}{number}") is not None:
            number += 1
        return f"{prefix}{number}"

    def add_task(
        self,
        epic_id: str,
        title: str,
        agent: str,
        dependencies: Iterable[str] = (),
        *,
        phase: int = 1,
        task_id: str | None = None,
    ) -> str:
        deps = [str(item) for item in dependencies]
        with self._lock():
            epic = self._require_epic(epic_id)
            if len(epic.tasks) >= self.max_tasks_per_epic:
                raise LedgerError(
                    ErrorCode.TASK_LIMIT_REACHED,
                    f"Cannot create task: epic already has {self.max_tasks_per_epic} tasks.",
                )
            new_id = task_id or self._next_task_id(epic, phase)
            if epic.task(new_id) is not None:
                raise LedgerError(ErrorCode.DUPLICATE_TASK, f"Task already exists: {new_id}")
            unknown = [dep for dep in deps if epic.task(dep) is None]
            if unknown:
                raise LedgerError(
                    ErrorCode.UNKNOWN_DEPENDENCY,
                    f"Unknown dependencies for task {new_id}: {', '.join(unknown)}",
                    details={"unknown": unknown},
                )

            task = Task(id=new_id, title=title, agent=agent, dependencies=deps)
            epic.tasks.append(task)
            self._save_epic(epic)
            plan_file = self._epic_dir(epic_id) / "plan.md"
            plan = read_text(plan_file) or templates.render_plan(epic)
            atomic_write_text(plan_file, templates.update_plan_checkbox(plan, task))
            self._append_log_locked(epic_id, f"Task {new_id} added for {agent}: {title}")

        logger.info("ledger_task_added", epic_id=epic_id, task_id=new_id, agent=agent)
        return new_id

    def update_task_status(
        self,
        epic_id: str,
        task_id: str,
        status: str,
        *,
        result: str | None = None,
        error: str | None = None,
        handle_id: str | None = None,
    ) -> Task:
        if status not in TASK_STATUSES:
            raise LedgerError(ErrorCode.INVALID_TRANSITION, f"Unknown task status: {status}")

        with self._lock():
            epic = self._require_epic(epic_id)
            task = epic.task(task_id)
            if task is None:
                raise LedgerError(ErrorCode.TASK_NOT_FOUND, f"Task not found: {task_id}")

            if task.status in TERMINAL_TASK_STATUSES and task.status == status:
                return task
            if task.status in FINAL_TASK_STATUSES or (task.status == "failed" and status == "completed"):
                raise LedgerError(
                    ErrorCode.INVALID_TRANSITION,
                    f"Task {task_id} cannot move from {task.status} to {status}.",
                )

            if status == "running" and task.status != "running":
                unmet = [
                    dep
                    for dep in task.dependencies
                    if (epic.task(dep) is None or epic.task(dep).status != "completed")
                ]
                if unmet:
                    raise LedgerError(
                        ErrorCode.DEPENDENCY_UNMET,
                        f"Task {task_id} depends on unfinished tasks: {', '.join(unmet)}",
                        details={"unmet": unmet},
                    )
                task.started_at = utcnow_iso()
                task.completed_at = None
                task.attempts += 1

            task.status = status
            if result is not None:
                task.result = result
            if error is not None:
                task.error = error
            if handle_id is not None:
                task.handle_id = handle_id
            if status in TERMINAL_TASK_STATUSES:
                task.completed_at = utcnow_iso()

            if status == "running" and epic.status != "in_progress":
                epic.status = "in_progress"
            if epic.tasks and all(item.is_terminal for item in epic.tasks):
                epic.status = (
                    "completed"
                    if all(item.status in FINAL_TASK_STATUSES for item in epic.tasks)
                    else "failed"
                )
                epic.completed_at = utcnow_iso()

            self._save_epic(epic)
            plan_file = self._epic_dir(epic_id) / "plan.md"
            plan = read_text(plan_file) or templates.render_plan(epic)
            atomic_write_text(plan_file, templates.update_plan_checkbox(plan, task))
            note = f": {error}" if status == "failed" and error else ""
            self._append_log_locked(epic_id, f"Task {task_id} -> {status}{note}")
            self._sync_phase(epic)

        logger.info("ledger_task_status", epic_id=epic_id, task_id=task_id, status=status)
        return task

    def ready_tasks(self, epic_id: str) -> list[Task]:
        epic = self._require_epic(epic_id)
        ready: list[Task] = []
        for task in epic.tasks:
            if task.status != "pending":
                continue
            deps = [epic.task(dep) for dep in task.dependencies]
            if all(dep is not None and dep.status == "completed" for dep in deps):
                ready.append(task)
        return ready

    # artifacts -------------------------------------------------------------

    def _artifact(self, epic_id: str, name: str) -> Path:
        return self._epic_dir(epic_id) / name

    def read_spec(self, epic_id: str) -> str | None:
        return read_text(self._artifact(epic_id, "spec.md"))

    def write_spec(self, epic_id: str, content: str) -> None:
        with self._lock():
            self._require_epic(epic_id)
            atomic_write_text(self._artifact(epic_id, "spec.md"), content)

    def read_plan(self, epic_id: str) -> str | None:
        return read_text(self._artifact(epic_id, "plan.md"))

    def write_plan(self, epic_id: str, content: str) -> None:
        with self._lock():
            self._require_epic(epic_id)
            atomic_write_text(self._artifact(epic_id, "plan.md"), content)

    def read_log(self, epic_id: str) -> str | None:
        return read_text(self._artifact(epic_id, "log.md"))

    def append_log(self, epic_id: str, message: str) -> None:
        with self._lock():
            self._require_epic(epic_id)
            self._append_log_locked(epic_id, message)

    # learnings -------------------------------------------------------------

    def add_learning(
        self,
        kind: str,
        text: str,
        source_epic: str | None = None,
        source_agent: str | None = None,
    ) -> Learning:
        if kind not in LEARNING_KINDS:
            raise LedgerError(
                ErrorCode.INVALID_LEARNING,
                f"Unknown learning kind '{kind}'; expected one of {', '.join(LEARNING_KINDS)}.",
            )
        if not text.strip():
            raise LedgerError(ErrorCode.INVALID_LEARNING, "Learning text must not be empty.")

        learning = Learning(
            kind=kind,
            text=text.strip(),
            source_epic=source_epic,
            source_agent=source_agent,
        )
        with self._lock():
            learnings_file = self.learnings_dir / f"{kind}.jsonl"
            current = read_text(learnings_file) or ""
            if current and not current.endswith("\n"):
                current += "\n"
            line = json.dumps(learning.to_dict(), ensure_ascii=False)
            atomic_write_text(learnings_file, f"{current}{line}\n")

            def _updater(index: dict[str, Any]) -> None:
                recent = [*index.get("recent_learnings", []), learning.summary()]
                index["recent_learnings"] = recent[-self.recent_learnings :]

            self._update_index(_updater)

        logger.debug("ledger_learning_added", kind=kind, source_epic=source_epic)
        return learning

    def read_learnings(self, kind: str | None = None) -> list[Learning]:
        kinds = LEARNING_KINDS if kind is None else (kind,)
        learnings: list[Learning] = []
        for item in kinds:
            content = read_text(self.learnings_dir / f"{item}.jsonl")
            if not content:
                continue
            for raw_line in content.splitlines():
                if not raw_line.strip():
                    continue
                try:
                    payload = json.loads(raw_line)
                    learnings.append(Learning.from_dict(payload))
                except (json.JSONDecodeError, KeyError, TypeError):
                    logger.warning("ledger_learning_skipped", kind=item)
        learnings.sort(key=lambda learning: learning.created_at)
        return learnings

    def summarize_learnings(self, limit: int | None = None) -> list[str]:
        learnings = self.read_learnings()
        if limit is not None:
            learnings = learnings[-limit:] if limit > 0 else []
        return [learning.summary() for learning in learnings]

    # archive ---------------------------------------------------------------

    def archive_epic(self, outcome: str | None = None) -> str:
        if outcome is not None and outcome not in OUTCOMES:
            raise LedgerError(ErrorCode.INVALID_TRANSITION, f"Unknown outcome: {outcome}")

        with self._lock():
            active = self._read_index().get("active_epic")
            epic = self._load_epic(str(active)) if active else None
            if epic is None:
                raise LedgerError(ErrorCode.NO_ACTIVE_EPIC, "No active epic to archive.")

            epic.outcome = outcome or epic.derive_outcome()
            epic.completed_at = epic.completed_at or utcnow_iso()
            self._append_log_locked(epic.id, f"Epic archived with outcome {epic.outcome}")

            live_dir = self._epic_dir(epic.id)
            target_dir = self.archive_dir / epic.id
            target_dir.mkdir(parents=True, exist_ok=True)
            for name in ARTIFACTS:
                content = read_text(live_dir / name)
                if content is not None:
                    atomic_write_text(target_dir / name, content)
            self._save_epic(epic, directory=target_dir)

            def _updater(index: dict[str, Any]) -> None:
                index["active_epic"] = None
                index["phase"] = IDLE_PHASE

            self._update_index(_updater)
            shutil.rmtree(live_dir)

        logger.info("ledger_epic_archived", epic_id=epic.id, outcome=epic.outcome)
        return epic.id

    def read_archived_epic(self, epic_id: str) -> Epic | None:
        return self._load_epic_from(self.archive_dir / epic_id / "metadata.json")

    def read_archived_artifact(self, epic_id: str, name: str) -> str | None:
        return read_text(self.archive_dir / epic_id / name)

    def list_archive(self) -> list[str]:
        if not self.archive_dir.exists():
            return []
        return sorted(
            path.name for path in self.archive_dir.iterdir() if (path / "metadata.json").exists()
        )

    # handoff ---------------------------------------------------------------

    def create_handoff(self, reason: str, resume_instruction: str, summary: str) -> Handoff:
        if reason not in HANDOFF_REASONS:
            raise LedgerError(
                ErrorCode.INVALID_HANDOFF,
                f"Unknown handoff reason '{reason}'; expected one of {', '.join(HANDOFF_REASONS)}.",
            )
        with self._lock():
            index = self._read_index()
            handoff = Handoff(
                reason=reason,
                resume_instruction=resume_instruction,
                summary=summary,
                epic_id=index.get("active_epic"),
            )

            def _updater(data: dict[str, Any]) -> None:
                data["handoff"] = handoff.to_dict()

            self._update_index(_updater)
        logger.info("ledger_handoff_created", reason=reason, epic_id=handoff.epic_id)
        return handoff

    def get_handoff(self) -> Handoff | None:
        payload = self._read_index().get("handoff")
        if not isinstance(payload, dict):
            return None
        return Handoff.from_dict(payload)

    def clear_handoff(self) -> bool:
        return self.consume_handoff() is not None

    def consume_handoff(self) -> Handoff | None:
        """Read and clear the handoff slot in one locked write."""
        consumed: list[Handoff] = []
        with self._lock():

            def _updater(data: dict[str, Any]) -> None:
                payload = data.get("handoff")
                if isinstance(payload, dict):
                    consumed.append(Handoff.from_dict(payload))
                data["handoff"] = None

            self._update_index(_updater)
        if consumed:
            logger.info("ledger_handoff_consumed", reason=consumed[0].reason)
            return consumed[0]
        return None

    # status ----------------------------------------------------------------

    def status(self) -> LedgerStatus:
        index = self._read_index()
        active_id = index.get("active_epic")
        epic = self._load_epic(str(active_id)) if active_id else None
        return LedgerStatus(
            phase=str(index.get("phase") or IDLE_PHASE),
            active_epic=epic,
            has_handoff=isinstance(index.get("handoff"), dict),
            recent_learnings=list(index.get("recent_learnings") or []),
        )

    def export(self) -> dict[str, Any]:
        status = self.status()
        return {
            "phase": status.phase,
            "active_epic": status.active_epic.to_dict() if status.active_epic else None,
            "handoff": self._read_index().get("handoff"),
            "recent_learnings": status.recent_learnings,
            "archive": self.list_archive(),
        }
