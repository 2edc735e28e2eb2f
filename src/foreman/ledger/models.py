from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from foreman.ledger.files import utcnow_iso

TASK_STATUSES = ("pending", "running", "completed", "failed", "blocked", "skipped")
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed", "skipped"})
FINAL_TASK_STATUSES = frozenset({"completed", "skipped"})

EPIC_STATUSES = ("draft", "planning", "in_progress", "review", "completed", "failed", "paused")
PHASE_BY_EPIC_STATUS = {
    "draft": "CLARIFY",
    "planning": "PLAN",
    "in_progress": "EXECUTE",
    "review": "REVIEW",
    "completed": "COMPLETE",
    "failed": "COMPLETE",
    "paused": "EXECUTE",
}

OUTCOMES = ("SUCCEEDED", "PARTIAL", "FAILED")
LEARNING_KINDS = ("pattern", "antiPattern", "decision", "preference")
HANDOFF_REASONS = ("context_limit", "user_exit", "session_break")

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def slugify(title: str, max_length: int = 20) -> str:
    slug = _SLUG_PATTERN.sub("_", title.lower()).strip("_")
    return slug[:max_length].rstrip("_") or "epic"


def epic_id_for(title: str, today: datetime | None = None) -> str:
    stamp = (today or datetime.now(UTC)).strftime("%Y%m%d")
    return f"{slugify(title)}_{stamp}"


@dataclass(slots=True)
class Task:
    id: str
    title: str
    agent: str
    status: str = "pending"
    dependencies: list[str] = field(default_factory=list)
    result: str | None = None
    error: str | None = None
    handle_id: str | None = None
    attempts: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            agent=str(data.get("agent", "")),
            status=str(data.get("status", "pending")),
            dependencies=[str(item) for item in data.get("dependencies", [])],
            result=data.get("result"),
            error=data.get("error"),
            handle_id=data.get("handle_id"),
            attempts=int(data.get("attempts", 0)),
            created_at=str(data.get("created_at") or utcnow_iso()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass(slots=True)
class Epic:
    id: str
    title: str
    request: str
    status: str = "draft"
    tasks: list[Task] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    outcome: str | None = None

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def counts(self) -> dict[str, int]:
        counts = {status: 0 for status in TASK_STATUSES}
        for task in self.tasks:
            counts[task.status] = counts.get(task.status, 0) + 1
        counts["total"] = len(self.tasks)
        return counts

    def derive_outcome(self) -> str:
        completed = sum(1 for task in self.tasks if task.status == "completed")
        if self.tasks and completed == len(self.tasks):
            return "SUCCEEDED"
        if completed > 0:
            return "PARTIAL"
        return "FAILED"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "request": self.request,
            "status": self.status,
            "tasks": [task.to_dict() for task in self.tasks],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Epic:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            request=str(data.get("request", "")),
            status=str(data.get("status", "draft")),
            tasks=[Task.from_dict(item) for item in data.get("tasks", []) if isinstance(item, dict)],
            created_at=str(data.get("created_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
            completed_at=data.get("completed_at"),
            outcome=data.get("outcome"),
        )


@dataclass(frozen=True, slots=True)
class Learning:
    kind: str
    text: str
    source_epic: str | None = None
    source_agent: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def summary(self, width: int = 50) -> str:
        text = self.text if len(self.text) <= width else f"{self.text[:width]}..."
        return f"[{self.kind}] {text}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Learning:
        return cls(
            kind=str(data["kind"]),
            text=str(data["text"]),
            source_epic=data.get("source_epic"),
            source_agent=data.get("source_agent"),
            created_at=str(data.get("created_at") or utcnow_iso()),
        )


@dataclass(frozen=True, slots=True)
class Handoff:
    reason: str
    resume_instruction: str
    summary: str
    epic_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Handoff:
        return cls(
            reason=str(data.get("reason", "session_break")),
            resume_instruction=str(data.get("resume_instruction", "")),
            summary=str(data.get("summary", "")),
            epic_id=data.get("epic_id"),
            created_at=str(data.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class LedgerStatus:
    phase: str
    active_epic: Epic | None
    has_handoff: bool
    recent_learnings: list[str] = field(default_factory=list)
