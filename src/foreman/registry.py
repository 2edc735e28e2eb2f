from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any
from uuid import uuid4

import structlog

from foreman.config import RegistryConfig
from foreman.errors import ErrorCode, RegistryError
from foreman.ledger.files import atomic_write_json, read_json

logger = structlog.get_logger()

HANDLE_STATUSES = ("pending", "running", "completed", "failed", "timed_out")
TERMINAL_HANDLE_STATUSES = frozenset({"completed", "failed", "timed_out"})
EXECUTION_MODES = ("blocking", "background")

Listener = Callable[["RegistryEntry"], None]


@dataclass(slots=True)
class Handle:
    id: str
    agent_name: str
    mode: str = "blocking"
    parent_id: str | None = None
    status: str = "pending"

    @classmethod
    def new(cls, agent_name: str, mode: str = "blocking", parent: Handle | None = None) -> Handle:
        if mode not in EXECUTION_MODES:
            raise ValueError(f"Unsupported execution mode: {mode}")
        return cls(
            id=f"h_{uuid4().hex[:12]}",
            agent_name=agent_name,
            mode=mode,
            parent_id=parent.id if parent is not None else None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HANDLE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RegistryEntry:
    id: str
    handle_id: str
    agent_name: str
    status: str = "pending"
    created_at: float = 0.0
    started_at: float | None = None
    last_heartbeat: float = 0.0
    heartbeat_note: str | None = None
    retry_count: int = 0
    attempt: int = 0
    retry_requested: bool = False
    result: str | None = None
    error: str | None = None
    last_error: str | None = None
    payload: str = ""
    system_prompt: str = ""
    parent_id: str | None = None
    epic_id: str | None = None
    task_id: str | None = None
    timeout_seconds: float | None = None
    completed_at: float | None = None
    collected: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HANDLE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistryEntry:
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


class TaskRegistry:
    """In-memory index of outstanding executions, optionally snapshotted to JSON.

    Terminal states are final. ``complete``/``fail`` return ``False`` when the
    entry already finished or when ``attempt`` names a superseded attempt.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        snapshot_path: Path | None = None,
        retention_seconds: float = 3600.0,
    ) -> None:
        self.clock = clock
        self.snapshot_path = snapshot_path
        self.retention_seconds = retention_seconds
        self._entries: dict[str, RegistryEntry] = {}
        self._handles: dict[str, Handle] = {}
        self._listeners: list[Listener] = []
        if snapshot_path is not None:
            self._load_snapshot()

    @classmethod
    def from_config(
        cls,
        config: RegistryConfig,
        *,
        snapshot_path: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> TaskRegistry:
        return cls(
            clock=clock,
            snapshot_path=snapshot_path if config.persist_snapshot else None,
            retention_seconds=config.retention_seconds,
        )

    def _load_snapshot(self) -> None:
        payload = read_json(self.snapshot_path)
        if not isinstance(payload, dict):
            return
        for raw in payload.get("entries", []):
            if not isinstance(raw, dict):
                continue
            try:
                entry = RegistryEntry.from_dict(raw)
            except TypeError:
                logger.warning("registry_snapshot_entry_skipped", entry=raw.get("id"))
                continue
            self._entries[entry.id] = entry
        logger.debug("registry_snapshot_loaded", entries=len(self._entries))

    def _persist(self) -> None:
        if self.snapshot_path is None:
            return
        atomic_write_json(
            self.snapshot_path,
            {"entries": [entry.to_dict() for entry in self._entries.values()]},
        )

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, entry: RegistryEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("registry_listener_failed", entry_id=entry.id)

    def register(
        self,
        handle: Handle,
        agent_name: str | None = None,
        *,
        payload: str = "",
        system_prompt: str = "",
        epic_id: str | None = None,
        task_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> str:
        if handle.id in self._entries:
            raise RegistryError(ErrorCode.DUPLICATE_ENTRY, f"Entry already registered: {handle.id}")
        now = self.clock()
        entry = RegistryEntry(
            id=handle.id,
            handle_id=handle.id,
            agent_name=agent_name or handle.agent_name,
            created_at=now,
            last_heartbeat=now,
            payload=payload,
            system_prompt=system_prompt,
            parent_id=handle.parent_id,
            epic_id=epic_id,
            task_id=task_id,
            timeout_seconds=timeout_seconds,
        )
        self._entries[entry.id] = entry
        self._handles[entry.id] = handle
        self._persist()
        logger.debug("registry_entry_registered", entry_id=entry.id, agent=entry.agent_name)
        return entry.id

    def _sync_handle(self, entry: RegistryEntry) -> None:
        handle = self._handles.get(entry.id)
        if handle is not None:
            handle.status = entry.status

    def _live(self, entry_id: str, attempt: int | None, action: str) -> RegistryEntry | None:
        entry = self._entries.get(entry_id)
        if entry is None:
            logger.debug("registry_unknown_entry", entry_id=entry_id, action=action)
            return None
        if entry.is_terminal:
            logger.info("registry_late_update_dropped", entry_id=entry_id, action=action, status=entry.status)
            return None
        if attempt is not None and attempt != entry.attempt:
            logger.info(
                "registry_superseded_attempt_dropped",
                entry_id=entry_id,
                action=action,
                attempt=attempt,
                current_attempt=entry.attempt,
            )
            return None
        return entry

    def heartbeat(self, entry_id: str, note: str | None = None, *, attempt: int | None = None) -> None:
        entry = self._live(entry_id, attempt, "heartbeat")
        if entry is None:
            return
        entry.last_heartbeat = self.clock()
        if note is not None:
            entry.heartbeat_note = note

    def mark_running(self, entry_id: str) -> None:
        entry = self._live(entry_id, None, "mark_running")
        if entry is None:
            return
        now = self.clock()
        entry.status = "running"
        entry.started_at = now
        entry.last_heartbeat = now
        self._sync_handle(entry)
        self._persist()

    def complete(self, entry_id: str, result: str, *, attempt: int | None = None) -> bool:
        entry = self._live(entry_id, attempt, "complete")
        if entry is None:
            return False
        entry.status = "completed"
        entry.result = result
        entry.completed_at = self.clock()
        entry.retry_requested = False
        self._sync_handle(entry)
        self._persist()
        logger.debug("registry_entry_completed", entry_id=entry_id)
        self._notify(entry)
        return True

    def fail(
        self,
        entry_id: str,
        error: str,
        *,
        attempt: int | None = None,
        status: str = "failed",
    ) -> bool:
        if status not in ("failed", "timed_out"):
            raise ValueError(f"Not a failure status: {status}")
        entry = self._live(entry_id, attempt, "fail")
        if entry is None:
            return False
        entry.status = status
        entry.error = error
        entry.completed_at = self.clock()
        entry.retry_requested = False
        self._sync_handle(entry)
        self._persist()
        logger.info("registry_entry_failed", entry_id=entry_id, status=status, error=error)
        self._notify(entry)
        return True

    def request_retry(self, entry_id: str, error: str, *, attempt: int | None = None) -> None:
        entry = self._live(entry_id, attempt, "request_retry")
        if entry is None:
            return
        entry.retry_requested = True
        entry.last_error = error
        self._persist()

    def record_retry(self, entry_id: str) -> RegistryEntry:
        """Start a new attempt for ``entry_id``; results of older attempts are dropped."""
        entry = self._entries.get(entry_id)
        if entry is None:
            raise RegistryError(ErrorCode.UNKNOWN_ENTRY, f"Unknown registry entry: {entry_id}")
        if entry.is_terminal:
            raise RegistryError(
                ErrorCode.INVALID_TRANSITION,
                f"Entry {entry_id} already finished with status {entry.status}.",
            )
        now = self.clock()
        entry.retry_count += 1
        entry.attempt += 1
        entry.retry_requested = False
        entry.status = "pending"
        entry.started_at = None
        entry.last_heartbeat = now
        self._sync_handle(entry)
        self._persist()
        return entry

    def get(self, entry_id: str) -> RegistryEntry | None:
        return self._entries.get(entry_id)

    def handle(self, entry_id: str) -> Handle | None:
        return self._handles.get(entry_id)

    def list(self, status: str | None = None) -> list[RegistryEntry]:
        entries = sorted(self._entries.values(), key=lambda entry: entry.created_at)
        if status is None:
            return entries
        return [entry for entry in entries if entry.status == status]

    def outstanding(self) -> list[RegistryEntry]:
        return [entry for entry in self.list() if not entry.is_terminal]

    def collect(self, entry_id: str) -> RegistryEntry | None:
        entry = self._entries.get(entry_id)
        if entry is None or not entry.is_terminal:
            return None
        entry.collected = True
        self._persist()
        return entry

    def gc(self) -> int:
        now = self.clock()
        expired = [
            entry.id
            for entry in self._entries.values()
            if entry.is_terminal
            and (
                entry.collected
                or (entry.completed_at is not None and now - entry.completed_at > self.retention_seconds)
            )
        ]
        for entry_id in expired:
            self._entries.pop(entry_id, None)
            self._handles.pop(entry_id, None)
        if expired:
            self._persist()
            logger.debug("registry_gc", removed=len(expired))
        return len(expired)

    def summary(self) -> dict[str, int]:
        counts = {status: 0 for status in HANDLE_STATUSES}
        for entry in self._entries.values():
            counts[entry.status] = counts.get(entry.status, 0) + 1
        counts["total"] = len(self._entries)
        return counts
