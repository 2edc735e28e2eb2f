from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from foreman.config import BatchConfig
from foreman.dispatch import DispatchResult, Dispatcher
from foreman.errors import ErrorCode, Failure
from foreman.registry import TaskRegistry

logger = structlog.get_logger()


@dataclass(slots=True)
class BatchTask:
    agent: str
    prompt: str
    context: dict[str, Any] = field(default_factory=dict)
    epic_id: str | None = None
    task_id: str | None = None

    @classmethod
    def coerce(cls, item: BatchTask | Mapping[str, Any]) -> BatchTask:
        if isinstance(item, BatchTask):
            return item
        return cls(
            agent=str(item.get("agent", "")),
            prompt=str(item.get("prompt", "")),
            context=dict(item.get("context") or {}),
            epic_id=item.get("epic_id"),
            task_id=item.get("task_id"),
        )


@dataclass(slots=True)
class GatherResult:
    completed: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def done(self) -> bool:
        return not self.pending

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": dict(self.completed),
            "failed": dict(self.failed),
            "pending": list(self.pending),
            "timed_out": self.timed_out,
        }


@dataclass(slots=True)
class BatchResult:
    success: bool
    task_ids: list[str] = field(default_factory=list)
    completed: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    timed_out: bool = False
    error: Failure | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "success": self.success,
            "task_ids": list(self.task_ids),
            "completed": dict(self.completed),
            "failed": dict(self.failed),
            "pending": list(self.pending),
            "timed_out": self.timed_out,
        }
        if self.error is not None:
            payload.update(self.error.to_dict())
        return payload


class BatchCoordinator:
    def __init__(
        self,
        dispatcher: Dispatcher,
        registry: TaskRegistry,
        *,
        timeout_seconds: float = 120.0,
        gather_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 0.25,
    ) -> None:
        self.dispatcher = dispatcher
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.gather_timeout_seconds = gather_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_config(cls, config: BatchConfig, dispatcher: Dispatcher, registry: TaskRegistry) -> BatchCoordinator:
        return cls(
            dispatcher,
            registry,
            timeout_seconds=config.timeout_seconds,
            gather_timeout_seconds=config.gather_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        )

    async def spawn_batch(
        self,
        tasks: Iterable[BatchTask | Mapping[str, Any]],
        wait: bool = True,
        timeout: float | None = None,
    ) -> BatchResult:
        batch = [BatchTask.coerce(item) for item in tasks]
        if not batch:
            return BatchResult(
                success=False,
                error=Failure(code=ErrorCode.NO_TASKS, message="Batch contains no tasks."),
            )

        missing = sorted({task.agent for task in batch if self.dispatcher.catalog.resolve(task.agent) is None})
        if missing:
            available = self.dispatcher.catalog.names()
            return BatchResult(
                success=False,
                error=Failure(
                    code=ErrorCode.AGENT_NOT_FOUND,
                    message=f"Unknown agents: {', '.join(missing)}",
                    details={"missing": missing, "available": available},
                ),
            )

        task_ids: list[str] = []
        failed: dict[str, str] = {}
        for task in batch:
            spawned = await self.dispatcher.dispatch(
                task.agent,
                task.prompt,
                task.context,
                mode="background",
                epic_id=task.epic_id,
                task_id=task.task_id,
            )
            if isinstance(spawned, DispatchResult):
                failed[task.agent] = spawned.failure.message if spawned.failure else "dispatch failed"
                continue
            task_ids.append(spawned.id)
        logger.info("batch_spawned", tasks=len(task_ids), wait=wait)

        if not wait:
            return BatchResult(success=not failed, task_ids=task_ids, failed=failed, pending=list(task_ids))

        gathered = await self.gather(task_ids, timeout=self.timeout_seconds if timeout is None else timeout)
        return BatchResult(
            success=not failed and not gathered.failed and not gathered.pending,
            task_ids=task_ids,
            completed=gathered.completed,
            failed={**failed, **gathered.failed},
            pending=gathered.pending,
            timed_out=gathered.timed_out,
        )

    def _poll(self, task_ids: Sequence[str]) -> GatherResult:
        result = GatherResult()
        for task_id in task_ids:
            entry = self.registry.get(task_id)
            if entry is None:
                result.failed[task_id] = f"{ErrorCode.UNKNOWN_ENTRY}: no registry entry {task_id}"
            elif entry.status == "completed":
                result.completed[task_id] = entry.result or ""
            elif entry.is_terminal:
                result.failed[task_id] = entry.error or entry.status
            else:
                result.pending.append(task_id)
        return result

    async def gather(
        self,
        task_ids: Sequence[str],
        timeout: float | None = None,
        partial: bool = True,
    ) -> GatherResult:
        """Wait for ``task_ids`` to resolve.

        On timeout with ``partial=False`` resolved results are withheld and
        every known id is reported pending.
        """
        ids = list(dict.fromkeys(task_ids))
        limit = self.gather_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + limit
        result = self._poll(ids)
        while result.pending and time.monotonic() < deadline:
            await asyncio.sleep(min(self.poll_interval_seconds, max(deadline - time.monotonic(), 0.0)))
            result = self._poll(ids)

        if result.pending:
            result.timed_out = True
            logger.info("batch_gather_timed_out", pending=len(result.pending), partial=partial)
            if not partial:
                unknown = {
                    task_id: error for task_id, error in result.failed.items() if self.registry.get(task_id) is None
                }
                return GatherResult(
                    failed=unknown,
                    pending=[task_id for task_id in ids if task_id not in unknown],
                    timed_out=True,
                )

        for task_id in [*result.completed, *result.failed]:
            self.registry.collect(task_id)
        return result
