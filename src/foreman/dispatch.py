from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import structlog

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from foreman.catalog import AgentCatalog, AgentDescriptor
from foreman.config import DispatchConfig
from foreman.dialogue import (
    DIALOGUE_INSTRUCTIONS,
    DialogueState,
    UserReply,
    continuation_hint,
    initial_state,
    render_history,
    reply_from_output,
    transition,
)
from foreman.errors import DialogueError, ErrorCode, Failure
from foreman.registry import EXECUTION_MODES, Handle, RegistryEntry, TaskRegistry

logger = structlog.get_logger()

STOP_WORDS = frozenset(
    {
        "the", "and", "for", "with", "that", "this", "from", "into", "onto", "are", "was",
        "were", "will", "would", "should", "could", "can", "has", "have", "had", "not", "but",
        "all", "any", "its", "our", "your", "their", "you", "they", "them", "then", "than",
        "also", "use", "using", "make", "need", "needs", "please", "add", "task", "via",
    }
)
_WORD_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_-]+")

STRUCTURED_SECTIONS = (
    ("goals", "Goals"),
    ("constraints", "Constraints"),
    ("assumptions", "Assumptions"),
    ("relevant_memories", "Relevant Past Learnings"),
    ("files_assigned", "Files Assigned"),
)


@runtime_checkable
class LongTermMemory(Protocol):
    def find(self, query: str, limit: int = 5) -> list[Any]: ...

    def store(self, record: dict[str, Any]) -> None: ...


@dataclass(slots=True)
class DispatchResult:
    handle: Handle | None
    success: bool
    status: str
    output: str = ""
    timed_out: bool = False
    dialogue: DialogueState | None = None
    final: bool = True
    failure: Failure | None = None
    continuation_hint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "handle_id": self.handle.id if self.handle else None,
            "output": self.output,
            "timed_out": self.timed_out,
            "final": self.final,
        }
        if self.dialogue is not None:
            payload["dialogue_state"] = self.dialogue.to_dict()
        if self.failure is not None:
            payload.update(self.failure.to_dict())
        if self.continuation_hint:
            payload["continuation_hint"] = self.continuation_hint
        return payload


def invalid_mode(mode: str) -> Failure:
    return Failure(
        code=ErrorCode.INVALID_MODE,
        message=f"Unsupported execution mode: {mode}",
        details={"mode": mode, "supported": list(EXECUTION_MODES)},
    )


def extract_keywords(text: str, limit: int = 8) -> list[str]:
    keywords: list[str] = []
    for match in _WORD_PATTERN.finditer(text.lower()):
        word = match.group(0)
        if len(word) <= 2 or word in STOP_WORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def _memory_text(record: Any) -> str:
    if isinstance(record, str):
        return record
    if isinstance(record, Mapping):
        for key in ("content", "text", "information", "summary"):
            value = record.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return str(record)


def _render_items(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [_memory_text(item) for item in value]
    return [json.dumps(value, ensure_ascii=False, default=str)]


def build_payload(
    prompt: str,
    context: Mapping[str, Any] | None = None,
    *,
    dialogue: DialogueState | None = None,
    multi_turn: bool = False,
    decision: str | None = None,
) -> str:
    """Assemble the user prompt.

    Order: dialogue instructions, prior dialogue history, structured context,
    the user's decision on a pending proposal, then the literal prompt.
    """
    sections: list[str] = []
    if multi_turn:
        sections.append(DIALOGUE_INSTRUCTIONS)
    if dialogue is not None:
        history = render_history(dialogue)
        if history:
            sections.append(history)

    context = dict(context or {})
    for key, title in STRUCTURED_SECTIONS:
        items = [item for item in _render_items(context.pop(key, None) or []) if item.strip()]
        if items:
            sections.append("\n".join([f"## {title}", "", *[f"- {item}" for item in items]]))
    if context:
        sections.append(
            "## Additional Context\n\n"
            + json.dumps(context, ensure_ascii=False, indent=2, default=str)
        )
    if decision:
        sections.append(f"## User Decision\n\nThe user chose to {decision} the proposal.")

    sections.append(prompt)
    return "\n\n".join(section.strip() for section in sections if section.strip())


class Dispatcher:
    """Invokes catalog agents on a backend, blocking or in the background."""

    def __init__(
        self,
        catalog: AgentCatalog,
        backend: AgentBackend,
        registry: TaskRegistry,
        *,
        memory: LongTermMemory | None = None,
        default_timeout_seconds: float = 60.0,
        inject_memories: bool = True,
        max_memories: int = 5,
    ) -> None:
        self.catalog = catalog
        self.backend = backend
        self.registry = registry
        self.memory = memory
        self.default_timeout_seconds = default_timeout_seconds
        self.inject_memories = inject_memories
        self.max_memories = max_memories
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @classmethod
    def from_config(
        cls,
        config: DispatchConfig,
        catalog: AgentCatalog,
        backend: AgentBackend,
        registry: TaskRegistry,
        *,
        memory: LongTermMemory | None = None,
    ) -> Dispatcher:
        return cls(
            catalog,
            backend,
            registry,
            memory=memory,
            default_timeout_seconds=config.default_timeout_seconds,
            inject_memories=config.inject_memories,
            max_memories=config.max_memories,
        )

    def _not_found(self, agent_name: str) -> Failure:
        siblings = self.catalog.siblings(agent_name)
        message = f"Agent '{agent_name}' not found."
        if siblings:
            message += f" Available agents: {', '.join(siblings)}"
        return Failure(
            code=ErrorCode.AGENT_NOT_FOUND,
            message=message,
            details={"agent": agent_name, "available": siblings},
        )

    def _with_memories(self, prompt: str, context: dict[str, Any]) -> dict[str, Any]:
        if self.memory is None or not self.inject_memories or context.get("relevant_memories"):
            return context
        keywords = extract_keywords(prompt)
        if not keywords:
            return context
        try:
            records = self.memory.find(" ".join(keywords), limit=self.max_memories)
        except Exception as exc:
            logger.warning("memory_lookup_failed", error=str(exc))
            return context
        if records:
            context = {**context, "relevant_memories": [_memory_text(item) for item in records]}
        return context

    @staticmethod
    def _host_context(descriptor: AgentDescriptor) -> dict[str, Any]:
        context: dict[str, Any] = {"agent": descriptor.name, "agent_version": descriptor.version}
        if descriptor.model:
            context["model"] = descriptor.model
        if descriptor.parameters:
            context["parameters"] = dict(descriptor.parameters)
        return context

    async def dispatch(
        self,
        agent_name: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
        mode: str = "blocking",
        *,
        parent: Handle | None = None,
        dialogue: DialogueState | None = None,
        multi_turn: bool = False,
        timeout: float | None = None,
        epic_id: str | None = None,
        task_id: str | None = None,
        decision: str | None = None,
    ) -> DispatchResult | Handle:
        """Run ``prompt`` on ``agent_name``.

        Blocking mode returns a ``DispatchResult``; background mode registers
        the run and returns its ``Handle`` at once. Passing ``dialogue`` (or
        ``multi_turn=True``) records ``prompt`` as the user's turn, and
        ``decision`` ("approve" or "reject") answers a pending proposal.
        """
        if mode not in EXECUTION_MODES:
            return DispatchResult(
                handle=None,
                success=False,
                status="failed",
                failure=invalid_mode(mode),
            )

        descriptor = self.catalog.resolve(agent_name)
        if descriptor is None:
            failure = self._not_found(agent_name)
            logger.info("dispatch_agent_not_found", agent=agent_name)
            return DispatchResult(handle=None, success=False, status="failed", failure=failure)

        multi_turn = multi_turn or dialogue is not None or decision is not None
        state: DialogueState | None = None
        if multi_turn:
            try:
                state = transition(dialogue or initial_state(), UserReply(content=prompt, decision=decision))
            except DialogueError as exc:
                return DispatchResult(
                    handle=None,
                    success=False,
                    status="failed",
                    dialogue=dialogue,
                    final=dialogue.is_final if dialogue else False,
                    failure=exc.to_failure(),
                )

        run_context = self._with_memories(prompt, dict(context or {}))
        payload = build_payload(
            prompt, run_context, dialogue=dialogue, multi_turn=multi_turn, decision=decision
        )

        if mode == "background":
            return self._spawn_background(descriptor, payload, parent, epic_id, task_id, timeout)
        return await self._run_blocking(descriptor, payload, parent, state, timeout)

    async def _run_blocking(
        self,
        descriptor: AgentDescriptor,
        payload: str,
        parent: Handle | None,
        state: DialogueState | None,
        timeout: float | None,
    ) -> DispatchResult:
        handle = Handle.new(descriptor.name, "blocking", parent)
        handle.status = "running"
        deadline = self.default_timeout_seconds if timeout is None else timeout
        logger.debug("dispatch_blocking_start", handle_id=handle.id, agent=descriptor.name)
        try:
            output = await asyncio.wait_for(
                self.backend.collect(
                    descriptor.system_prompt,
                    payload,
                    self._host_context(descriptor),
                    list(descriptor.allowed_tools) or None,
                ),
                timeout=deadline,
            )
        except (TimeoutError, BackendTimeoutError):
            handle.status = "timed_out"
            logger.warning("dispatch_timed_out", handle_id=handle.id, agent=descriptor.name, timeout=deadline)
            return DispatchResult(
                handle=handle,
                success=False,
                status="timed_out",
                timed_out=True,
                dialogue=state,
                final=False,
                failure=Failure(
                    code=ErrorCode.TIMED_OUT,
                    message=f"Agent '{descriptor.name}' did not finish within {deadline:g}s.",
                ),
            )
        except BackendExecutionError as exc:
            handle.status = "failed"
            logger.warning("dispatch_spawn_failed", handle_id=handle.id, agent=descriptor.name, error=str(exc))
            return DispatchResult(
                handle=handle,
                success=False,
                status="failed",
                dialogue=state,
                final=False,
                failure=Failure(
                    code=ErrorCode.SPAWN_FAILED,
                    message=str(exc),
                    details={"backend": exc.backend, "retriable": exc.retriable, "exit_code": exc.exit_code},
                ),
            )

        handle.status = "completed"
        if state is None:
            return DispatchResult(handle=handle, success=True, status="completed", output=output)

        # an approve/reject decision already ended the dialogue
        next_state = state if state.is_terminal else transition(state, reply_from_output(output))
        return DispatchResult(
            handle=handle,
            success=True,
            status="completed",
            output=output,
            dialogue=next_state,
            final=next_state.is_final,
            continuation_hint=continuation_hint(next_state, handle.id),
        )

    def _spawn_background(
        self,
        descriptor: AgentDescriptor,
        payload: str,
        parent: Handle | None,
        epic_id: str | None,
        task_id: str | None,
        timeout: float | None,
    ) -> Handle:
        handle = Handle.new(descriptor.name, "background", parent)
        entry_id = self.registry.register(
            handle,
            descriptor.name,
            payload=payload,
            system_prompt=descriptor.system_prompt,
            epic_id=epic_id,
            task_id=task_id,
            timeout_seconds=timeout,
        )
        self._launch(entry_id)
        logger.debug("dispatch_background_start", handle_id=handle.id, agent=descriptor.name)
        return handle

    def _launch(self, entry_id: str) -> None:
        entry = self.registry.get(entry_id)
        if entry is None:
            return
        descriptor = self.catalog.resolve(entry.agent_name)
        if descriptor is None:
            self.registry.fail(entry_id, self._not_found(entry.agent_name).message)
            return
        self.registry.mark_running(entry_id)
        task = asyncio.create_task(
            self._run_background(entry_id, entry.attempt, descriptor, entry.system_prompt, entry.payload)
        )
        self._tasks[entry_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._tasks.get(entry_id) is done:
                self._tasks.pop(entry_id, None)

        task.add_done_callback(_forget)

    async def _run_background(
        self,
        entry_id: str,
        attempt: int,
        descriptor: AgentDescriptor,
        system_prompt: str,
        payload: str,
    ) -> None:
        chunks: list[str] = []
        try:
            async for chunk in self.backend.execute(
                system_prompt or descriptor.system_prompt,
                payload,
                self._host_context(descriptor),
                list(descriptor.allowed_tools) or None,
            ):
                chunks.append(chunk)
                self.registry.heartbeat(entry_id, note=f"{len(chunks)} chunks", attempt=attempt)
        except BackendExecutionError as exc:
            if exc.retriable:
                logger.warning("dispatch_background_retry_requested", entry_id=entry_id, error=str(exc))
                self.registry.request_retry(entry_id, str(exc), attempt=attempt)
            else:
                self.registry.fail(entry_id, f"{ErrorCode.SPAWN_FAILED}: {exc}", attempt=attempt)
            return
        except Exception as exc:
            logger.exception("dispatch_background_crashed", entry_id=entry_id)
            self.registry.request_retry(entry_id, f"{type(exc).__name__}: {exc}", attempt=attempt)
            return
        self.registry.complete(entry_id, "".join(chunks).strip(), attempt=attempt)

    def relaunch(self, entry: RegistryEntry) -> None:
        """Re-dispatch a registry entry's stored payload under its current attempt."""
        previous = self._tasks.pop(entry.id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        logger.info("dispatch_relaunch", entry_id=entry.id, attempt=entry.attempt, agent=entry.agent_name)
        self._launch(entry.id)

    def cancel(self, entry_id: str, reason: str = "cancelled") -> bool:
        cancelled = self.registry.fail(entry_id, reason)
        task = self._tasks.pop(entry_id, None)
        if task is not None and not task.done():
            task.cancel()
        return cancelled

    def running_tasks(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
