from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import structlog

from foreman.config import SupervisorConfig
from foreman.errors import LedgerError
from foreman.registry import RegistryEntry, TaskRegistry

if TYPE_CHECKING:
    from foreman.dispatch import Dispatcher
    from foreman.ledger import LedgerStore

logger = structlog.get_logger()

EXHAUSTED_MESSAGE = "stale, retries exhausted"
TIMED_OUT_MESSAGE = "timed out, retries exhausted"


@dataclass(slots=True)
class SupervisorStats:
    scans: int = 0
    checks: int = 0
    retries: int = 0
    failures: int = 0
    errors: int = 0
    collected: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Supervisor:
    """Watches outstanding registry entries and re-dispatches stalled ones.

    An entry is stalled when it has not heartbeated for longer than
    ``stale_threshold_seconds``, when its current attempt has been running for
    longer than its timeout, or when its background run asked for a retry.
    Each stall consumes one retry; after ``max_retries`` the entry fails (or
    times out) and the owning ledger task is failed with it.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        dispatcher: Dispatcher,
        *,
        ledger: LedgerStore | None = None,
        stale_threshold_seconds: float = 30.0,
        max_retries: int = 2,
        scan_interval_seconds: float = 10.0,
        timeout_seconds: float = 600.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.stale_threshold_seconds = stale_threshold_seconds
        self.max_retries = max_retries
        self.scan_interval_seconds = scan_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.clock = clock or registry.clock or time.time
        self._stats = SupervisorStats()
        self._task: asyncio.Task[None] | None = None
        self._stopping: asyncio.Event | None = None

    @classmethod
    def from_config(
        cls,
        config: SupervisorConfig,
        registry: TaskRegistry,
        dispatcher: Dispatcher,
        *,
        ledger: LedgerStore | None = None,
    ) -> Supervisor:
        return cls(
            registry,
            dispatcher,
            ledger=ledger,
            stale_threshold_seconds=config.stale_threshold_seconds,
            max_retries=config.max_retries,
            scan_interval_seconds=config.scan_interval_seconds,
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stats(self) -> dict[str, Any]:
        return self._stats.to_dict()

    def is_stale(self, entry: RegistryEntry, now: float | None = None) -> bool:
        reference = self.clock() if now is None else now
        return reference - entry.last_heartbeat > self.stale_threshold_seconds

    def is_overdue(self, entry: RegistryEntry, now: float | None = None) -> bool:
        """Whether the current attempt has run past its wall-clock timeout (0 disables)."""
        limit = entry.timeout_seconds if entry.timeout_seconds is not None else self.timeout_seconds
        if limit <= 0 or entry.started_at is None:
            return False
        reference = self.clock() if now is None else now
        return reference - entry.started_at > limit

    def scan_once(self) -> list[str]:
        """Reconcile every outstanding entry once. Returns ids that were acted on."""
        self._stats.scans += 1
        now = self.clock()
        acted: list[str] = []
        for entry in self.registry.outstanding():
            self._stats.checks += 1
            try:
                if self._reconcile(entry, now):
                    acted.append(entry.id)
            except Exception:
                self._stats.errors += 1
                logger.exception("supervisor_reconcile_failed", entry_id=entry.id)
        self._stats.collected += self.registry.gc()
        if not acted:
            logger.debug("supervisor_scan_clean", outstanding=len(self.registry.outstanding()))
        return acted

    def _reconcile(self, entry: RegistryEntry, now: float) -> bool:
        stale = self.is_stale(entry, now)
        overdue = self.is_overdue(entry, now)
        if not stale and not overdue and not entry.retry_requested:
            return False

        if overdue:
            reason = "timed out"
        elif entry.retry_requested and entry.last_error:
            reason = entry.last_error
        else:
            reason = "stale"
        if entry.retry_count + 1 <= self.max_retries:
            self.registry.record_retry(entry.id)
            self._stats.retries += 1
            logger.warning(
                "supervisor_retry",
                entry_id=entry.id,
                agent=entry.agent_name,
                retry=entry.retry_count,
                max_retries=self.max_retries,
                reason=reason,
            )
            self.dispatcher.relaunch(entry)
            return True

        if overdue:
            error = TIMED_OUT_MESSAGE
        elif reason == "stale":
            error = EXHAUSTED_MESSAGE
        else:
            error = f"{reason}; retries exhausted"
        self.registry.fail(entry.id, error, status="timed_out" if overdue else "failed")
        self._stats.failures += 1
        logger.error(
            "supervisor_entry_failed",
            entry_id=entry.id,
            agent=entry.agent_name,
            status=entry.status,
            retries=entry.retry_count,
            error=error,
        )
        self._propagate_failure(entry, error)
        return True

    def _propagate_failure(self, entry: RegistryEntry, error: str) -> None:
        if self.ledger is None or not entry.epic_id or not entry.task_id:
            return
        try:
            self.ledger.update_task_status(entry.epic_id, entry.task_id, "failed", error=error)
        except LedgerError as exc:
            logger.info(
                "supervisor_ledger_update_skipped",
                entry_id=entry.id,
                task_id=entry.task_id,
                code=str(exc.code),
            )
        self.ledger.add_learning(
            "antiPattern",
            f"Task {entry.task_id} ({entry.agent_name}) timed out after {entry.retry_count} retries",
            source_epic=entry.epic_id,
            source_agent=entry.agent_name,
        )

    async def run_forever(self) -> None:
        self._stopping = self._stopping or asyncio.Event()
        logger.debug("supervisor_started", interval=self.scan_interval_seconds)
        while not self._stopping.is_set():
            self.scan_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.scan_interval_seconds)
            except TimeoutError:
                continue
        logger.debug("supervisor_stopped", **self.stats())

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stopping is not None:
            self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None
