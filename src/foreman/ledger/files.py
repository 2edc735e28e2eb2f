from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from foreman.errors import ErrorCode, LedgerError

logger = structlog.get_logger()

SCHEMA_VERSION = 1


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a sibling temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def read_json(path: Path) -> Any:
    """Return parsed JSON, or ``None`` when the file is missing or malformed."""
    content = read_text(path)
    if content is None or not content.strip():
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return None


def normalize_envelope(raw_payload: Any, default: Any) -> dict[str, Any]:
    if (
        isinstance(raw_payload, dict)
        and "schema_version" in raw_payload
        and "data" in raw_payload
        and "revision" in raw_payload
    ):
        return {
            "schema_version": int(raw_payload.get("schema_version") or SCHEMA_VERSION),
            "revision": int(raw_payload.get("revision") or 1),
            "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
            "data": raw_payload.get("data", default),
        }

    data = default if raw_payload is None else raw_payload
    return {
        "schema_version": SCHEMA_VERSION,
        "revision": 0,
        "updated_at": utcnow_iso(),
        "data": data,
    }


def write_envelope(path: Path, data: Any, revision: int) -> None:
    atomic_write_json(
        path,
        {
            "schema_version": SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        },
    )


def _pid_alive(pid: int) -> bool:
    if pid <= 0 or os.name != "posix":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def lock_is_stale(lock_file: Path, stale_after_seconds: float = 60.0) -> bool:
    """Whether ``lock_file`` was left behind by a holder that is gone.

    A lock is stale when the PID it records no longer exists, or when it is
    older than ``stale_after_seconds`` (0 disables the age bound). A lock
    without a readable PID is judged by age alone.
    """
    try:
        raw = lock_file.read_text(encoding="utf-8").strip()
        age = time.time() - lock_file.stat().st_mtime
    except FileNotFoundError:
        return False
    if stale_after_seconds > 0 and age > stale_after_seconds:
        return True
    try:
        pid = int(raw)
    except ValueError:
        return False
    return not _pid_alive(pid)


@contextmanager
def file_lock(
    lock_file: Path,
    timeout_seconds: float = 3.0,
    stale_after_seconds: float = 60.0,
) -> Iterator[None]:
    """Cross-process mutual exclusion using an ``O_EXCL`` lock file."""
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            if lock_is_stale(lock_file, stale_after_seconds):
                logger.warning("ledger_stale_lock_removed", lock_file=str(lock_file))
                lock_file.unlink(missing_ok=True)
                continue
            if time.monotonic() - start > timeout_seconds:
                raise LedgerError(
                    ErrorCode.LOCK_TIMEOUT,
                    f"Timed out waiting for lock {lock_file}.",
                ) from exc
            time.sleep(0.02)

    try:
        yield
    finally:
        try:
            lock_file.unlink()
        except FileNotFoundError:
            pass
