from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class LedgerConfig:
    root_dir: str = ".foreman"
    max_tasks_per_epic: int = 3
    recent_learnings: int = 5
    lock_timeout_seconds: float = 3.0
    stale_lock_seconds: float = 60.0


@dataclass(slots=True)
class CatalogConfig:
    path: str = "agents.toml"
    default_namespace: str = ""


@dataclass(slots=True)
class DispatchConfig:
    default_timeout_seconds: float = 60.0
    inject_memories: bool = True
    max_memories: int = 5


@dataclass(slots=True)
class RegistryConfig:
    retention_seconds: float = 3600.0
    persist_snapshot: bool = True


@dataclass(slots=True)
class SupervisorConfig:
    stale_threshold_seconds: float = 30.0
    max_retries: int = 2
    scan_interval_seconds: float = 10.0
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class BatchConfig:
    timeout_seconds: float = 120.0
    gather_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.25


@dataclass(slots=True)
class HostConfig:
    binary: str = "claude"
    glitch_markers: list[str] = field(default_factory=lambda: ["Unexpected EOF"])


@dataclass(slots=True)
class ForemanConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    host: HostConfig = field(default_factory=HostConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        return cls(
            ledger=LedgerConfig(**data.get("ledger", {})),
            catalog=CatalogConfig(**data.get("catalog", {})),
            dispatch=DispatchConfig(**data.get("dispatch", {})),
            registry=RegistryConfig(**data.get("registry", {})),
            supervisor=SupervisorConfig(**data.get("supervisor", {})),
            batch=BatchConfig(**data.get("batch", {})),
            host=HostConfig(**data.get("host", {})),
        )

    def to_dict(self) -> dict:
        return {
            "ledger": {
                "root_dir": self.ledger.root_dir,
                "max_tasks_per_epic": self.ledger.max_tasks_per_epic,
                "recent_learnings": self.ledger.recent_learnings,
                "lock_timeout_seconds": self.ledger.lock_timeout_seconds,
                "stale_lock_seconds": self.ledger.stale_lock_seconds,
            },
            "catalog": {
                "path": self.catalog.path,
                "default_namespace": self.catalog.default_namespace,
            },
            "dispatch": {
                "default_timeout_seconds": self.dispatch.default_timeout_seconds,
                "inject_memories": self.dispatch.inject_memories,
                "max_memories": self.dispatch.max_memories,
            },
            "registry": {
                "retention_seconds": self.registry.retention_seconds,
                "persist_snapshot": self.registry.persist_snapshot,
            },
            "supervisor": {
                "stale_threshold_seconds": self.supervisor.stale_threshold_seconds,
                "max_retries": self.supervisor.max_retries,
                "scan_interval_seconds": self.supervisor.scan_interval_seconds,
                "timeout_seconds": self.supervisor.timeout_seconds,
            },
            "batch": {
                "timeout_seconds": self.batch.timeout_seconds,
                "gather_timeout_seconds": self.batch.gather_timeout_seconds,
                "poll_interval_seconds": self.batch.poll_interval_seconds,
            },
            "host": {
                "binary": self.host.binary,
                "glitch_markers": list(self.host.glitch_markers),
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "ledger",
        "catalog",
        "dispatch",
        "registry",
        "supervisor",
        "batch",
        "host",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
