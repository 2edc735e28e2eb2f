from __future__ import annotations

import tomllib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

FALLBACK_SYSTEM_PROMPT = "You are a focused software specialist. Complete the assigned task."


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    name: str
    version: str = "1.0"
    description: str = ""
    allowed_tools: tuple[str, ...] = ()
    model: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    system_prompt: str = FALLBACK_SYSTEM_PROMPT

    @property
    def namespace(self) -> str | None:
        if "/" not in self.name:
            return None
        return self.name.split("/", 1)[0]

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> AgentDescriptor:
        return cls(
            name=name,
            version=str(data.get("version", "1.0")),
            description=str(data.get("description", "")),
            allowed_tools=tuple(str(tool) for tool in data.get("allowed_tools", [])),
            model=data.get("model"),
            parameters=dict(data.get("parameters", {})),
            system_prompt=str(data.get("system_prompt") or FALLBACK_SYSTEM_PROMPT).strip(),
        )


class AgentCatalog:
    """Closed, read-only set of agents built once at startup."""

    def __init__(
        self,
        descriptors: Iterable[AgentDescriptor] = (),
        *,
        default_namespace: str = "",
    ) -> None:
        self._agents: dict[str, AgentDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._agents:
                raise ValueError(f"Duplicate agent name in catalog: {descriptor.name}")
            self._agents[descriptor.name] = descriptor
        self.default_namespace = default_namespace.strip("/")

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None

    def __len__(self) -> int:
        return len(self._agents)

    def names(self) -> list[str]:
        return sorted(self._agents)

    def resolve(self, name: str) -> AgentDescriptor | None:
        candidates = [name]
        if self.default_namespace and "/" not in name:
            candidates.append(f"{self.default_namespace}/{name}")
        for candidate in candidates:
            descriptor = self._agents.get(candidate)
            if descriptor is not None:
                return descriptor
        return None

    def siblings(self, name: str) -> list[str]:
        """Agents sharing the namespace ``name`` points into."""
        if "/" in name:
            namespace = name.split("/", 1)[0]
        else:
            namespace = self.default_namespace
        if not namespace:
            return [agent for agent in self.names() if "/" not in agent]
        return [agent for agent in self.names() if agent.startswith(f"{namespace}/")]


def load_catalog(path: Path, *, default_namespace: str = "") -> AgentCatalog:
    if not path.exists():
        logger.warning("catalog_missing", path=str(path))
        return AgentCatalog(default_namespace=default_namespace)
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    agents = data.get("agents", {})
    descriptors = [
        AgentDescriptor.from_dict(name, payload)
        for name, payload in agents.items()
        if isinstance(payload, dict)
    ]
    logger.debug("catalog_loaded", path=str(path), agents=len(descriptors))
    return AgentCatalog(descriptors, default_namespace=default_namespace)
