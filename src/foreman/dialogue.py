from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any

from foreman.errors import DialogueError, ErrorCode

DIALOGUE_STATUSES = (
    "needs_input",
    "needs_approval",
    "needs_verification",
    "approved",
    "rejected",
    "completed",
)
BLOCKING_STATUSES = frozenset({"needs_input", "needs_approval", "needs_verification"})
FINAL_STATUSES = frozenset({"approved", "completed"})
TERMINAL_STATUSES = frozenset({"approved", "rejected", "completed"})

DIALOGUE_INSTRUCTIONS = """\
## Dialogue Protocol

This is a multi-turn exchange with a human. Do not assume answers to open
questions. End every reply with a fenced JSON block:

```json
{"dialogue_state": {
  "status": "needs_input | needs_approval | needs_verification | approved | rejected | completed",
  "message_to_user": "what the human should read",
  "pending_questions": ["..."],
  "accumulated_direction": {"goals": [], "constraints": [], "decisions": []},
  "proposal": null
}}
```

Use `needs_input` for open questions, `needs_approval` when a proposal awaits
sign-off, `needs_verification` when the human must confirm a result, and
`approved` or `completed` only once nothing is left to ask."""

_CODE_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)```")
_EMBEDDED_STATE_PATTERN = re.compile(
    r'"dialogue_state"\s*:\s*(\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\})'
)


def _merge_unique(left: list[str], right: list[str]) -> list[str]:
    merged = list(left)
    for item in right:
        if item not in merged:
            merged.append(item)
    return merged


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


@dataclass(frozen=True, slots=True)
class Direction:
    goals: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()

    def merge(self, other: Direction | None) -> Direction:
        if other is None:
            return self
        return Direction(
            goals=tuple(_merge_unique(list(self.goals), list(other.goals))),
            constraints=tuple(_merge_unique(list(self.constraints), list(other.constraints))),
            decisions=tuple(_merge_unique(list(self.decisions), list(other.decisions))),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "goals": list(self.goals),
            "constraints": list(self.constraints),
            "decisions": list(self.decisions),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Direction:
        if not isinstance(data, dict):
            return cls()
        return cls(
            goals=tuple(_str_list(data.get("goals"))),
            constraints=tuple(_str_list(data.get("constraints"))),
            decisions=tuple(_str_list(data.get("decisions"))),
        )


@dataclass(frozen=True, slots=True)
class Turn:
    role: str
    content: str
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "status": self.status}


@dataclass(frozen=True, slots=True)
class DialogueState:
    status: str = "needs_input"
    turn: int = 0
    message_to_user: str = ""
    pending_questions: tuple[str, ...] = ()
    accumulated_direction: Direction = field(default_factory=Direction)
    proposal: Any = None
    history: tuple[Turn, ...] = ()

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "turn": self.turn,
            "message_to_user": self.message_to_user,
            "pending_questions": list(self.pending_questions),
            "accumulated_direction": self.accumulated_direction.to_dict(),
            "proposal": self.proposal,
            "history": [item.to_dict() for item in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DialogueState:
        status = str(data.get("status", "needs_input"))
        if status not in DIALOGUE_STATUSES:
            raise DialogueError(ErrorCode.INVALID_TRANSITION, f"Unknown dialogue status: {status}")
        history = tuple(
            Turn(
                role=str(item.get("role", "agent")),
                content=str(item.get("content", "")),
                status=item.get("status"),
            )
            for item in data.get("history", [])
            if isinstance(item, dict)
        )
        return cls(
            status=status,
            turn=int(data.get("turn", 0)),
            message_to_user=str(data.get("message_to_user", "")),
            pending_questions=tuple(_str_list(data.get("pending_questions"))),
            accumulated_direction=Direction.from_dict(data.get("accumulated_direction")),
            proposal=data.get("proposal"),
            history=history,
        )


@dataclass(frozen=True, slots=True)
class AgentReply:
    status: str
    content: str = ""
    message_to_user: str = ""
    pending_questions: tuple[str, ...] = ()
    direction: Direction | None = None
    proposal: Any = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], content: str = "") -> AgentReply:
        return cls(
            status=str(payload.get("status", "")),
            content=content,
            message_to_user=str(payload.get("message_to_user", "")),
            pending_questions=tuple(_str_list(payload.get("pending_questions"))),
            direction=Direction.from_dict(payload.get("accumulated_direction")),
            proposal=payload.get("proposal"),
        )


@dataclass(frozen=True, slots=True)
class UserReply:
    content: str
    decision: str | None = None


def initial_state() -> DialogueState:
    return DialogueState()


def transition(state: DialogueState, event: AgentReply | UserReply) -> DialogueState:
    """Compute the next dialogue state. Never mutates ``state``."""
    if state.is_terminal:
        raise DialogueError(
            ErrorCode.INVALID_TRANSITION,
            f"Dialogue already ended with status '{state.status}'.",
        )

    if isinstance(event, UserReply):
        history = (*state.history, Turn(role="user", content=event.content, status=event.decision))
        status = state.status
        if state.status == "needs_approval" and event.decision == "approve":
            status = "approved"
        elif state.status == "needs_approval" and event.decision == "reject":
            status = "rejected"
        elif event.decision is not None:
            raise DialogueError(
                ErrorCode.INVALID_TRANSITION,
                f"Decision '{event.decision}' is not valid while status is '{state.status}'.",
            )
        return replace(state, status=status, pending_questions=(), history=history)

    if event.status not in DIALOGUE_STATUSES:
        raise DialogueError(ErrorCode.INVALID_TRANSITION, f"Unknown dialogue status: {event.status}")

    turn = state.turn + 1 if event.status in BLOCKING_STATUSES else state.turn
    return replace(
        state,
        status=event.status,
        turn=turn,
        message_to_user=event.message_to_user,
        pending_questions=tuple(event.pending_questions),
        accumulated_direction=state.accumulated_direction.merge(event.direction),
        proposal=event.proposal if event.proposal is not None else state.proposal,
        history=(*state.history, Turn(role="agent", content=event.content, status=event.status)),
    )


def _state_payload(parsed: Any) -> dict[str, Any] | None:
    if not isinstance(parsed, dict):
        return None
    nested = parsed.get("dialogue_state")
    if isinstance(nested, dict):
        return nested
    if parsed.get("status") in BLOCKING_STATUSES:
        return parsed
    return None


def extract_dialogue_state(text: str) -> dict[str, Any] | None:
    """Find a dialogue state object in agent output.

    Tried in order: the whole text as JSON, each fenced code block, then an
    embedded ``"dialogue_state": {...}`` fragment.
    """
    if not text:
        return None

    try:
        payload = _state_payload(json.loads(text))
        if payload is not None:
            return payload
    except json.JSONDecodeError:
        pass

    for match in _CODE_BLOCK_PATTERN.finditer(text):
        try:
            payload = _state_payload(json.loads(match.group(1).strip()))
        except json.JSONDecodeError:
            continue
        if payload is not None:
            return payload

    embedded = _EMBEDDED_STATE_PATTERN.search(text)
    if embedded:
        try:
            parsed = json.loads(embedded.group(1))
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def reply_from_output(text: str) -> AgentReply:
    """Interpret agent output; output without a parseable state counts as completed."""
    payload = extract_dialogue_state(text)
    if payload is None or payload.get("status") not in DIALOGUE_STATUSES:
        return AgentReply(status="completed", content=text, message_to_user=text)
    return AgentReply.from_payload(payload, content=text)


def render_history(state: DialogueState) -> str:
    if not state.history:
        return ""
    lines = [f"## Dialogue So Far (turn {state.turn}, status {state.status})", ""]
    for item in state.history:
        speaker = "User" if item.role == "user" else "Agent"
        if item.role == "user" and item.status:
            speaker = f"User ({item.status})"
        lines.append(f"**{speaker}:** {item.content.strip()}")
        lines.append("")
    direction = state.accumulated_direction
    for label, values in (
        ("Goals", direction.goals),
        ("Constraints", direction.constraints),
        ("Decisions", direction.decisions),
    ):
        if values:
            lines.append(f"{label}:")
            lines.extend(f"- {value}" for value in values)
            lines.append("")
    return "\n".join(lines).strip()


def continuation_hint(state: DialogueState | None, handle_id: str) -> str | None:
    if state is None or not state.is_blocking:
        return None
    return f'To continue the dialogue, dispatch again with the returned state (handle "{handle_id}").'
