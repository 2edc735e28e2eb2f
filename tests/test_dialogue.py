import pytest

from foreman.dialogue import (
    AgentReply,
    DialogueState,
    Direction,
    UserReply,
    continuation_hint,
    extract_dialogue_state,
    initial_state,
    render_history,
    reply_from_output,
    transition,
)
from foreman.errors import DialogueError, ErrorCode


def test_agent_question_then_user_answer_then_proposal_and_approval() -> None:
    state = initial_state()

    state = transition(
        state,
        AgentReply(
            status="needs_input",
            content="Which database?",
            pending_questions=("Which database?",),
            direction=Direction(goals=("ship auth",)),
        ),
    )
    assert state.turn == 1
    assert state.is_blocking
    assert state.pending_questions == ("Which database?",)

    state = transition(state, UserReply("Postgres"))
    assert state.pending_questions == ()
    assert state.status == "needs_input"
    assert state.turn == 1

    state = transition(
        state,
        AgentReply(
            status="needs_approval",
            content="Plan: use Postgres",
            direction=Direction(goals=("ship auth",), decisions=("postgres",)),
            proposal={"db": "postgres"},
        ),
    )
    assert state.turn == 2
    assert state.accumulated_direction.goals == ("ship auth",)
    assert state.accumulated_direction.decisions == ("postgres",)

    state = transition(state, UserReply("looks good", decision="approve"))
    assert state.status == "approved"
    assert state.is_final
    assert state.proposal == {"db": "postgres"}
    assert [turn.role for turn in state.history] == ["agent", "user", "agent", "user"]


def test_reject_is_terminal_but_not_final() -> None:
    state = DialogueState(status="needs_approval", turn=1)

    rejected = transition(state, UserReply("no", decision="reject"))

    assert rejected.status == "rejected"
    assert rejected.is_terminal
    assert not rejected.is_final
    with pytest.raises(DialogueError) as excinfo:
        transition(rejected, AgentReply(status="needs_input"))
    assert excinfo.value.code == ErrorCode.INVALID_TRANSITION


def test_decision_outside_approval_is_rejected() -> None:
    with pytest.raises(DialogueError):
        transition(DialogueState(status="needs_input"), UserReply("ok", decision="approve"))


def test_transition_never_mutates_input() -> None:
    state = DialogueState(status="needs_input", turn=3)

    transition(state, AgentReply(status="completed", content="done"))

    assert state.status == "needs_input"
    assert state.turn == 3
    assert state.history == ()


def test_extract_state_from_fenced_block() -> None:
    text = (
        "Here is my plan.\n\n"
        "```json\n"
        '{"dialogue_state": {"status": "needs_approval", "message_to_user": "Approve?"}}\n'
        "```\n"
    )

    payload = extract_dialogue_state(text)

    assert payload == {"status": "needs_approval", "message_to_user": "Approve?"}


def test_extract_state_from_embedded_fragment() -> None:
    text = 'prefix "dialogue_state": {"status": "needs_input", "accumulated_direction": {"goals": ["a"]}} suffix'

    payload = extract_dialogue_state(text)

    assert payload is not None
    assert payload["status"] == "needs_input"
    assert payload["accumulated_direction"] == {"goals": ["a"]}


def test_output_without_state_counts_as_completed() -> None:
    reply = reply_from_output("All done, nothing to ask.")

    assert reply.status == "completed"
    assert reply.content == "All done, nothing to ask."
    assert extract_dialogue_state("") is None


def test_state_roundtrip_and_history_rendering() -> None:
    state = transition(
        initial_state(),
        AgentReply(
            status="needs_input",
            content="What scope?",
            direction=Direction(constraints=("no downtime",)),
        ),
    )

    restored = DialogueState.from_dict(state.to_dict())
    rendered = render_history(restored)

    assert restored == state
    assert "**Agent:** What scope?" in rendered
    assert "- no downtime" in rendered
    assert continuation_hint(restored, "h_abc") is not None
    assert continuation_hint(DialogueState(status="completed"), "h_abc") is None


def test_user_decision_is_kept_in_rendered_history() -> None:
    state = transition(initial_state(), UserReply("Design storage"))
    state = transition(state, AgentReply(status="needs_approval", content="Use postgres?"))
    state = transition(state, UserReply("fine by me", decision="approve"))

    rendered = render_history(state)

    assert state.history[0].role == "user"
    assert state.history[-1].status == "approve"
    assert "**User:** Design storage" in rendered
    assert "**User (approve):** fine by me" in rendered
