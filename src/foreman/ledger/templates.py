from __future__ import annotations

import re

from foreman.ledger.models import Epic, Task

CHECKBOX_BY_STATUS = {
    "completed": "x",
    "skipped": "x",
    "failed": "!",
}


def render_spec(epic: Epic, learnings_summary: list[str]) -> str:
    lines = [
        f"# {epic.title}",
        "",
        "## Request",
        "",
        epic.request.strip() or "_No request recorded._",
        "",
    ]
    if learnings_summary:
        lines.extend(["## Relevant Learnings", ""])
        lines.extend(f"- {item}" for item in learnings_summary)
        lines.append("")
    return "\n".join(lines)


def plan_line(task: Task) -> str:
    mark = CHECKBOX_BY_STATUS.get(task.status, " ")
    deps = f" (after {', '.join(task.dependencies)})" if task.dependencies else ""
    return f"- [{mark}] Task {task.id}: {task.title} [{task.agent}]{deps}"


def render_plan(epic: Epic) -> str:
    lines = [f"# Plan: {epic.title}", ""]
    lines.extend(plan_line(task) for task in epic.tasks)
    return "\n".join(lines) + "\n"


def update_plan_checkbox(plan: str, task: Task) -> str:
    """Rewrite the checkbox of ``task`` in ``plan``, appending the line if absent."""
    mark = CHECKBOX_BY_STATUS.get(task.status, " ")
    pattern = re.compile(rf"^(\s*- \[)[ x!](\] Task {re.escape(task.id)}:)", re.MULTILINE)
    updated, count = pattern.subn(rf"\g<1>{mark}\g<2>", plan)
    if count:
        return updated
    if updated and not updated.endswith("\n"):
        updated += "\n"
    return updated + plan_line(task) + "\n"


def render_log_header(epic: Epic) -> str:
    return f"# Log: {epic.title}\n\n"


def log_line(timestamp: str, message: str) -> str:
    return f"- {timestamp} {message}\n"
