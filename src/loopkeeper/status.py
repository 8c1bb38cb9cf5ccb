"""Operator-facing status text for loops."""

from __future__ import annotations

from loopkeeper.schemas import STATUS_ICONS, LoopState
from loopkeeper.struggle import is_struggling
from loopkeeper.task_document import count_checklist


def _iteration_label(state: LoopState) -> str:
    if state.max_iterations > 0:
        return f"{state.iteration}/{state.max_iterations}"
    return str(state.iteration)


def format_loop(state: LoopState) -> str:
    """One-line summary of a loop for status and list output."""
    status = f"{STATUS_ICONS[state.status]} {state.status.value}"
    return f"{state.name}: {status} (iteration {_iteration_label(state)})"


def render_progress_bar(done: int, total: int, width: int = 15) -> str:
    """Render ``8/15 ████████░░░░░░░``; empty string when *total* is 0."""
    if total <= 0:
        return ""
    ratio = min(done / total, 1.0)
    filled = round(ratio * width)
    return f"{done}/{total} {'█' * filled}{'░' * (width - filled)}"


def status_lines(state: LoopState, task_content: str | None = None) -> list[str]:
    """Detailed status block for one loop, including the struggle warning."""
    lines = [
        f"Loop: {state.name} [{state.mode.value}]",
        f"Status: {STATUS_ICONS[state.status]} {state.status.value}",
        f"Iteration: {_iteration_label(state)}",
    ]

    if task_content:
        counts = count_checklist(task_content)
        if counts.total > 0:
            lines.append(f"Checklist: {render_progress_bar(counts.done, counts.total)}")

    lines.append(f"Task: {state.task_file}")

    if state.reflect_every > 0:
        remaining = state.reflect_every - ((state.iteration - 1) % state.reflect_every)
        lines.append(f"Next reflection in: {remaining} iterations")

    if state.compaction_count > 0:
        lines.append(f"Compactions: {state.compaction_count}")
    if state.session_rotations > 0:
        lines.append(f"Rotations: {state.session_rotations}")
    if is_struggling(state):
        lines.append(
            f"⚠️ No progress ×{state.no_progress_streak}: try `loopkeeper hint` or `loopkeeper rotate`"
        )
    if state.hint_count > 0:
        lines.append(f"💡 {state.hint_count} hint(s)")
    return lines
