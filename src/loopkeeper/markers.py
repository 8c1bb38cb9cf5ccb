"""Strict completion/abort marker detection in worker output."""

from __future__ import annotations

from loopkeeper.schemas import ABORT_MARKER, COMPLETE_MARKER, MarkerResult

_FENCE_PREFIXES = ("```", "~~~")


def detect_promise_marker(text: str) -> MarkerResult | None:
    """Return the marker signalled by *text*, or ``None``.

    A marker counts only when it is the whole (stripped) content of a line
    outside fenced code blocks. Any line starting with a fence delimiter
    toggles the fence state; an unclosed fence runs to the end of the text.
    Finding both markers is a conflict and yields ``None``.
    """
    if not text:
        return None

    in_fence = False
    has_complete = False
    has_abort = False
    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if line.startswith(_FENCE_PREFIXES):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        if line == COMPLETE_MARKER:
            has_complete = True
        elif line == ABORT_MARKER:
            has_abort = True

    if has_complete and has_abort:
        return None
    if has_complete:
        return MarkerResult.COMPLETE
    if has_abort:
        return MarkerResult.ABORT
    return None


def marker_instructions() -> str:
    """Return prompt guidance describing both markers."""
    return (
        f"- When FULLY COMPLETE, output on its own line: {COMPLETE_MARKER}\n"
        f"- If the task is IMPOSSIBLE, output on its own line: {ABORT_MARKER}"
    )
