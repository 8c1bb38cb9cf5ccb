"""Operator hints injected into iteration prompts.

Two queues live on the loop state: one-shot ``pending_hints`` (dropped after
they have been folded into one rendered prompt) and ``sticky_hints``
(repeated every iteration until cleared).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from loopkeeper.schemas import HINT_MAX_COUNT, HINT_MAX_LENGTH, LoopState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HintAddResult:
    added: bool
    text: str = ""
    sticky: bool = False
    truncated: bool = False
    message: str = ""


class HintManager:
    """Governed add/clear/consume operations over a loop's hint queues."""

    def __init__(self, max_length: int = HINT_MAX_LENGTH, max_count: int = HINT_MAX_COUNT) -> None:
        self.max_length = max_length
        self.max_count = max_count

    def add(self, state: LoopState, text: str, *, sticky: bool = False) -> HintAddResult:
        """Queue a hint; rejects (never silently drops) once the combined count is at the maximum."""
        hint = (text or "").strip()
        if not hint:
            return HintAddResult(added=False, message="Hint text is empty.")

        if state.hint_count >= self.max_count:
            return HintAddResult(
                added=False,
                message=f"Max hints reached ({self.max_count}). Clear hints first.",
            )

        truncated = len(hint) > self.max_length
        if truncated:
            hint = hint[: self.max_length]
            logger.warning("Hint for %r truncated to %d chars", state.name, self.max_length)

        (state.sticky_hints if sticky else state.pending_hints).append(hint)
        label = "sticky" if sticky else "one-shot"
        message = f'Added {label} hint: "{hint}"'
        if truncated:
            message += f" (truncated to {self.max_length} chars)"
        return HintAddResult(added=True, text=hint, sticky=sticky, truncated=truncated, message=message)

    def clear(self, state: LoopState) -> int:
        """Empty both queues; returns how many hints were removed."""
        removed = state.hint_count
        state.pending_hints = []
        state.sticky_hints = []
        return removed

    def consume(self, state: LoopState) -> list[str]:
        """Drop one-shot hints after they were rendered into a prompt; sticky hints stay."""
        consumed = list(state.pending_hints)
        state.pending_hints = []
        return consumed

    @staticmethod
    def list_hints(state: LoopState) -> list[str]:
        return [f"{h} (one-shot)" for h in state.pending_hints] + [
            f"{h} (sticky)" for h in state.sticky_hints
        ]


def format_hints(pending: list[str], sticky: list[str]) -> str:
    """Render hints as a Markdown prompt section; empty string when there are none."""
    if not pending and not sticky:
        return ""
    lines = ["## 💡 User Hints"]
    lines.extend(f"- {h} (one-shot)" for h in pending)
    lines.extend(f"- {h} (sticky)" for h in sticky)
    return "\n".join(lines)
