"""Struggle detection: consecutive iterations without checklist progress."""

from __future__ import annotations

from loopkeeper.schemas import STRUGGLE_THRESHOLD, LoopState


def update_struggle_state(state: LoopState, checklist_delta: int) -> None:
    """Reset the streak on positive progress; anything else (including unchecking) extends it."""
    if checklist_delta > 0:
        state.no_progress_streak = 0
    else:
        state.no_progress_streak += 1


def is_struggling(state: LoopState) -> bool:
    return state.no_progress_streak >= STRUGGLE_THRESHOLD
