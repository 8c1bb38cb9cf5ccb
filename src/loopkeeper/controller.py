"""Iteration control and loop lifecycle transitions.

The :class:`IterationController` drives a loop one worker turn at a time:

* ``active -> paused``: manual stop, abort marker, checkpoint failure after
  one retry, unreadable task file.
* ``active -> completed``: completion marker, max iterations reached, manual
  finish.
* ``paused -> active``: resume (handled by the command layer).

Every status change is persisted and appended to the loop's event log.
Controller outcomes are returned as :class:`AdvanceResult` values, never
raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loopkeeper.checkpoint import snapshot_task_file, validate_checkpoint
from loopkeeper.file_io import try_read_text
from loopkeeper.history_log import IterationHistory
from loopkeeper.prompts.catalog import PromptCatalog, get_catalog
from loopkeeper.prompts.renderer import build_banner, build_iteration_prompt
from loopkeeper.schemas import AdvanceAction, AdvanceResult, LoopState, LoopStatus, utc_now_iso
from loopkeeper.state_store import StateStore
from loopkeeper.task_document import count_checklist

logger = logging.getLogger(__name__)


@dataclass
class LoopSession:
    """Per-host session context: which loop is current, plus a UI refresh hook.

    Passed explicitly to every command instead of living in module globals.
    """

    current_loop: str | None = None
    on_update: Callable[[LoopSession], None] | None = None

    def set_current(self, name: str | None) -> None:
        self.current_loop = name
        self.notify()

    def clear(self, name: str | None = None) -> None:
        """Forget the current loop (only if it is *name*, when given)."""
        if name is None or self.current_loop == name:
            self.current_loop = None
        self.notify()

    def notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)


def needs_reflection(state: LoopState) -> bool:
    """True when ``state.iteration`` is a checkpoint (reflection) iteration."""
    every = state.reflect_every
    return every > 0 and state.iteration > 1 and (state.iteration - 1) % every == 0


class IterationController:
    """Advance, pause, complete and stop loops against one state store."""

    def __init__(
        self,
        store: StateStore,
        history: IterationHistory,
        session: LoopSession,
        *,
        catalog: PromptCatalog | None = None,
    ) -> None:
        self.store = store
        self.history = history
        self.session = session
        self.catalog = catalog or get_catalog()

    @property
    def base_dir(self) -> Path:
        return self.store.root

    def read_task(self, state: LoopState) -> str | None:
        """Return the task document text, or ``None`` when it is missing, unreadable or empty."""
        return try_read_text(self.store.resolve(state.task_file)) or None

    def build_prompt(self, state: LoopState, task_content: str, is_reflection: bool) -> str:
        return build_iteration_prompt(
            state,
            task_content,
            is_reflection,
            base_dir=self.base_dir,
            catalog=self.catalog,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def pause(self, state: LoopState, message: str | None = None) -> None:
        state.status = LoopStatus.PAUSED
        self.store.save(state)
        self.history.append_event(state.name, f"PAUSE iter={state.iteration}")
        logger.info("Paused loop %r at iteration %d%s", state.name, state.iteration, f": {message}" if message else "")
        self.session.clear()

    def complete(self, state: LoopState, banner_key: str = "complete") -> str:
        """Mark *state* completed and return the rendered banner for the worker."""
        state.status = LoopStatus.COMPLETED
        state.completed_at = utc_now_iso()
        self.store.save(state)
        self.history.append_event(state.name, f"COMPLETE iter={state.iteration}")
        logger.info("Completed loop %r at iteration %d", state.name, state.iteration)
        self.session.clear()
        return build_banner(banner_key, state, catalog=self.catalog)

    def stop(self, state: LoopState) -> None:
        """Operator-requested finish: completed without a completion marker."""
        state.status = LoopStatus.COMPLETED
        state.completed_at = utc_now_iso()
        self.store.save(state)
        self.history.append_event(state.name, f"COMPLETE (manual-stop) iter={state.iteration}")
        logger.info("Stopped loop %r at iteration %d", state.name, state.iteration)
        self.session.clear()

    # ------------------------------------------------------------------
    # Advancement
    # ------------------------------------------------------------------

    def advance(self, state: LoopState) -> AdvanceResult:
        """Move *state* past the current iteration boundary.

        The increment is kept only when the loop moves on (``next``) or
        completes on the iteration cap. A ``retry`` or ``pause`` leaves the
        loop at the iteration it was on, so the next call re-enters the same
        reflection boundary and the checkpoint is graded again.
        """
        previous = state.iteration
        state.iteration += 1

        if state.max_iterations > 0 and state.iteration > state.max_iterations:
            banner = self.complete(state, "max_iterations")
            return AdvanceResult(
                AdvanceAction.COMPLETE,
                prompt=banner,
                message=f"Max iterations ({state.max_iterations}) reached. Loop stopped.",
            )

        task_content = self.read_task(state)
        if task_content is None:
            state.iteration = previous
            self.pause(state)
            return AdvanceResult(
                AdvanceAction.PAUSE,
                message=f"Error: could not read task file: {state.task_file}. Loop paused.",
            )

        reflection = needs_reflection(state)
        if reflection:
            validation = validate_checkpoint(state, task_content)
            if not validation.valid:
                summary = "; ".join(validation.reasons)
                if not state.checkpoint_retried:
                    retry_prompt = self.build_prompt(state, task_content, True)
                    state.checkpoint_retried = True
                    state.iteration = previous
                    self.store.save(state)
                    logger.info("Checkpoint for %r rejected; retrying once: %s", state.name, summary)
                    return AdvanceResult(
                        AdvanceAction.RETRY,
                        prompt=retry_prompt,
                        message=f"Checkpoint validation failed: {summary}. Retrying.",
                        reasons=list(validation.reasons),
                    )
                state.iteration = previous
                self.pause(state, f"checkpoint validation failed after retry: {summary}")
                return AdvanceResult(
                    AdvanceAction.PAUSE,
                    message=f"Checkpoint validation failed after retry: {summary}. Loop paused.",
                    reasons=list(validation.reasons),
                )

            snapshot_task_file(state, task_content)
            state.checkpoint_retried = False

        state.last_checklist_count = count_checklist(task_content).done
        state.reset_iteration_scratch()
        self.store.save(state)
        self.session.notify()

        logger.debug("Loop %r advanced to iteration %d (reflection=%s)", state.name, state.iteration, reflection)
        return AdvanceResult(AdvanceAction.NEXT, prompt=self.build_prompt(state, task_content, reflection))
