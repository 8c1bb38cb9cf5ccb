"""Lifecycle commands: the interface a host (CLI, agent harness, editor) drives.

Every operation returns a :class:`CommandResult` carrying a human-readable
message and, where the worker should receive something, a prompt. Expected
outcomes (nothing active, unknown loop, rejected hint) are results, not
exceptions.

Usage::

    commands = LoopCommands(StateStore(repo))
    result = commands.start("refactor-auth", StartOptions(reflect_every=5))
    send_to_worker(result.prompt)
    ...
    result = commands.done()
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loopkeeper.checkpoint import snapshot_task_file, validate_checkpoint
from loopkeeper.config import LoopkeeperSettings
from loopkeeper.controller import IterationController, LoopSession, needs_reflection
from loopkeeper.file_io import atomic_write_text, try_read_text
from loopkeeper.hints import HintManager
from loopkeeper.history_log import IterationHistory
from loopkeeper.locks import ConfirmStale, StateLock
from loopkeeper.markers import detect_promise_marker
from loopkeeper.prompts.catalog import PromptCatalog, get_catalog
from loopkeeper.prompts.renderer import (
    build_iteration_prompt,
    build_rotation_prompt,
    build_system_addendum,
    build_task_scaffold,
)
from loopkeeper.schemas import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_REFLECT_INSTRUCTIONS,
    AdvanceAction,
    CommandResult,
    IterationRecord,
    LoopMode,
    LoopState,
    LoopStatus,
    MarkerResult,
    utc_now_iso,
)
from loopkeeper.state_store import TASK_SUFFIX, StateStore, sanitize
from loopkeeper.status import format_loop, status_lines
from loopkeeper.struggle import update_struggle_state
from loopkeeper.task_document import count_checklist

logger = logging.getLogger(__name__)

DONE_TOOL_NAME = "loop_done"
FILE_WRITING_TOOLS = frozenset({"edit", "write", "create_file", "update_file"})

NUKE_WARNING = (
    "This deletes all loop state, task, history and archive files. "
    "Task files outside the state directory are not removed."
)

RotationConfirm = Callable[[str], bool]
"""Host hook that opens a fresh worker session with the bootstrap text; False means cancelled."""


def _parse_mode(value: LoopMode | str | None) -> LoopMode:
    if isinstance(value, LoopMode):
        return value
    try:
        return LoopMode(str(value or "build").strip().lower())
    except ValueError:
        logger.warning("Unknown loop mode %r; using build", value)
        return LoopMode.BUILD


@dataclass
class StartOptions:
    """Options for starting a loop; negative counts are clamped to 0."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    items_per_iteration: int = 0
    reflect_every: int = 0
    reflect_instructions: str = DEFAULT_REFLECT_INSTRUCTIONS
    mode: LoopMode | str = LoopMode.BUILD
    prompt_template: str | None = None

    def __post_init__(self) -> None:
        self.max_iterations = max(0, int(self.max_iterations))
        self.items_per_iteration = max(0, int(self.items_per_iteration))
        self.reflect_every = max(0, int(self.reflect_every))
        self.reflect_instructions = self.reflect_instructions or DEFAULT_REFLECT_INSTRUCTIONS
        self.mode = _parse_mode(self.mode)


def _duration_ms(started_at: str, ended_at: str) -> int:
    try:
        start = dt.datetime.fromisoformat(started_at)
        end = dt.datetime.fromisoformat(ended_at)
        return max(0, int((end - start).total_seconds() * 1000))
    except (TypeError, ValueError):
        return 0


class LoopCommands:
    """All loop lifecycle operations for one working directory and one session."""

    def __init__(
        self,
        store: StateStore,
        *,
        history: IterationHistory | None = None,
        session: LoopSession | None = None,
        catalog: PromptCatalog | None = None,
        hint_manager: HintManager | None = None,
        default_max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self.store = store
        self.history = history or IterationHistory(store.state_dir)
        self.session = session or LoopSession()
        self.catalog = catalog or get_catalog()
        self.hints = hint_manager or HintManager()
        self.default_max_iterations = default_max_iterations
        self.controller = IterationController(store, self.history, self.session, catalog=self.catalog)

    @classmethod
    def from_settings(
        cls,
        settings: LoopkeeperSettings,
        *,
        session: LoopSession | None = None,
    ) -> LoopCommands:
        store = StateStore(
            settings.home,
            state_dir_name=settings.state_dir_name,
            lock=StateLock(ttl_seconds=settings.lock_ttl_seconds),
        )
        return cls(
            store,
            session=session,
            catalog=PromptCatalog(extra_path=settings.prompt_overrides),
            default_max_iterations=settings.max_iterations,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def default_options(self) -> StartOptions:
        return StartOptions(max_iterations=self.default_max_iterations)

    def _current_state(self) -> LoopState | None:
        name = self.session.current_loop
        return self.store.load(name) if name else None

    def _relative_task_path(self, name: str) -> str:
        path = self.store.path_for(name, TASK_SUFFIX)
        return path.relative_to(self.store.root).as_posix()

    def _prompt_and_consume(self, state: LoopState, content: str, is_reflection: bool) -> str:
        """Render the iteration prompt, then drop the one-shot hints it carried."""
        prompt = build_iteration_prompt(
            state, content, is_reflection, base_dir=self.store.root, catalog=self.catalog
        )
        if self.hints.consume(state):
            self.store.save(state)
        return prompt

    def _activate(self, state: LoopState, content: str) -> str:
        """Persist a freshly created loop, make it current and return its first prompt."""
        current = self.session.current_loop
        if current and current != state.name:
            previous = self.store.load(current)
            if previous is not None and previous.is_active:
                self.controller.pause(previous)

        state.iteration_started_at = utc_now_iso()
        state.last_checklist_count = count_checklist(content).done
        snapshot_task_file(state, content)
        self.store.save(state)
        self.history.append_event(state.name, f"START mode={state.mode.value} iter={state.iteration}")
        self.session.set_current(state.name)
        logger.info("Started loop %r (%s)", state.name, state.task_file)
        return self._prompt_and_consume(state, content, False)

    def _new_state(self, name: str, task_file: str, options: StartOptions, started_at: str | None) -> LoopState:
        return LoopState(
            name=name,
            task_file=task_file,
            max_iterations=options.max_iterations,
            items_per_iteration=options.items_per_iteration,
            reflect_every=options.reflect_every,
            reflect_instructions=options.reflect_instructions,
            mode=options.mode,
            prompt_template=options.prompt_template,
            started_at=started_at or utc_now_iso(),
        )

    # ------------------------------------------------------------------
    # Start / stop / resume
    # ------------------------------------------------------------------

    def start(self, name_or_path: str, options: StartOptions | None = None) -> CommandResult:
        """Start (or restart) a loop from a name or a task-file path."""
        options = options or self.default_options()
        target = (name_or_path or "").strip()
        if not target:
            return CommandResult.warning("Usage: start <name|path> [options]")

        notes: list[str] = []
        if options.prompt_template and not self.store.resolve(options.prompt_template).is_file():
            notes.append(f"Template not found: {options.prompt_template}; using built-in.")
            options.prompt_template = None

        is_path = "/" in target or "\\" in target
        if is_path:
            loop_name = sanitize(Path(target.replace("\\", "/")).stem)
            task_file = target
        else:
            loop_name = target
            task_file = self._relative_task_path(loop_name)

        existing = self.store.load(loop_name)
        if existing is not None and existing.is_active:
            return CommandResult.warning(f'Loop "{loop_name}" is already active. Use resume {loop_name}.')

        full_path = self.store.resolve(task_file)
        if not full_path.exists():
            atomic_write_text(full_path, build_task_scaffold(catalog=self.catalog))
            notes.append(f"Created task file: {task_file}")

        content = try_read_text(full_path)
        if content is None:
            return CommandResult.error(f"Could not read task file: {task_file}")

        state = self._new_state(loop_name, task_file, options, existing.started_at if existing else None)
        prompt = self._activate(state, content)
        notes.append(f'Started loop "{loop_name}" [{state.mode.value}] (max {state.max_iterations or "unlimited"} iterations).')
        level = "warning" if any(n.startswith("Template") for n in notes) else "info"
        return CommandResult(ok=True, message="\n".join(notes), prompt=prompt, level=level)

    def start_with_content(
        self,
        name: str,
        task_content: str,
        options: StartOptions | None = None,
    ) -> CommandResult:
        """Worker-initiated start: write *task_content* as the loop's task document, then start."""
        options = options or self.default_options()
        loop_name = sanitize((name or "").strip())
        if not loop_name:
            return CommandResult.warning("A loop name is required.")
        if not (task_content or "").strip():
            return CommandResult.warning("Task content is empty.")

        existing = self.store.load(loop_name)
        if existing is not None and existing.is_active:
            return CommandResult.warning(f'Loop "{loop_name}" already active.')

        task_file = self._relative_task_path(loop_name)
        atomic_write_text(self.store.resolve(task_file), task_content)

        state = self._new_state(loop_name, task_file, options, None)
        prompt = self._activate(state, task_content)
        return CommandResult.info(
            f'Started loop "{loop_name}" [{state.mode.value}] (max {state.max_iterations or "unlimited"} iterations).',
            prompt=prompt,
        )

    def stop(self) -> CommandResult:
        """Pause the current loop, or the first active loop on disk."""
        state = self._current_state() if self.session.current_loop else self.store.find_active()
        if state is None:
            self.session.clear()
            return CommandResult.warning("No active loop.")
        if not state.is_active:
            self.session.clear(state.name)
            return CommandResult.warning(f'Loop "{state.name}" is not active.')
        self.controller.pause(state)
        return CommandResult.info(f"Paused loop: {state.name} (iteration {state.iteration})")

    def finish(self) -> CommandResult:
        """End the current (or first active) loop as completed without a marker."""
        state = self._current_state() or self.store.find_active()
        if state is None:
            return CommandResult.warning("No active loop.")
        if not state.is_active:
            return CommandResult.warning(f'Loop "{state.name}" is not active.')
        self.controller.stop(state)
        return CommandResult.info(f"Stopped loop: {state.name} (iteration {state.iteration})")

    def resume(self, name: str) -> CommandResult:
        """Re-activate a paused loop and return the prompt for its next iteration."""
        loop_name = (name or "").strip()
        if not loop_name:
            return CommandResult.warning("Usage: resume <name>")

        state = self.store.load(loop_name)
        if state is None:
            return CommandResult.error(f'Loop "{loop_name}" not found.')
        if state.status == LoopStatus.COMPLETED:
            return CommandResult.warning(f'Loop "{loop_name}" is completed. Use start {loop_name} to restart.')

        content = self.controller.read_task(state)
        if content is None:
            return CommandResult.error(f"Could not read task file: {state.task_file}")

        current = self.session.current_loop
        if current and current != loop_name:
            previous = self.store.load(current)
            if previous is not None and previous.is_active:
                self.controller.pause(previous)

        state.status = LoopStatus.ACTIVE
        state.iteration += 1
        state.checkpoint_retried = False
        state.reset_iteration_scratch()
        self.store.save(state)
        self.history.append_event(state.name, f"RESUME iter={state.iteration}")
        self.session.set_current(loop_name)
        logger.info("Resumed loop %r at iteration %d", loop_name, state.iteration)

        prompt = self._prompt_and_consume(state, content, needs_reflection(state))
        return CommandResult.info(f"Resumed: {loop_name} (iteration {state.iteration})", prompt=prompt)

    # ------------------------------------------------------------------
    # Iteration boundary
    # ------------------------------------------------------------------

    def done(self) -> CommandResult:
        """The worker finished an iteration: record it and advance the loop."""
        if not self.session.current_loop:
            return CommandResult.warning("No active loop.")
        state = self._current_state()
        if state is None or not state.is_active:
            return CommandResult.warning("Loop is not active.")

        prev_iteration = state.iteration
        prev_done = state.last_checklist_count
        iter_started_at = state.iteration_started_at or state.started_at
        tool_calls = state.current_iteration_tool_calls
        was_reflection = needs_reflection(state)

        result = self.controller.advance(state)

        if result.action in (AdvanceAction.NEXT, AdvanceAction.COMPLETE):
            content = self.controller.read_task(state) or ""
            delta = count_checklist(content).done - prev_done
            ended_at = utc_now_iso()
            record = IterationRecord(
                iteration=prev_iteration,
                started_at=iter_started_at,
                ended_at=ended_at,
                duration_ms=_duration_ms(iter_started_at, ended_at),
                tool_calls=tool_calls,
                checklist_delta=delta,
                was_reflection=was_reflection,
            )
            self.history.append_history(state.name, record)
            self.history.append_log(state.name, record)
            update_struggle_state(state, delta)
            self.store.save(state)

        if result.action in (AdvanceAction.NEXT, AdvanceAction.RETRY):
            if self.hints.consume(state):
                self.store.save(state)

        if result.action == AdvanceAction.NEXT:
            return CommandResult.info(
                f"Iteration {prev_iteration} complete. Next iteration queued.", prompt=result.prompt
            )
        if result.action == AdvanceAction.RETRY:
            return CommandResult.warning(result.message or "Checkpoint retry requested.", ok=True, prompt=result.prompt)
        if result.action == AdvanceAction.COMPLETE:
            return CommandResult.info(result.message or "Loop completed.", prompt=result.prompt)
        return CommandResult.warning(result.message or "Loop paused.")

    def handle_output(self, text: str) -> CommandResult:
        """Scan the worker's final output of a turn for completion/abort markers."""
        state = self._current_state()
        if state is None or not state.is_active:
            return CommandResult.info("No active loop.")

        marker = detect_promise_marker(text)
        if marker == MarkerResult.COMPLETE:
            banner = self.controller.complete(state, "complete")
            return CommandResult.info(f'Loop "{state.name}" complete.', prompt=banner)
        if marker == MarkerResult.ABORT:
            self.controller.pause(state, "abort marker")
            return CommandResult.warning(
                f'Loop "{state.name}" aborted by worker at iteration {state.iteration}.', ok=True
            )
        if state.max_iterations > 0 and state.iteration >= state.max_iterations:
            banner = self.controller.complete(state, "max_iterations")
            return CommandResult.info(
                f"Max iterations ({state.max_iterations}) reached. Loop stopped.", prompt=banner
            )
        return CommandResult.info("No marker found.")

    # ------------------------------------------------------------------
    # Hints and mode
    # ------------------------------------------------------------------

    def add_hint(self, text: str, *, sticky: bool = False) -> CommandResult:
        if not self.session.current_loop:
            return CommandResult.warning("No active loop.")
        state = self._current_state()
        if state is None:
            return CommandResult.error("Could not load loop state.")

        outcome = self.hints.add(state, text, sticky=sticky)
        if not outcome.added:
            return CommandResult.warning(outcome.message)
        self.store.save(state)
        self.session.notify()
        if outcome.truncated:
            return CommandResult.warning(outcome.message, ok=True)
        return CommandResult.info(outcome.message)

    def clear_hints(self) -> CommandResult:
        if not self.session.current_loop:
            return CommandResult.warning("No active loop.")
        state = self._current_state()
        if state is None:
            return CommandResult.error("Could not load loop state.")
        removed = self.hints.clear(state)
        self.store.save(state)
        self.session.notify()
        return CommandResult.info(f"All hints cleared ({removed} removed).")

    def list_hints(self) -> CommandResult:
        if not self.session.current_loop:
            return CommandResult.warning("No active loop.")
        state = self._current_state()
        if state is None:
            return CommandResult.error("Could not load loop state.")
        entries = self.hints.list_hints(state)
        if not entries:
            return CommandResult.info("No active hints.")
        return CommandResult.info("Active hints:\n" + "\n".join(f"  • {h}" for h in entries))

    def set_mode(self, mode: str) -> CommandResult:
        """Switch the current loop between ``plan`` and ``build``."""
        if not self.session.current_loop:
            return CommandResult.warning("No active loop.")
        state = self._current_state()
        if state is None:
            return CommandResult.error(f'Loop "{self.session.current_loop}" not found.')

        target = (mode or "").strip().lower()
        if target not in {m.value for m in LoopMode}:
            return CommandResult.warning(f"Usage: mode <plan|build>\nCurrent mode: {state.mode.value}")
        new_mode = LoopMode(target)
        if state.mode == new_mode:
            return CommandResult.info(f"Already in {new_mode.value} mode.")

        old_mode = state.mode
        state.mode = new_mode
        self.store.save(state)
        self.session.notify()
        return CommandResult.info(f"Mode switched: {old_mode.value} → {new_mode.value}")

    # ------------------------------------------------------------------
    # Session rotation
    # ------------------------------------------------------------------

    def rotate(self, confirm: RotationConfirm | None = None) -> CommandResult:
        """Snapshot progress and hand back a bootstrap prompt for a fresh worker session.

        *confirm* receives the bootstrap text and opens the new session; when it
        returns False the rotation counter is rolled back.
        """
        if not self.session.current_loop:
            return CommandResult.warning("No active loop.")
        state = self._current_state()
        if state is None or not state.is_active:
            return CommandResult.warning("No active loop to rotate.")

        content = self.controller.read_task(state)
        if content is None:
            return CommandResult.error(f"Could not read task file: {state.task_file}")

        notes: list[str] = []
        if state.last_task_file_hash is not None:
            validation = validate_checkpoint(state, content)
            if not validation.valid:
                notes.append(f"Warning: checkpoint incomplete ({'; '.join(validation.reasons)}). Rotating anyway.")

        snapshot_task_file(state, content)
        state.session_rotations += 1
        self.store.save(state)
        bootstrap = build_rotation_prompt(state, catalog=self.catalog)

        if confirm is not None and not confirm(bootstrap):
            state.session_rotations -= 1
            self.store.save(state)
            return CommandResult.warning("Session rotation cancelled.")

        self.history.append_event(state.name, f"ROTATION #{state.session_rotations}")
        self.session.notify()
        notes.append(f'Session rotated for "{state.name}" (rotation #{state.session_rotations}).')
        level = "warning" if len(notes) > 1 else "info"
        return CommandResult(ok=True, message="\n".join(notes), prompt=bootstrap, level=level)

    # ------------------------------------------------------------------
    # Inspection and housekeeping
    # ------------------------------------------------------------------

    def status(self) -> CommandResult:
        loops = self.store.list()
        if not loops:
            return CommandResult.info("No loops found.")
        lines = ["Loops:", *(format_loop(loop) for loop in loops)]
        current = self._current_state()
        if current is not None:
            lines.append("")
            lines.extend(status_lines(current, self.controller.read_task(current)))
        return CommandResult.info("\n".join(lines))

    def list_loops(self, *, archived: bool = False) -> CommandResult:
        loops = self.store.list(archived=archived)
        if not loops:
            return CommandResult.info(
                "No archived loops." if archived else "No loops found. Use list --archived for archived loops."
            )
        label = "Archived loops" if archived else "Loops"
        return CommandResult.info(f"{label}:\n" + "\n".join(format_loop(loop) for loop in loops))

    def cancel(self, name: str) -> CommandResult:
        """Delete a loop's state file (task, history and log are kept)."""
        loop_name = (name or "").strip()
        if not loop_name:
            return CommandResult.warning("Usage: cancel <name>")
        if self.store.load(loop_name) is None:
            return CommandResult.error(f'Loop "{loop_name}" not found.')
        self.session.clear(loop_name)
        self.store.delete(loop_name)
        logger.info("Cancelled loop %r", loop_name)
        return CommandResult.info(f"Cancelled: {loop_name}")

    def archive(self, name: str) -> CommandResult:
        loop_name = (name or "").strip()
        if not loop_name:
            return CommandResult.warning("Usage: archive <name>")
        state = self.store.load(loop_name)
        if state is None:
            return CommandResult.error(f'Loop "{loop_name}" not found.')
        if state.is_active:
            return CommandResult.warning("Cannot archive active loop. Stop it first.")
        self.session.clear(loop_name)
        self.store.archive(state)
        return CommandResult.info(f"Archived: {loop_name}")

    def clean(self, *, all_files: bool = False) -> CommandResult:
        """Remove completed loops; *all_files* also removes their task, history and log files."""
        completed = [loop for loop in self.store.list() if loop.status == LoopStatus.COMPLETED]
        if not completed:
            return CommandResult.info("No completed loops to clean.")

        for loop in completed:
            self.store.delete(loop.name)
            if all_files:
                self.store.delete_file(self.store.path_for(loop.name, TASK_SUFFIX))
                self.store.delete_file(self.history.history_path(loop.name))
                self.store.delete_file(self.history.log_path(loop.name))
            self.session.clear(loop.name)

        suffix = " (all files)" if all_files else " (state only)"
        names = "\n".join(f"  • {loop.name}" for loop in completed)
        return CommandResult.info(f"Cleaned {len(completed)} loop(s){suffix}:\n{names}")

    def nuke(self, *, confirm: bool = False) -> CommandResult:
        """Delete the whole state directory; requires explicit confirmation."""
        if not confirm:
            return CommandResult.warning(f"Run nuke --yes to confirm. {NUKE_WARNING}")
        state_dir = self.store.state_dir
        if not state_dir.exists():
            return CommandResult.info(f"No {state_dir.name} directory found.")
        self.session.clear()
        if not self.store.nuke():
            return CommandResult.error(f"Failed to remove {state_dir.name} directory.")
        logger.warning("Removed state directory %s", state_dir)
        return CommandResult.info(f"Removed {state_dir.name} directory.")

    # ------------------------------------------------------------------
    # Host event hooks
    # ------------------------------------------------------------------

    def restore_session(self) -> str | None:
        """Adopt the first active loop on disk as current (for hosts without a long-lived session)."""
        if self.session.current_loop:
            return self.session.current_loop
        active = self.store.find_active()
        if active is not None:
            self.session.set_current(active.name)
            return active.name
        return None

    def session_summary(self) -> str | None:
        """Text announcing active loops at host session start; ``None`` when there are none."""
        active = [loop for loop in self.store.list() if loop.is_active]
        if not active:
            return None
        lines = [
            f"  • {loop.name} [{loop.mode.value}] (iteration {loop.iteration}"
            f"{f'/{loop.max_iterations}' if loop.max_iterations > 0 else ''})"
            for loop in active
        ]
        return "Active loops:\n" + "\n".join(lines) + "\n\nUse `loopkeeper resume <name>` to continue."

    def system_addendum(self) -> str | None:
        """Loop banner the host appends to the worker's system prompt each turn."""
        state = self._current_state()
        if state is None or not state.is_active:
            return None
        return build_system_addendum(state, catalog=self.catalog)

    def on_tool_call(self, tool_name: str, path: str | None = None) -> None:
        """Count a worker tool call toward the current iteration's stats."""
        if tool_name == DONE_TOOL_NAME:
            return
        state = self._current_state()
        if state is None or not state.is_active:
            return
        state.current_iteration_tool_calls += 1
        if path and tool_name.lower() in FILE_WRITING_TOOLS and path not in state.current_iteration_files:
            state.current_iteration_files.append(path)
        self.store.save(state)

    def on_compaction(self, *, confirm_stale: ConfirmStale | None = None) -> int | None:
        """Record that the host compacted the worker's context; returns the new count."""
        name = self.session.current_loop
        if not name:
            return None

        def _bump(state: LoopState) -> int:
            state.compaction_count += 1
            return state.compaction_count

        count = self.store.with_lock(name, _bump, confirm_stale=confirm_stale)
        self.session.notify()
        return count

    def on_shutdown(self, *, confirm_stale: ConfirmStale | None = None) -> None:
        """Flush the current loop's state under its lock before the host exits."""
        name = self.session.current_loop
        if not name:
            return
        self.store.with_lock(name, lambda state: None, confirm_stale=confirm_stale)
