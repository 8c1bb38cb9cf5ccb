"""Tests for the loop lifecycle commands a host drives."""

from __future__ import annotations

from pathlib import Path

import pytest

from loopkeeper.commands import LoopCommands, StartOptions
from loopkeeper.controller import LoopSession
from loopkeeper.schemas import (
    ABORT_MARKER,
    COMPLETE_MARKER,
    HINT_MAX_COUNT,
    LoopMode,
    LoopStatus,
)
from loopkeeper.state_store import StateStore

pytestmark = pytest.mark.integration

TASK = "# Task\n\n## Goals\n- Ship it\n\n## Checklist\n- [x] one\n- [ ] two\n- [ ] three\n"


def _write_task(store: StateStore, content: str, name: str = "demo") -> Path:
    path = store.state_dir / f"{name}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _start(commands: LoopCommands, content: str = TASK, **options) -> None:
    _write_task(commands.store, content)
    result = commands.start("demo", StartOptions(**options))
    assert result.ok, result.message


@pytest.mark.unit
class TestStartOptions:
    def test_negative_values_are_clamped(self) -> None:
        options = StartOptions(max_iterations=-1, items_per_iteration=-2, reflect_every=-3)
        assert (options.max_iterations, options.items_per_iteration, options.reflect_every) == (0, 0, 0)

    def test_mode_is_parsed(self) -> None:
        assert StartOptions(mode="PLAN").mode is LoopMode.PLAN
        assert StartOptions(mode="dance").mode is LoopMode.BUILD

    def test_empty_reflect_instructions_use_default(self) -> None:
        assert StartOptions(reflect_instructions="").reflect_instructions.startswith("REFLECTION CHECKPOINT")


class TestStart:
    def test_scaffolds_missing_task_file(self, commands: LoopCommands, store: StateStore, history) -> None:
        result = commands.start("demo")

        assert result.ok
        assert "Created task file: .loopkeeper/demo.md" in result.message
        assert 'Started loop "demo" [build] (max 50 iterations).' in result.message
        assert "Iteration 1/50" in result.prompt
        assert "- [ ] Item 1" in (store.state_dir / "demo.md").read_text(encoding="utf-8")

        state = store.load("demo")
        assert state.is_active
        assert state.task_file == ".loopkeeper/demo.md"
        assert state.last_task_file_hash is not None
        assert commands.session.current_loop == "demo"
        assert "--- START mode=build iter=1 ---" in history.read_log("demo")

    def test_existing_task_file_is_used(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        assert "- [ ] two" in store.state_dir.joinpath("demo.md").read_text(encoding="utf-8")
        assert store.load("demo").last_checklist_count == 1

    def test_path_argument_names_loop_after_file(self, commands: LoopCommands, store: StateStore) -> None:
        task = store.root / "docs" / "My Task.md"
        task.parent.mkdir()
        task.write_text(TASK, encoding="utf-8")

        result = commands.start("docs/My Task.md")

        assert result.ok
        state = store.load("My_Task")
        assert state is not None
        assert state.task_file == "docs/My Task.md"

    def test_refuses_already_active(self, commands: LoopCommands) -> None:
        _start(commands)
        result = commands.start("demo")
        assert not result.ok
        assert "already active" in result.message

    def test_restart_keeps_original_start_time(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        started_at = store.load("demo").started_at
        commands.finish()

        assert commands.start("demo").ok
        assert store.load("demo").started_at == started_at
        assert store.load("demo").iteration == 1

    def test_missing_template_falls_back_with_warning(self, commands: LoopCommands, store: StateStore) -> None:
        _write_task(store, TASK)
        result = commands.start("demo", StartOptions(prompt_template="nope.md"))

        assert result.ok
        assert result.level == "warning"
        assert "Template not found: nope.md" in result.message
        assert store.load("demo").prompt_template is None

    def test_custom_template_is_used(self, commands: LoopCommands, store: StateStore) -> None:
        (store.root / "PROMPT.md").write_text("Work on {{loopName}} now.", encoding="utf-8")
        _write_task(store, TASK)

        result = commands.start("demo", StartOptions(prompt_template="PROMPT.md"))

        assert result.prompt == "Work on demo now."

    def test_empty_name_is_usage_warning(self, commands: LoopCommands) -> None:
        result = commands.start("  ")
        assert not result.ok and result.message.startswith("Usage")

    def test_unlimited_message(self, commands: LoopCommands) -> None:
        _write_task(commands.store, TASK)
        result = commands.start("demo", StartOptions(max_iterations=0))
        assert "(max unlimited iterations)" in result.message
        assert "Iteration 1\n" in result.prompt

    def test_starting_another_loop_pauses_the_current_one(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        assert commands.start("second").ok

        assert store.load("demo").status is LoopStatus.PAUSED
        assert commands.session.current_loop == "second"

    def test_start_with_content(self, commands: LoopCommands, store: StateStore) -> None:
        result = commands.start_with_content("agent task", TASK, StartOptions(mode="plan"))

        assert result.ok
        assert "PLANNING MODE" in result.prompt
        assert (store.state_dir / "agent_task.md").read_text(encoding="utf-8") == TASK
        assert store.load("agent_task").mode is LoopMode.PLAN

    def test_start_with_content_requires_content(self, commands: LoopCommands) -> None:
        assert not commands.start_with_content("demo", "   ").ok


class TestDone:
    def test_records_history_and_advances(self, commands: LoopCommands, store: StateStore, history) -> None:
        _start(commands)
        commands.on_tool_call("bash")
        commands.on_tool_call("edit", "src/app.py")
        _write_task(store, TASK.replace("- [ ] two", "- [x] two"))

        result = commands.done()

        assert result.ok
        assert result.message == "Iteration 1 complete. Next iteration queued."
        assert "Iteration 2/50" in result.prompt
        records = history.read_history("demo")
        assert len(records) == 1
        assert records[0].iteration == 1
        assert records[0].checklist_delta == 1
        assert records[0].tool_calls == 2
        assert records[0].was_reflection is False
        assert "✓ +1 items" in history.read_log("demo")

        state = store.load("demo")
        assert state.iteration == 2
        assert state.no_progress_streak == 0
        assert state.current_iteration_tool_calls == 0
        assert state.current_iteration_files == []

    def test_no_progress_builds_struggle_streak(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        for _ in range(3):
            commands.done()

        state = store.load("demo")
        assert state.no_progress_streak == 3
        assert "⚠️ No progress ×3" in commands.status().message

    def test_without_current_loop(self, commands: LoopCommands) -> None:
        result = commands.done()
        assert not result.ok
        assert result.message == "No active loop."

    def test_reflection_retry_then_pause(self, commands: LoopCommands, store: StateStore, history) -> None:
        _start(commands, reflect_every=5)

        for expected_iteration in range(2, 6):
            result = commands.done()
            assert result.message == f"Iteration {expected_iteration - 1} complete. Next iteration queued."

        retry = commands.done()
        assert retry.ok
        assert retry.level == "warning"
        assert retry.message.startswith("Checkpoint validation failed:")
        assert "🪞 CHECKPOINT" in retry.prompt

        paused = commands.done()
        assert not paused.ok
        assert "after retry" in paused.message

        state = store.load("demo")
        assert state.status is LoopStatus.PAUSED
        assert state.iteration == 5
        assert len(history.read_history("demo")) == 4

    def test_max_iterations_complete(self, commands: LoopCommands, store: StateStore, history) -> None:
        _start(commands, max_iterations=2)
        commands.done()

        result = commands.done()

        assert result.ok
        assert result.message == "Max iterations (2) reached. Loop stopped."
        assert "⚠️ LOOP STOPPED: demo" in result.prompt
        assert store.load("demo").status is LoopStatus.COMPLETED
        assert [r.iteration for r in history.read_history("demo")] == [1, 2]

    def test_missing_task_pauses(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        (store.state_dir / "demo.md").unlink()

        result = commands.done()

        assert not result.ok
        assert "could not read task file" in result.message
        assert store.load("demo").status is LoopStatus.PAUSED


class TestOutputMarkers:
    def test_complete_marker(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        result = commands.handle_output(f"All done.\n{COMPLETE_MARKER}\n")

        assert result.ok
        assert result.message == 'Loop "demo" complete.'
        assert "✅ LOOP COMPLETE: demo" in result.prompt
        assert store.load("demo").status is LoopStatus.COMPLETED

    def test_abort_marker_pauses(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        result = commands.handle_output(ABORT_MARKER)

        assert result.ok
        assert result.level == "warning"
        assert "aborted by worker at iteration 1" in result.message
        assert store.load("demo").status is LoopStatus.PAUSED

    def test_marker_in_code_fence_is_ignored(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        result = commands.handle_output(f"```\n{COMPLETE_MARKER}\n```")

        assert result.message == "No marker found."
        assert store.load("demo").is_active

    def test_max_iteration_guard(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands, max_iterations=1)
        result = commands.handle_output("still working")

        assert "Max iterations (1) reached" in result.message
        assert store.load("demo").status is LoopStatus.COMPLETED

    def test_no_loop(self, commands: LoopCommands) -> None:
        assert commands.handle_output(COMPLETE_MARKER).message == "No active loop."


class TestHints:
    def test_one_shot_hints_are_consumed_sticky_ones_repeat(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        assert commands.add_hint("check the cache").ok
        assert commands.add_hint("small commits", sticky=True).ok

        first = commands.done()
        assert "- check the cache (one-shot)" in first.prompt
        assert "- small commits (sticky)" in first.prompt
        state = store.load("demo")
        assert state.pending_hints == []
        assert state.sticky_hints == ["small commits"]

        second = commands.done()
        assert "check the cache" not in second.prompt
        assert "- small commits (sticky)" in second.prompt

    def test_twenty_first_hint_is_rejected(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        for i in range(HINT_MAX_COUNT):
            assert commands.add_hint(f"hint {i}").ok

        result = commands.add_hint("one more")

        assert not result.ok
        assert "Max hints reached" in result.message
        assert store.load("demo").hint_count == HINT_MAX_COUNT

    def test_list_and_clear(self, commands: LoopCommands) -> None:
        _start(commands)
        assert commands.list_hints().message == "No active hints."
        commands.add_hint("a")
        commands.add_hint("b", sticky=True)

        assert commands.list_hints().message == "Active hints:\n  • a (one-shot)\n  • b (sticky)"
        assert commands.clear_hints().message == "All hints cleared (2 removed)."
        assert commands.list_hints().message == "No active hints."

    def test_hints_need_a_loop(self, commands: LoopCommands) -> None:
        assert not commands.add_hint("a").ok


class TestMode:
    def test_switch_mode(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)

        assert commands.set_mode("plan").message == "Mode switched: build → plan"
        assert commands.set_mode("plan").message == "Already in plan mode."
        assert store.load("demo").mode is LoopMode.PLAN
        assert "PLANNING MODE" in commands.done().prompt

    def test_invalid_mode(self, commands: LoopCommands) -> None:
        _start(commands)
        result = commands.set_mode("dance")
        assert not result.ok
        assert "Current mode: build" in result.message


class TestStopFinishResume:
    def test_stop_then_resume(self, commands: LoopCommands, store: StateStore, history) -> None:
        _start(commands)

        stopped = commands.stop()
        assert stopped.message == "Paused loop: demo (iteration 1)"
        assert commands.session.current_loop is None
        assert commands.stop().message == "No active loop."

        resumed = commands.resume("demo")
        assert resumed.message == "Resumed: demo (iteration 2)"
        assert "Iteration 2/50" in resumed.prompt
        assert commands.session.current_loop == "demo"
        state = store.load("demo")
        assert state.is_active and state.iteration == 2
        assert "--- RESUME iter=2 ---" in history.read_log("demo")

    def test_resume_errors(self, commands: LoopCommands) -> None:
        assert commands.resume("ghost").level == "error"
        _start(commands)
        commands.finish()
        result = commands.resume("demo")
        assert not result.ok
        assert "is completed" in result.message

    def test_resume_with_missing_task(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        commands.stop()
        (store.state_dir / "demo.md").unlink()
        assert commands.resume("demo").level == "error"

    def test_finish(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        assert commands.finish().message == "Stopped loop: demo (iteration 1)"
        assert store.load("demo").status is LoopStatus.COMPLETED
        assert commands.finish().message == "No active loop."


class TestRotate:
    def test_rotation_returns_bootstrap_prompt(self, commands: LoopCommands, store: StateStore, history) -> None:
        _start(commands)

        result = commands.rotate()

        assert result.ok
        assert result.level == "warning"
        assert "checkpoint incomplete" in result.message
        assert 'Session rotated for "demo" (rotation #1).' in result.message
        assert "Rotation #1" in result.prompt
        assert store.load("demo").session_rotations == 1
        assert "--- ROTATION #1 ---" in history.read_log("demo")

    def test_cancelled_rotation_rolls_back(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        seen: list[str] = []

        def decline(bootstrap: str) -> bool:
            seen.append(bootstrap)
            return False

        result = commands.rotate(confirm=decline)

        assert result.message == "Session rotation cancelled."
        assert "Rotation #1" in seen[0]
        assert store.load("demo").session_rotations == 0


class TestHousekeeping:
    def test_status_and_list(self, commands: LoopCommands) -> None:
        assert commands.status().message == "No loops found."
        _start(commands)
        commands.add_hint("a")

        status = commands.status().message
        assert status.startswith("Loops:\ndemo: ▶ active (iteration 1/50)")
        assert "Loop: demo [build]" in status
        assert "Checklist: 1/3" in status
        assert "💡 1 hint(s)" in status

        assert commands.list_loops().message == "Loops:\ndemo: ▶ active (iteration 1/50)"
        assert commands.list_loops(archived=True).message == "No archived loops."

    def test_cancel(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        assert commands.cancel("demo").message == "Cancelled: demo"
        assert store.load("demo") is None
        assert commands.session.current_loop is None
        assert (store.state_dir / "demo.md").exists()
        assert commands.cancel("demo").level == "error"

    def test_archive(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        assert "Cannot archive active loop" in commands.archive("demo").message

        commands.stop()
        assert commands.archive("demo").message == "Archived: demo"
        assert store.load("demo") is None
        assert "demo: ⏸ paused" in commands.list_loops(archived=True).message

    def test_clean(self, commands: LoopCommands, store: StateStore, history) -> None:
        assert commands.clean().message == "No completed loops to clean."
        _start(commands)
        commands.done()
        commands.finish()

        result = commands.clean(all_files=True)

        assert result.message.startswith("Cleaned 1 loop(s) (all files):")
        assert store.load("demo") is None
        assert not (store.state_dir / "demo.md").exists()
        assert not history.history_path("demo").exists()
        assert not history.log_path("demo").exists()

    def test_clean_state_only_keeps_task(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        commands.finish()
        assert "(state only)" in commands.clean().message
        assert (store.state_dir / "demo.md").exists()

    def test_nuke(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)

        refused = commands.nuke()
        assert not refused.ok
        assert store.state_dir.exists()

        assert commands.nuke(confirm=True).message == "Removed .loopkeeper directory."
        assert not store.state_dir.exists()
        assert commands.session.current_loop is None
        assert commands.nuke(confirm=True).message == "No .loopkeeper directory found."


class TestHostHooks:
    def test_tool_calls_are_tracked(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        commands.on_tool_call("read")
        commands.on_tool_call("edit", "a.py")
        commands.on_tool_call("write", "a.py")
        commands.on_tool_call("loop_done")

        state = store.load("demo")
        assert state.current_iteration_tool_calls == 3
        assert state.current_iteration_files == ["a.py"]

    def test_compaction_counter(self, commands: LoopCommands, store: StateStore) -> None:
        assert commands.on_compaction() is None
        _start(commands)

        assert commands.on_compaction() == 1
        assert commands.on_compaction() == 2
        assert store.load("demo").compaction_count == 2
        assert "Compactions: 2" in commands.status().message

    def test_shutdown_releases_lock(self, commands: LoopCommands, store: StateStore) -> None:
        _start(commands)
        commands.on_shutdown()
        assert store.lock.holder("demo") is None
        assert store.load("demo").is_active

    def test_session_summary_and_addendum(self, commands: LoopCommands) -> None:
        assert commands.session_summary() is None
        assert commands.system_addendum() is None
        _start(commands)

        summary = commands.session_summary()
        assert "  • demo [build] (iteration 1/50)" in summary
        assert "loopkeeper resume <name>" in summary
        assert commands.system_addendum().startswith("[LOOP - demo [build] - Iteration 1/50]")

        commands.stop()
        assert commands.system_addendum() is None

    def test_restore_session_adopts_active_loop(self, commands: LoopCommands, store: StateStore, catalog) -> None:
        _start(commands)

        fresh = LoopCommands(store, catalog=catalog)
        assert fresh.restore_session() == "demo"
        assert fresh.session.current_loop == "demo"
        assert fresh.done().ok

    def test_on_update_hook_sees_changes(self, store: StateStore, catalog) -> None:
        updates: list[str | None] = []
        session = LoopSession(on_update=lambda s: updates.append(s.current_loop))
        commands = LoopCommands(store, session=session, catalog=catalog)

        _start(commands)
        commands.add_hint("a")
        commands.stop()

        assert "demo" in updates
        assert updates[-1] is None
