"""Loop state persistence: load/save with migration, listing, locking and archiving.

All ``.loopkeeper/`` state-file access goes through :class:`StateStore`.
Corrupt files and failed migrations never raise past the public methods;
they are reported through the store's warning callback and treated as
"loop not found".
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from loopkeeper.errors import MigrationError, StateCorruptError
from loopkeeper.file_io import atomic_write_text, try_read_text
from loopkeeper.locks import ConfirmStale, StateLock
from loopkeeper.migration import migrate_state
from loopkeeper.schemas import SCHEMA_VERSION, STATE_DIR_NAME, LoopState

logger = logging.getLogger(__name__)

STATE_SUFFIX = ".state.json"
TASK_SUFFIX = ".md"
ARCHIVE_DIR_NAME = "archive"

WarningHandler = Callable[[str], None]
_T = TypeVar("_T")

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")
_REPEATED_UNDERSCORE_RE = re.compile(r"_+")


def sanitize(name: str) -> str:
    """Make a loop name safe for use as a file stem."""
    return _REPEATED_UNDERSCORE_RE.sub("_", _UNSAFE_NAME_RE.sub("_", name))


def _log_warning(message: str) -> None:
    logger.warning("%s", message)


def _parse_state_text(text: str, source: Path) -> LoopState:
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StateCorruptError(f"invalid JSON in {source}: {exc}") from exc
    return migrate_state(raw)


class StateStore:
    """Versioned per-loop state files under ``<root>/.loopkeeper``.

    Parameters
    ----------
    root:
        Working directory the loop runs in; relative task paths resolve here.
    state_dir_name:
        Name of the state directory inside *root*.
    on_warning:
        Side channel for non-fatal problems (corrupt JSON, failed migration).
        Defaults to a ``logging`` warning.
    lock:
        Per-name mutex used by :meth:`with_lock`.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        state_dir_name: str = STATE_DIR_NAME,
        on_warning: WarningHandler | None = None,
        lock: StateLock | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.state_dir = self.root / state_dir_name
        self.archive_dir = self.state_dir / ARCHIVE_DIR_NAME
        self.on_warning: WarningHandler = on_warning or _log_warning
        self.lock = lock or StateLock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def path_for(self, name: str, suffix: str, *, archived: bool = False) -> Path:
        base = self.archive_dir if archived else self.state_dir
        return base / f"{sanitize(name)}{suffix}"

    def state_path(self, name: str, *, archived: bool = False) -> Path:
        return self.path_for(name, STATE_SUFFIX, archived=archived)

    def resolve(self, relative: str | Path) -> Path:
        """Resolve a task/template path relative to the working root."""
        return (self.root / relative).resolve()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def load(self, name: str, *, archived: bool = False) -> LoopState | None:
        """Load and migrate a loop by name; ``None`` when absent or unreadable."""
        path = self.state_path(name, archived=archived)
        text = try_read_text(path)
        if text is None:
            return None
        if not text.strip():
            self.on_warning(f"Failed to load state {name!r} ({path}): file is empty")
            return None
        try:
            return _parse_state_text(text, path)
        except (StateCorruptError, MigrationError) as exc:
            self.on_warning(f"Failed to load state {name!r} ({path}): {exc}")
            return None

    def save(self, state: LoopState, *, archived: bool = False) -> None:
        """Stamp the current schema version and atomically rewrite the state file."""
        state.schema_version = SCHEMA_VERSION
        atomic_write_text(self.state_path(state.name, archived=archived), state.to_json())

    def list(self, *, archived: bool = False) -> list[LoopState]:
        """Return every loadable loop in the state (or archive) directory, sorted by name."""
        directory = self.archive_dir if archived else self.state_dir
        if not directory.is_dir():
            return []
        loops: list[LoopState] = []
        for path in sorted(directory.glob(f"*{STATE_SUFFIX}")):
            text = try_read_text(path)
            if text is None:
                continue
            if not text.strip():
                self.on_warning(f"Failed to parse state file {path}: file is empty")
                continue
            try:
                loops.append(_parse_state_text(text, path))
            except (StateCorruptError, MigrationError) as exc:
                self.on_warning(f"Failed to parse state file {path}: {exc}")
        return loops

    def find_active(self) -> LoopState | None:
        """Return the first active loop on disk, if any."""
        for state in self.list():
            if state.is_active:
                return state
        return None

    def delete(self, name: str) -> bool:
        """Delete a loop's state file. Returns True when a file was removed."""
        return self.delete_file(self.state_path(name))

    def delete_file(self, path: Path) -> bool:
        """Delete *path*, reporting (not raising) OS errors."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            self.on_warning(f"Could not delete {path}: {exc}")
            return False
        return True

    def archive(self, state: LoopState) -> Path:
        """Move a loop's state file (and its task file when stored in the state dir) to the archive."""
        src_state = self.state_path(state.name)
        dst_state = self.state_path(state.name, archived=True)
        dst_state.parent.mkdir(parents=True, exist_ok=True)
        if src_state.exists():
            src_state.replace(dst_state)

        src_task = self.resolve(state.task_file)
        if src_task.is_relative_to(self.state_dir) and not src_task.is_relative_to(self.archive_dir):
            if src_task.exists():
                src_task.replace(self.path_for(state.name, TASK_SUFFIX, archived=True))
        logger.info("Archived loop %r", state.name)
        return dst_state

    def nuke(self) -> bool:
        """Remove the entire state directory. Returns True on success (or if absent)."""
        if not self.state_dir.exists():
            return True
        try:
            shutil.rmtree(self.state_dir)
        except OSError as exc:
            self.on_warning(f"Failed to remove {self.state_dir}: {exc}")
            return False
        return True

    # ------------------------------------------------------------------
    # Locked read-modify-write
    # ------------------------------------------------------------------

    def with_lock(
        self,
        name: str,
        fn: Callable[[LoopState], _T],
        *,
        holder: str | None = None,
        confirm_stale: ConfirmStale | None = None,
    ) -> _T | None:
        """Load *name* under its lock, let *fn* mutate it in place, then save.

        Returns whatever *fn* returns, or ``None`` when the loop does not
        exist. The lock is released even if *fn* raises (and nothing is saved
        in that case).
        """
        with self.lock.hold(name, holder=holder, confirm_stale=confirm_stale):
            state = self.load(name)
            if state is None:
                return None
            result = fn(state)
            self.save(state)
            return result
