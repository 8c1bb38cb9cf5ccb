"""Pydantic models and shared constants for loop state and iteration records."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STATE_DIR_NAME = ".loopkeeper"
"""Directory (relative to the working root) holding state, task and log files."""

SCHEMA_VERSION = 3
"""Current on-disk state schema version."""

COMPLETE_MARKER = "<promise>COMPLETE</promise>"
ABORT_MARKER = "<promise>ABORT</promise>"

TASK_CONTENT_INLINE_LIMIT = 8192
"""Task documents longer than this (characters) are sliced before prompt injection."""

HINT_MAX_LENGTH = 300
HINT_MAX_COUNT = 20
"""Maximum number of hints, pending and sticky combined."""

HISTORY_MAX_ENTRIES = 500
LOG_MAX_BYTES = 1_048_576

STRUGGLE_THRESHOLD = 3
"""Consecutive no-progress iterations after which a loop is flagged as struggling."""

DEFAULT_MAX_ITERATIONS = 50

DEFAULT_REFLECT_INSTRUCTIONS = """REFLECTION CHECKPOINT

Pause and reflect on your progress:
1. What has been accomplished so far?
2. What's working well?
3. What's not working or blocking progress?
4. Should the approach be adjusted?
5. What are the next priorities?

Update the task file with your reflection, then continue working."""


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class LoopStatus(str, Enum):
    """Lifecycle status of a loop."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class LoopMode(str, Enum):
    """Execution mode: plan-only analysis vs. full build."""

    PLAN = "plan"
    BUILD = "build"


STATUS_ICONS: dict[LoopStatus, str] = {
    LoopStatus.ACTIVE: "▶",
    LoopStatus.PAUSED: "⏸",
    LoopStatus.COMPLETED: "✓",
}


class MarkerResult(str, Enum):
    """Strict end-of-loop signal found in worker output."""

    COMPLETE = "COMPLETE"
    ABORT = "ABORT"


class AdvanceAction(str, Enum):
    """Outcome of advancing a loop by one iteration."""

    NEXT = "next"
    RETRY = "retry"
    PAUSE = "pause"
    COMPLETE = "complete"


# ---------------------------------------------------------------------------
# Persisted models
# ---------------------------------------------------------------------------

_CAMEL_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoopState(BaseModel):
    """Full persisted state of one named loop - written to ``.loopkeeper/<name>.state.json``."""

    model_config = _CAMEL_CONFIG

    schema_version: int = SCHEMA_VERSION

    # identity
    name: str = Field(min_length=1)
    task_file: str = ""

    # iteration
    iteration: int = Field(default=1, ge=1)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=0)
    items_per_iteration: int = Field(default=0, ge=0)
    reflect_every: int = Field(default=0, ge=0)
    reflect_instructions: str = DEFAULT_REFLECT_INSTRUCTIONS

    # lifecycle
    status: LoopStatus = LoopStatus.ACTIVE
    started_at: str = Field(default_factory=utc_now_iso)
    completed_at: str | None = None

    # mode / template
    mode: LoopMode = LoopMode.BUILD
    prompt_template: str | None = None

    # hints
    pending_hints: list[str] = Field(default_factory=list)
    sticky_hints: list[str] = Field(default_factory=list)

    # checkpoint snapshot
    last_task_file_hash: str | None = None
    last_task_file_size: int | None = None
    checkpoint_retried: bool = False

    # context health
    compaction_count: int = Field(default=0, ge=0)
    session_rotations: int = Field(default=0, ge=0)

    # progress tracking
    no_progress_streak: int = Field(default=0, ge=0)
    last_checklist_count: int = Field(default=0, ge=0)

    # per-iteration scratch
    iteration_started_at: str | None = None
    current_iteration_tool_calls: int = Field(default=0, ge=0)
    current_iteration_files: list[str] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == LoopStatus.ACTIVE

    @property
    def hint_count(self) -> int:
        return len(self.pending_hints) + len(self.sticky_hints)

    def to_json(self) -> str:
        """Serialize with camelCase keys, omitting unset optional fields."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    def reset_iteration_scratch(self) -> None:
        """Clear per-iteration counters and stamp a fresh iteration start time."""
        self.current_iteration_tool_calls = 0
        self.current_iteration_files = []
        self.iteration_started_at = utc_now_iso()


class IterationRecord(BaseModel):
    """Immutable record of one finished iteration."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    iteration: int
    started_at: str
    ended_at: str
    duration_ms: int = 0
    tool_calls: int = 0
    checklist_delta: int = 0
    was_reflection: bool = False


# ---------------------------------------------------------------------------
# Runtime results
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CheckpointValidation:
    """Result of grading a task document at a reflection iteration."""

    valid: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ChecklistCount:
    done: int
    total: int


@dataclass(slots=True)
class AdvanceResult:
    """Structured controller outcome; the host renders these uniformly."""

    action: AdvanceAction
    prompt: str | None = None
    message: str | None = None
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CommandResult:
    """Return value of every lifecycle command."""

    ok: bool
    message: str = ""
    prompt: str | None = None
    level: str = "info"

    @classmethod
    def info(cls, message: str, *, prompt: str | None = None) -> CommandResult:
        return cls(ok=True, message=message, prompt=prompt, level="info")

    @classmethod
    def warning(cls, message: str, *, ok: bool = False, prompt: str | None = None) -> CommandResult:
        return cls(ok=ok, message=message, prompt=prompt, level="warning")

    @classmethod
    def error(cls, message: str) -> CommandResult:
        return cls(ok=False, message=message, level="error")
