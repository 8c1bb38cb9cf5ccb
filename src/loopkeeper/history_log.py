"""Per-loop iteration history and human-readable log.

Writes, under the state directory:

* ``<name>.history.json`` - JSON array of :class:`IterationRecord`, newest
  last, capped at :data:`HISTORY_MAX_ENTRIES`.
* ``<name>.log`` - one line per iteration plus bannered event lines, kept
  under :data:`LOG_MAX_BYTES` by discarding the front half when exceeded.

Recording is best effort: I/O failures are logged, never raised into the
iteration controller.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from pathlib import Path

from pydantic import ValidationError

from loopkeeper.file_io import append_text, atomic_write_text, try_read_text
from loopkeeper.schemas import HISTORY_MAX_ENTRIES, LOG_MAX_BYTES, IterationRecord, utc_now_iso
from loopkeeper.state_store import sanitize

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[…truncated…]"


def format_duration(ms: int) -> str:
    total_sec = round(ms / 1000)
    minutes, seconds = divmod(total_sec, 60)
    return f"{minutes}m{seconds}s" if minutes > 0 else f"{seconds}s"


def format_timestamp(iso: str) -> str:
    """Render an ISO timestamp as local ``YYYY-MM-DD HH:MM``."""
    try:
        return dt.datetime.fromisoformat(iso).astimezone().strftime("%Y-%m-%d %H:%M")
    except (TypeError, ValueError):
        return str(iso)[:16]


def format_delta(delta: int) -> str:
    if delta > 0:
        return f"✓ +{delta} items"
    if delta == 0:
        return "→ no change"
    return f"✗ {delta} items"


def format_log_line(record: IterationRecord) -> str:
    """``[ts] Iter NNN  | dur | delta | tools: N calls [reflection]``"""
    reflection = " [reflection]" if record.was_reflection else ""
    return (
        f"[{format_timestamp(record.ended_at)}] Iter {record.iteration:>3}  | "
        f"{format_duration(record.duration_ms):>6} | {format_delta(record.checklist_delta):<14} | "
        f"tools: {record.tool_calls} calls{reflection}\n"
    )


class IterationHistory:
    """Append-only iteration history and log files for every loop in a state directory."""

    def __init__(
        self,
        state_dir: str | Path,
        *,
        max_entries: int = HISTORY_MAX_ENTRIES,
        max_log_bytes: int = LOG_MAX_BYTES,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.max_entries = max(1, int(max_entries))
        self.max_log_bytes = max(1024, int(max_log_bytes))
        self._lock = threading.Lock()

    def history_path(self, name: str) -> Path:
        return self.state_dir / f"{sanitize(name)}.history.json"

    def log_path(self, name: str) -> Path:
        return self.state_dir / f"{sanitize(name)}.log"

    # ------------------------------------------------------------------
    # Structured history
    # ------------------------------------------------------------------

    def read_history(self, name: str) -> list[IterationRecord]:
        """Return recorded iterations, oldest first; ``[]`` for a missing or corrupt file."""
        path = self.history_path(name)
        text = try_read_text(path)
        if not text:
            return []
        try:
            items = json.loads(text)
            if not isinstance(items, list):
                raise ValueError("history file is not a JSON array")
            return [IterationRecord.model_validate(item) for item in items]
        except (ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable history file %s: %s", path, exc)
            return []

    def append_history(self, name: str, record: IterationRecord) -> None:
        try:
            with self._lock:
                history = self.read_history(name)
                history.append(record)
                trimmed = history[-self.max_entries :]
                payload = [item.model_dump(by_alias=True) for item in trimmed]
                atomic_write_text(self.history_path(name), json.dumps(payload, indent=2, ensure_ascii=False))
        except OSError as exc:
            logger.warning("Could not append history for %r: %s", name, exc)

    # ------------------------------------------------------------------
    # Human-readable log
    # ------------------------------------------------------------------

    def append_log(self, name: str, record: IterationRecord) -> None:
        self._append_line(name, format_log_line(record))

    def append_event(self, name: str, event: str) -> None:
        """Write a bannered out-of-band line (rotation, pause, completion)."""
        self._append_line(name, f"[{format_timestamp(utc_now_iso())}] --- {event} ---\n")

    def read_log(self, name: str) -> str:
        return try_read_text(self.log_path(name)) or ""

    def _append_line(self, name: str, line: str) -> None:
        path = self.log_path(name)
        try:
            with self._lock:
                append_text(path, line)
                self._trim_log_if_needed(path)
        except OSError as exc:
            logger.warning("Could not append log line for %r: %s", name, exc)

    def _trim_log_if_needed(self, path: Path) -> None:
        if path.stat().st_size <= self.max_log_bytes:
            return
        content = path.read_text(encoding="utf-8", errors="replace")
        half = len(content) // 2
        cut = content.find("\n", half)
        if cut >= 0:
            kept = content[cut + 1 :]
        else:
            kept = content[-(self.max_log_bytes // 4) :]
        atomic_write_text(path, f"{TRUNCATION_MARKER}\n{kept}")
        logger.debug("Trimmed log %s to %d chars", path, len(kept))
