"""Checkpoint validation for reflection iterations.

Verifies that the worker actually rewrote the task document with a
structured progress checkpoint, instead of merely claiming it did.
"""

from __future__ import annotations

import hashlib
import logging

from loopkeeper.schemas import CheckpointValidation, LoopState
from loopkeeper.task_document import extract_latest_checkpoint

logger = logging.getLogger(__name__)

REQUIRED_SUBSECTIONS: tuple[str, ...] = (
    "### Completed",
    "### Failed Approaches",
    "### Key Decisions",
    "### Current State",
    "### Next Steps",
)

UNCHANGED_REASON = "Task file content unchanged since last snapshot (same hash + size)."
MISSING_HEADING_REASON = "Missing `## Checkpoint` heading in task file."


def compute_file_hash(content: str) -> str:
    """SHA-256 hex digest of *content* encoded as UTF-8."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def validate_checkpoint(state: LoopState, task_content: str) -> CheckpointValidation:
    """Grade *task_content* against the stored snapshot and the checkpoint structure.

    1. Unchanged content (same hash and length as the snapshot) is rejected;
       skipped when no snapshot exists yet.
    2. The latest ``## Checkpoint`` block must exist and contain every
       :data:`REQUIRED_SUBSECTIONS` heading.
    """
    reasons: list[str] = []

    if state.last_task_file_hash is not None:
        same_hash = compute_file_hash(task_content) == state.last_task_file_hash
        same_size = len(task_content) == state.last_task_file_size
        if same_hash and same_size:
            reasons.append(UNCHANGED_REASON)

    block = extract_latest_checkpoint(task_content)
    if block is None:
        reasons.append(MISSING_HEADING_REASON)
    else:
        reasons.extend(
            f"Missing subsection: {sub}" for sub in REQUIRED_SUBSECTIONS if sub not in block
        )

    if reasons:
        logger.debug("Checkpoint for %r rejected: %s", state.name, "; ".join(reasons))
    return CheckpointValidation(valid=not reasons, reasons=reasons)


def snapshot_task_file(state: LoopState, content: str) -> None:
    """Record the hash and size of *content*; call after a passing validation or at loop start."""
    state.last_task_file_hash = compute_file_hash(content)
    state.last_task_file_size = len(content)
