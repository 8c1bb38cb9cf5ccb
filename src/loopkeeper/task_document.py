"""Read-only parsing of the Markdown task document the worker maintains.

Recognized structure::

    ## Goals
    ## Checklist          (- [ ] pending / - [x] done, x case-insensitive)
    ## Checkpoint <label> (### Completed, ### Failed Approaches, ...)

A section runs from its ``## `` heading line to the next ``## `` heading or
the end of the document; ``###`` subsections stay inside their section.
"""

from __future__ import annotations

import re

from loopkeeper.schemas import ChecklistCount

GOALS_HEADING = "## Goals"
CHECKLIST_HEADING = "## Checklist"
CHECKPOINT_HEADING = "## Checkpoint"

_DONE_ITEM_RE = re.compile(r"^\s*-\s*\[x\]", re.IGNORECASE)
_PENDING_ITEM_RE = re.compile(r"^\s*-\s*\[ \]")


def _is_top_heading(line: str) -> bool:
    return line.startswith("## ")


def _section_blocks(content: str, heading: str) -> list[str]:
    """Return every block whose heading line starts with *heading*, in document order."""
    lines = content.splitlines(keepends=True)
    blocks: list[str] = []
    current: list[str] | None = None
    for line in lines:
        if _is_top_heading(line):
            if current is not None:
                blocks.append("".join(current))
                current = None
            if line.startswith(heading):
                current = [line]
            continue
        if current is not None:
            current.append(line)
    if current is not None:
        blocks.append("".join(current))
    return blocks


def extract_section(content: str, heading: str) -> str | None:
    """Return the first section starting with *heading* (trailing whitespace trimmed)."""
    blocks = _section_blocks(content, heading)
    return blocks[0].rstrip() if blocks else None


def extract_latest_checkpoint(content: str) -> str | None:
    """Return the raw text of the last ``## Checkpoint`` block, or ``None``."""
    blocks = _section_blocks(content, CHECKPOINT_HEADING)
    return blocks[-1] if blocks else None


def is_done_item(line: str) -> bool:
    return bool(_DONE_ITEM_RE.match(line))


def is_pending_item(line: str) -> bool:
    return bool(_PENDING_ITEM_RE.match(line))


def count_checklist(content: str) -> ChecklistCount:
    """Count checked and unchecked ``- [ ]`` items anywhere in the document."""
    done = 0
    pending = 0
    for line in content.splitlines():
        if is_done_item(line):
            done += 1
        elif is_pending_item(line):
            pending += 1
    return ChecklistCount(done=done, total=done + pending)
