"""Template rendering and prompt assembly.

Resolves ``{{key}}`` placeholders and builds iteration, rotation and
system-addendum text from loop state, task content and hints.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path

from loopkeeper.file_io import try_read_text
from loopkeeper.hints import format_hints
from loopkeeper.markers import marker_instructions
from loopkeeper.prompt_logging import log_prompt
from loopkeeper.prompts.catalog import PromptCatalog, get_catalog
from loopkeeper.schemas import TASK_CONTENT_INLINE_LIMIT, LoopMode, LoopState
from loopkeeper.task_document import (
    CHECKLIST_HEADING,
    GOALS_HEADING,
    extract_latest_checkpoint,
    extract_section,
    is_done_item,
    is_pending_item,
)

logger = logging.getLogger(__name__)

RECENT_CHECKED_ITEMS = 5

_TOKEN_RE = re.compile(r"\{\{(\w+)\}\}")


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{key}}`` tokens from *variables*; unknown tokens are left untouched."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in variables:
            return str(variables[key] or "")
        return match.group(0)

    return _TOKEN_RE.sub(_sub, template)


# ---------------------------------------------------------------------------
# Task content slicing
# ---------------------------------------------------------------------------

def _reduce_checklist(content: str) -> str | None:
    """Checklist section with every unchecked item and only the most recent checked ones."""
    section = extract_section(content, CHECKLIST_HEADING)
    if section is None:
        return None

    header, *body = section.split("\n")
    unchecked = [line for line in body if is_pending_item(line)]
    checked = [line for line in body if is_done_item(line)]
    recent = checked[-RECENT_CHECKED_ITEMS:]

    parts = [header]
    if recent:
        omitted = len(checked) - len(recent)
        if omitted:
            parts.append(f"  ({omitted} earlier completed items omitted)")
        parts.extend(recent)
    parts.extend(unchecked)
    return "\n".join(parts) if len(parts) > 1 else None


def slice_task_content(full_content: str, limit: int, task_file: str) -> str:
    """Return *full_content* unchanged when it fits in *limit* characters.

    Otherwise assemble a reduced document from the Goals section, the
    reduced Checklist and the latest Checkpoint, followed by a notice naming
    *task_file* so the worker knows to read the full file.
    """
    if len(full_content) <= limit:
        return full_content

    sections: list[str] = []
    goals = extract_section(full_content, GOALS_HEADING)
    if goals:
        sections.append(goals)
    checklist = _reduce_checklist(full_content)
    if checklist:
        sections.append(checklist)
    checkpoint = extract_latest_checkpoint(full_content)
    if checkpoint:
        sections.append(checkpoint.rstrip())
    sections.append(f"\n(Task file truncated. Read the full content from: {task_file})")

    logger.debug("Sliced task file %s from %d chars", task_file, len(full_content))
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Template variables
# ---------------------------------------------------------------------------

def build_template_vars(state: LoopState, task_content: str, hints: str) -> dict[str, str]:
    """Build the full variable map for template rendering."""
    limited = state.max_iterations > 0
    items = state.items_per_iteration
    return {
        "loopName": state.name,
        "iteration": str(state.iteration),
        "maxStr": f"/{state.max_iterations}" if limited else "",
        "maxIterations": str(state.max_iterations) if limited else "unlimited",
        "taskFile": state.task_file,
        "taskContent": task_content,
        "hints": hints,
        "mode": state.mode.value,
        "sessionRotations": str(state.session_rotations),
        "reflectInstructions": state.reflect_instructions,
        "itemsHint": f" (aim for ~{items} items this iteration)" if items > 0 else "",
    }


def _resolve_template_path(template: str, base_dir: Path | None) -> Path:
    path = Path(template)
    if path.is_absolute() or base_dir is None:
        return path
    return Path(base_dir) / path


def _select_template(state: LoopState, catalog: PromptCatalog, base_dir: Path | None) -> str:
    """Operator template file when set and readable, else the built-in template for the mode."""
    if state.prompt_template:
        path = _resolve_template_path(state.prompt_template, base_dir)
        custom = try_read_text(path)
        if custom:
            return custom
        logger.warning(
            "Prompt template %s for loop %r is unreadable; using built-in %s template",
            path,
            state.name,
            state.mode.value,
        )
    return catalog.iteration(state.mode)


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

def build_iteration_prompt(
    state: LoopState,
    task_content: str,
    is_reflection: bool,
    *,
    base_dir: Path | None = None,
    catalog: PromptCatalog | None = None,
) -> str:
    """Assemble the full prompt for the loop's current iteration.

    - ``state.mode`` selects the build or plan template.
    - ``state.prompt_template`` overrides it (resolved against *base_dir*).
    - *is_reflection* prepends the checkpoint block.
    """
    catalog = catalog or get_catalog()
    hints = format_hints(state.pending_hints, state.sticky_hints)
    sliced = slice_task_content(task_content, TASK_CONTENT_INLINE_LIMIT, state.task_file)
    variables = build_template_vars(state, sliced, hints)

    prompt = render_template(_select_template(state, catalog, base_dir), variables)
    if is_reflection:
        prompt = render_template(catalog.checkpoint(), variables) + "\n\n" + prompt

    log_prompt(logger, prompt, label=f"Iteration {state.iteration} prompt for {state.name!r}")
    return prompt


def build_rotation_prompt(state: LoopState, *, catalog: PromptCatalog | None = None) -> str:
    """Bootstrap message for a fresh worker session after a rotation."""
    catalog = catalog or get_catalog()
    return render_template(catalog.rotation(), build_template_vars(state, "", ""))


def build_banner(key: str, state: LoopState, *, catalog: PromptCatalog | None = None) -> str:
    catalog = catalog or get_catalog()
    return render_template(catalog.banner(key), build_template_vars(state, "", ""))


def build_system_addendum(state: LoopState, *, catalog: PromptCatalog | None = None) -> str:
    """Per-turn loop banner the host appends to the worker's system prompt."""
    catalog = catalog or get_catalog()
    variables = build_template_vars(state, "", "")
    items = state.items_per_iteration
    variables["itemsLine"] = f"- Work on ~{items} items this iteration\n" if items > 0 else ""
    variables["markerLines"] = marker_instructions()

    text = render_template(catalog.system("addendum"), variables)
    if state.mode == LoopMode.PLAN:
        text += "\n\n" + catalog.system("plan_notice")
    return text


def build_task_scaffold(*, catalog: PromptCatalog | None = None) -> str:
    """Default task document content for a freshly started loop."""
    catalog = catalog or get_catalog()
    return catalog.task_scaffold() + "\n"
