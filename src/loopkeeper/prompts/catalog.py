"""Prompt catalog: single source of truth for every prompt the loop emits.

Loads templates from ``templates.yaml`` (next to this module) and provides
typed accessors for iteration prompts, the checkpoint block, rotation
bootstrap, banners and the per-turn system addendum.

An operator override file (``LOOPKEEPER_PROMPT_OVERRIDES``) is merged on top
of the built-in defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from loopkeeper.schemas import LoopMode

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _entry(data: dict[str, Any], section: str, key: str) -> str:
    """Return the stripped template at *section*.*key*, or an empty string."""
    entry = data.get(section)
    text = entry.get(key) if isinstance(entry, dict) else None
    return text.strip() if isinstance(text, str) else ""


class PromptCatalog:
    """Loads and serves prompt templates from the YAML catalog.

    Usage::

        catalog = PromptCatalog()
        template = catalog.iteration(LoopMode.PLAN)
        bootstrap = catalog.rotation()
    """

    def __init__(self, extra_path: Path | None = None) -> None:
        self.extra_path = Path(extra_path) if extra_path else None
        self._builtin: dict[str, Any] = {}
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        """Load built-in templates, then merge operator overrides."""
        self._builtin = _load_yaml(_BUILTIN_YAML)
        self._data = self._builtin

        if self.extra_path is None:
            return
        if not self.extra_path.exists():
            logger.warning("Prompt override file not found: %s", self.extra_path)
            return
        extra = _load_yaml(self.extra_path)
        if extra:
            self._data = _deep_merge(self._data, extra)
            logger.info("Loaded prompt overrides from %s", self.extra_path)

    def reload(self) -> None:
        """Re-read all YAML files from disk."""
        self._load()

    def _template(self, section: str, key: str) -> str:
        text = _entry(self._data, section, key)
        if text:
            return text
        builtin = _entry(self._builtin, section, key)
        if not builtin:
            raise KeyError(f"prompt template {section}.{key} is not defined")
        logger.warning("Prompt override %s.%s is empty or malformed; using the built-in template", section, key)
        return builtin

    # ── Iteration prompts ────────────────────────────────────────

    def iteration(self, mode: LoopMode | str) -> str:
        """Return the iteration template for a mode (``build`` or ``plan``)."""
        return self._template("iteration", LoopMode(mode).value)

    def checkpoint(self) -> str:
        """Return the mandatory checkpoint block prepended on reflection iterations."""
        return self._template("checkpoint", "prompt")

    def rotation(self) -> str:
        return self._template("rotation", "bootstrap")

    def task_scaffold(self) -> str:
        """Return the default task document written when a loop starts without one."""
        return self._template("task", "scaffold")

    # ── Banners and system text ──────────────────────────────────

    def banner(self, key: str) -> str:
        """Return a banner template (``complete`` or ``max_iterations``)."""
        return self._template("banners", key)

    def system(self, key: str) -> str:
        return self._template("system", key)

    # ── Raw access ───────────────────────────────────────────────

    @property
    def raw(self) -> dict[str, Any]:
        """Direct access to the full parsed data."""
        return self._data


# Module-level singleton for convenience
_default_catalog: PromptCatalog | None = None


def get_catalog() -> PromptCatalog:
    """Return the module-level singleton catalog (lazy-loaded, honoring configured overrides)."""
    global _default_catalog
    if _default_catalog is None:
        from loopkeeper.config import load_settings

        _default_catalog = PromptCatalog(extra_path=load_settings().prompt_overrides)
    return _default_catalog
