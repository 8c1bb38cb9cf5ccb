"""Prompt templates and rendering.

Every prompt the loop sends to the worker is stored in ``templates.yaml``
(next to this module) and loaded by :class:`PromptCatalog`. Operators can
override any entry with a YAML file named by ``LOOPKEEPER_PROMPT_OVERRIDES``.
"""

from loopkeeper.prompts.catalog import PromptCatalog, get_catalog

__all__ = ["PromptCatalog", "get_catalog"]
