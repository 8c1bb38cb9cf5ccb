"""Helpers for prompt logging with default secret-safe behavior."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Final

_PROMPT_DEBUG_ENV: Final[str] = "LOOPKEEPER_PROMPT_DEBUG"
_PROMPT_DEBUG_HINT: Final[str] = f"set {_PROMPT_DEBUG_ENV}=1 to include full prompt text"

_TRUTHY = {"1", "true", "yes", "on"}

_ASSIGNMENT_SECRET_RE = re.compile(
    r"(?i)\b("
    r"api[_-]?key|access[_-]?token|refresh[_-]?token|client[_-]?secret|"
    r"private[_-]?key|authorization|auth[_-]?token|token|secret|password|passwd"
    r")\b(\s*[:=]\s*)([^\s,;]+)"
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([A-Za-z0-9._\-+/=]{10,})")

_KNOWN_SECRET_TOKEN_RES = (
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bsk-(?:proj-|ant-)?[A-Za-z0-9_-]{16,}\b"),
    re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,}\b"),
)


def is_prompt_debug_enabled() -> bool:
    """Return true when full prompt logging is explicitly enabled."""
    return os.getenv(_PROMPT_DEBUG_ENV, "").strip().lower() in _TRUTHY


def redact_sensitive_text(text: str) -> tuple[str, int]:
    """Redact likely secrets in text; returns the redacted text and the hit count."""
    redacted = str(text or "")
    if not redacted:
        return "", 0

    hits = 0
    redacted, count = _ASSIGNMENT_SECRET_RE.subn(r"\1\2[REDACTED]", redacted)
    hits += count

    redacted, count = _BEARER_RE.subn("Bearer [REDACTED]", redacted)
    hits += count

    for pattern in _KNOWN_SECRET_TOKEN_RES:
        redacted, count = pattern.subn("[REDACTED_TOKEN]", redacted)
        hits += count
    return redacted, hits


def prompt_metadata(prompt: str) -> dict[str, int | str]:
    """Return compact metadata used for prompt-safe runtime logging."""
    text = str(prompt or "")
    _, redaction_hits = redact_sensitive_text(text)
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
    return {
        "length_chars": len(text),
        "sha256": digest,
        "redaction_hits": redaction_hits,
    }


def format_prompt_log_line(prompt: str, *, label: str = "Prompt", debug: bool | None = None) -> str:
    """Format a runtime log line for prompt logging."""
    text = str(prompt or "")
    debug_enabled = is_prompt_debug_enabled() if debug is None else bool(debug)
    if debug_enabled:
        redacted, _ = redact_sensitive_text(text)
        return f"{label}: {redacted}"
    meta = prompt_metadata(text)
    return (
        f"{label} metadata: len={meta['length_chars']}, sha256={meta['sha256']}, "
        f"redaction_hits={meta['redaction_hits']} ({_PROMPT_DEBUG_HINT})"
    )


def log_prompt(logger: logging.Logger, prompt: str, *, label: str = "Prompt") -> None:
    """Emit a DEBUG line describing *prompt* (metadata only unless debug is enabled)."""
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("%s", format_prompt_log_line(prompt, label=label))
