"""Runtime settings read from ``LOOPKEEPER_*`` environment variables.

The CLI loads a ``.env`` file (python-dotenv) before calling
:func:`load_settings`. Invalid values never abort startup: they are logged
and replaced by the default.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from loopkeeper.locks import DEFAULT_LOCK_TTL_SECONDS
from loopkeeper.schemas import DEFAULT_MAX_ITERATIONS, STATE_DIR_NAME

logger = logging.getLogger(__name__)

ENV_HOME = "LOOPKEEPER_HOME"
ENV_STATE_DIR = "LOOPKEEPER_STATE_DIR"
ENV_MAX_ITERATIONS = "LOOPKEEPER_MAX_ITERATIONS"
ENV_LOCK_TTL = "LOOPKEEPER_LOCK_TTL"
ENV_PROMPT_OVERRIDES = "LOOPKEEPER_PROMPT_OVERRIDES"
ENV_PROMPT_DEBUG = "LOOPKEEPER_PROMPT_DEBUG"

_TRUTHY = {"1", "true", "yes", "on"}


class LoopkeeperSettings(BaseModel):
    """Resolved configuration for one process."""

    model_config = ConfigDict(frozen=True)

    home: Path = Field(default_factory=Path.cwd)
    state_dir_name: str = STATE_DIR_NAME
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=0)
    lock_ttl_seconds: float = Field(default=DEFAULT_LOCK_TTL_SECONDS, gt=0)
    prompt_overrides: Path | None = None
    prompt_debug: bool = False


def _env(environ: Mapping[str, str], name: str) -> str:
    return str(environ.get(name, "") or "").strip()


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = _env(environ, name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value < 0:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    return value


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _env(environ, name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        value = 0.0
    if value <= 0:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    return value


def _state_dir_env(environ: Mapping[str, str]) -> str:
    raw = _env(environ, ENV_STATE_DIR)
    if not raw:
        return STATE_DIR_NAME
    if Path(raw).name != raw or raw in {".", ".."}:
        logger.warning("Invalid %s=%r (must be a plain directory name); using %s", ENV_STATE_DIR, raw, STATE_DIR_NAME)
        return STATE_DIR_NAME
    return raw


def load_settings(environ: Mapping[str, str] | None = None) -> LoopkeeperSettings:
    """Build settings from *environ* (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ

    home_raw = _env(env, ENV_HOME)
    home = Path(home_raw).expanduser() if home_raw else Path.cwd()
    if home_raw and not home.is_dir():
        logger.warning("%s=%r is not a directory; using the current directory", ENV_HOME, home_raw)
        home = Path.cwd()

    overrides_raw = _env(env, ENV_PROMPT_OVERRIDES)

    return LoopkeeperSettings(
        home=home,
        state_dir_name=_state_dir_env(env),
        max_iterations=_int_env(env, ENV_MAX_ITERATIONS, DEFAULT_MAX_ITERATIONS),
        lock_ttl_seconds=_float_env(env, ENV_LOCK_TTL, DEFAULT_LOCK_TTL_SECONDS),
        prompt_overrides=Path(overrides_raw).expanduser() if overrides_raw else None,
        prompt_debug=_env(env, ENV_PROMPT_DEBUG).lower() in _TRUTHY,
    )
