"""Schema migration for persisted loop state.

State files come in two known shapes:

* **v1** - no ``schemaVersion`` key; lifecycle stored as ``active: bool``,
  reflection cadence possibly stored as ``reflectEveryItems``.
* **v3** (current) - ``schemaVersion: 3`` with ``status`` / ``mode`` / hint /
  checkpoint / context-health fields.

Both are normalized through :func:`build_state`, which fills one field at a
time from :data:`FIELD_DEFAULTS` so every default is independently testable.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from loopkeeper.errors import MigrationError
from loopkeeper.schemas import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_REFLECT_INSTRUCTIONS,
    SCHEMA_VERSION,
    LoopMode,
    LoopState,
    LoopStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

LEGACY_VERSION = 1

RETIRED_FIELDS: frozenset[str] = frozenset(
    {"active", "reflectEveryItems", "lastReflectionAt", "lastReflectionAtItems"}
)
"""v1-only keys removed during migration."""

FIELD_DEFAULTS: dict[str, Callable[[], Any]] = {
    "taskFile": lambda: "",
    "iteration": lambda: 1,
    "maxIterations": lambda: DEFAULT_MAX_ITERATIONS,
    "itemsPerIteration": lambda: 0,
    "reflectEvery": lambda: 0,
    "reflectInstructions": lambda: DEFAULT_REFLECT_INSTRUCTIONS,
    "status": lambda: LoopStatus.PAUSED.value,
    "startedAt": utc_now_iso,
    "completedAt": lambda: None,
    "mode": lambda: LoopMode.BUILD.value,
    "promptTemplate": lambda: None,
    "pendingHints": list,
    "stickyHints": list,
    "lastTaskFileHash": lambda: None,
    "lastTaskFileSize": lambda: None,
    "checkpointRetried": lambda: False,
    "compactionCount": lambda: 0,
    "sessionRotations": lambda: 0,
    "noProgressStreak": lambda: 0,
    "lastChecklistCount": lambda: 0,
    "iterationStartedAt": lambda: None,
    "currentIterationToolCalls": lambda: 0,
    "currentIterationFiles": list,
}
"""Default factory for every current-schema field except the ``name`` identity."""

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class LegacyStateV1(BaseModel):
    """Shape of a v1 state file (no ``schemaVersion``).

    Only the keys that need translating are declared; everything else rides
    along as extra data and is handed to :func:`build_state` untouched.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    schema_tag: ClassVar[int] = LEGACY_VERSION

    name: str
    active: bool | None = None
    status: LoopStatus | None = None
    reflect_every: int | None = None
    reflect_every_items: int | None = None

    def lifecycle_status(self) -> LoopStatus:
        """An explicit status wins; otherwise ``active`` maps to active/paused."""
        if self.status is not None:
            return self.status
        return LoopStatus.ACTIVE if self.active else LoopStatus.PAUSED

    def reflect_cadence(self) -> int:
        if self.reflect_every is not None:
            return self.reflect_every
        if self.reflect_every_items is not None:
            return self.reflect_every_items
        return 0


def detect_version(raw: Mapping[str, Any]) -> int:
    """Return the schema version of *raw*; absence of the tag means the oldest version."""
    value = raw.get("schemaVersion")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return LEGACY_VERSION


def _require_identity(raw: Any) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise MigrationError("migrate_state: input is not an object")
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise MigrationError("migrate_state: missing or empty 'name' field")
    return raw


def _validate_dropping_bad_fields(
    model: type[_ModelT],
    fields: dict[str, Any],
    fallback: Callable[[str], Any],
) -> _ModelT:
    """Validate *fields*, replacing each rejected value via *fallback* and retrying once."""
    try:
        return model.model_validate(fields)
    except ValidationError as exc:
        bad_keys = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        if "name" in bad_keys:
            raise MigrationError("migrate_state: missing or empty 'name' field") from exc
        for key in bad_keys:
            logger.warning(
                "State %r: invalid value for %s (%r); using default",
                fields.get("name"),
                key,
                fields.get(key),
            )
            replacement = fallback(key)
            if replacement is None:
                fields.pop(key, None)
            else:
                fields[key] = replacement
    try:
        return model.model_validate(fields)
    except ValidationError as exc:
        raise MigrationError(f"migrate_state: unrecoverable state: {exc}") from exc


def build_state(partial: Mapping[str, Any]) -> LoopState:
    """Build a fully-populated :class:`LoopState` from a partial camelCase mapping.

    Missing or ``None`` fields take their documented default. A field whose
    value fails validation is replaced by its default and logged, so a single
    bad value does not make the whole loop unloadable.
    """
    payload = _require_identity(partial)
    fields: dict[str, Any] = {"name": payload["name"]}
    for key, default in FIELD_DEFAULTS.items():
        value = payload.get(key)
        fields[key] = default() if value is None else value
    fields["schemaVersion"] = SCHEMA_VERSION

    def _default_for(key: str) -> Any:
        factory = FIELD_DEFAULTS.get(key)
        return factory() if factory is not None else None

    return _validate_dropping_bad_fields(LoopState, fields, _default_for)


def _upgrade_v1(raw: Mapping[str, Any]) -> dict[str, Any]:
    legacy = _validate_dropping_bad_fields(LegacyStateV1, dict(raw), lambda _key: None)
    upgraded = {k: v for k, v in raw.items() if k not in RETIRED_FIELDS}
    upgraded["status"] = legacy.lifecycle_status().value
    upgraded["reflectEvery"] = legacy.reflect_cadence()
    return upgraded


def migrate_state(raw: Any) -> LoopState:
    """Migrate any raw JSON state to the current :class:`LoopState`.

    Raises :class:`MigrationError` only for non-object input or a missing /
    empty ``name``; already-current input passes through with defaults
    back-filled.
    """
    payload = _require_identity(raw)
    version = detect_version(payload)
    if version < SCHEMA_VERSION:
        logger.info(
            "Migrating state %r from schema v%d to v%d", payload["name"], version, SCHEMA_VERSION
        )
        payload = _upgrade_v1(payload)
    return build_state(payload)
