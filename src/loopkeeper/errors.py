"""Exception types raised inside the storage layer.

Only :class:`LockStaleError` ever reaches callers of the public store API;
corrupt files and failed migrations are reported through the store's warning
callback and surface as "loop not found".
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loopkeeper.locks import LockInfo


class LoopkeeperError(Exception):
    """Base class for loopkeeper errors."""


class StateCorruptError(LoopkeeperError):
    """A state file exists but does not contain parseable JSON."""


class MigrationError(LoopkeeperError, ValueError):
    """Raw state data cannot be turned into a current-schema state."""


class LockStaleError(LoopkeeperError, RuntimeError):
    """A per-loop lock outlived its TTL and the operator did not confirm a forced release."""

    def __init__(self, info: LockInfo, ttl_seconds: float) -> None:
        self.info = info
        self.ttl_seconds = ttl_seconds
        super().__init__(
            f"State lock for loop {info.name!r} is held by {info.holder!r} "
            f"for {info.age():.1f}s (ttl {ttl_seconds:.0f}s); "
            "confirm a forced release to continue."
        )
