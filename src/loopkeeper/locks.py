"""Per-loop-name mutual exclusion for state read-modify-write cycles.

Each loop name owns a FIFO queue of waiting tickets guarded by one shared
condition variable; an acquisition proceeds only when no holder exists and
its ticket is at the head of the queue. This protects in-process races only:
two separate processes editing the same state file are not serialized.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from loopkeeper.errors import LockStaleError
from loopkeeper.schemas import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS: float = 30.0
"""Age after which a held lock is considered stale."""

_STALE_POLL_SECONDS = 0.05


def default_holder_id() -> str:
    """Identify the current process/thread as a lock holder."""
    return f"pid={os.getpid()}:thread={threading.get_ident()}"


@dataclass(frozen=True, slots=True)
class LockInfo:
    """An in-flight state mutation for one loop name."""

    name: str
    holder: str
    created_at: float = field(default_factory=time.monotonic)
    acquired_at: str = field(default_factory=utc_now_iso)

    def age(self) -> float:
        return time.monotonic() - self.created_at


@dataclass
class _KeyQueue:
    holder: LockInfo | None = None
    confirming: bool = False
    waiters: deque[object] = field(default_factory=deque)


ConfirmStale = Callable[[LockInfo], bool]


class StateLock:
    """FIFO per-name mutex with stale-holder detection."""

    def __init__(self, ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._cond = threading.Condition()
        self._queues: dict[str, _KeyQueue] = {}

    def holder(self, name: str) -> LockInfo | None:
        """Return the current holder for *name*, if any."""
        with self._cond:
            queue = self._queues.get(name)
            return queue.holder if queue else None

    def acquire(
        self,
        name: str,
        *,
        holder: str | None = None,
        confirm_stale: ConfirmStale | None = None,
    ) -> LockInfo:
        """Block until *name* is free and this caller is first in line.

        A holder older than the TTL is force-released only when
        *confirm_stale* returns True; otherwise :class:`LockStaleError` is
        raised naming the holder.
        """
        ticket = object()
        with self._cond:
            queue = self._queues.setdefault(name, _KeyQueue())
            queue.waiters.append(ticket)
            try:
                while queue.holder is not None or queue.waiters[0] is not ticket:
                    current = queue.holder
                    if current is not None and current.age() > self.ttl_seconds:
                        if confirm_stale is None:
                            raise LockStaleError(current, self.ttl_seconds)
                        if not queue.confirming:
                            self._confirm_and_evict(queue, current, confirm_stale)
                            continue
                    self._cond.wait(timeout=_STALE_POLL_SECONDS)
            except BaseException:
                queue.waiters.remove(ticket)
                self._cond.notify_all()
                raise
            queue.waiters.popleft()
            info = LockInfo(name=name, holder=holder or default_holder_id())
            queue.holder = info
            return info

    def _confirm_and_evict(self, queue: _KeyQueue, current: LockInfo, confirm_stale: ConfirmStale) -> None:
        """Ask *confirm_stale* about *current* without holding the condition.

        Must be called with the condition held; it is held again on return.
        """
        queue.confirming = True
        self._cond.release()
        try:
            confirmed = confirm_stale(current)
        finally:
            self._cond.acquire()
            queue.confirming = False
        if not confirmed:
            raise LockStaleError(current, self.ttl_seconds)
        # The holder may have released (or been evicted) while we were asking.
        if queue.holder is current:
            logger.warning(
                "Force-releasing stale state lock %r held by %s (%.1fs)",
                current.name,
                current.holder,
                current.age(),
            )
            queue.holder = None
        self._cond.notify_all()

    def release(self, info: LockInfo) -> None:
        """Release *info*; a lock already force-released is ignored."""
        with self._cond:
            queue = self._queues.get(info.name)
            if queue is None or queue.holder is not info:
                logger.debug("Release of %r by %s ignored (not the holder)", info.name, info.holder)
                return
            queue.holder = None
            if not queue.waiters:
                del self._queues[info.name]
            self._cond.notify_all()

    @contextmanager
    def hold(
        self,
        name: str,
        *,
        holder: str | None = None,
        confirm_stale: ConfirmStale | None = None,
    ) -> Iterator[LockInfo]:
        info = self.acquire(name, holder=holder, confirm_stale=confirm_stale)
        try:
            yield info
        finally:
            self.release(info)
