"""Idempotent cancellation handles for in-flight session work."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class CancelHandle:
    """A cancel callback that fires at most once.

    Safe to call from any thread and any number of times; only the first
    ``cancel()`` invokes the callback. A handle without a callback is valid and
    simply records that cancellation was requested.
    """

    _callback: Callable[[], object] | None = None
    _reason: str = ""
    _fired: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def for_task(cls, task: asyncio.Future[object]) -> CancelHandle:
        """Handle that cancels an asyncio task or future."""
        return cls(_callback=task.cancel)

    @property
    def cancelled(self) -> bool:
        return self._fired

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the callback. Returns True only for the call that fired it."""
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            self._reason = reason
            callback = self._callback
            self._callback = None
        if callback is not None:
            callback()
        return True


def cancel_quietly(handle: CancelHandle | None, reason: str = "cancelled") -> None:
    """Cancel *handle* if there is one. ``None`` is a no-op."""
    if handle is not None:
        handle.cancel(reason)
