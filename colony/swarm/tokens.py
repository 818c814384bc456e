"""Cooperative cancellation tokens."""

from __future__ import annotations

import threading
from collections.abc import Callable

from colony.errors import Cancelled


class CancellationToken:
    """
    One-shot cancellation signal backed by a threading.Event.

    Tokens form a tree: cancelling a token cancels every child created from
    it, while cancelling a child leaves its parent untouched. A session owns
    the root token and hands each task attempt a child.
    """

    def __init__(self, parent: CancellationToken | None = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[CancellationToken], None]] = []
        self.reason: str | None = None
        if parent is not None:
            parent.on_cancel(lambda p: self.cancel(p.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def on_cancel(self, callback: Callable[[CancellationToken], None]) -> None:
        """Run ``callback`` once on cancellation, immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or timeout. Returns True when cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled")
