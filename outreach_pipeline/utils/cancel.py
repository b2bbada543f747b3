from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised at a checkpoint when a cancellation request should abort the current unit."""


class CancellationToken:
    """In-process cancellation flag shared by a batch task and its workers.

    The store remains the source of truth for cancellation; the token only lets
    a process wake its own sleeping workers early.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self) -> None:
        self._event.set()

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to `timeout_s`; returns True if cancellation was requested meanwhile."""
        if timeout_s <= 0:
            return self._event.is_set()
        return self._event.wait(timeout=timeout_s)
