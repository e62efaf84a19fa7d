"""strategy_agent/abort.py

Run-level abort signal.

The caller (e.g. the HTTP layer on client disconnect) triggers the signal;
the controller races its suspension points (planner call, approval wait)
against :attr:`AbortSignal.future`.
"""

from __future__ import annotations

# Standard Library
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future

logger = logging.getLogger(__name__)


class AbortSignal:
    """One-shot cancellation flag with callbacks."""

    def __init__(self) -> None:
        self.future: Future[str] = Future()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def is_set(self) -> bool:
        return self.future.done()

    @property
    def reason(self) -> str | None:
        return self.future.result() if self.future.done() else None

    def trigger(self, reason: str = "cancelled") -> bool:
        """Abort the run.

        Args:
            reason: Short description carried to callbacks and logs.

        Returns:
            ``True`` if this call set the signal, ``False`` if it was
            already set.
        """
        with self._lock:
            if self.future.done():
                return False
            self.future.set_result(reason)
            callbacks = list(self._callbacks)
        logger.info("[abort] run aborted: %s", reason)
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as exc:
                logger.warning(
                    "[abort] callback error: %s", exc, exc_info=True
                )
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Run ``callback(reason)`` on abort, at once if already aborted."""
        with self._lock:
            if not self.future.done():
                self._callbacks.append(callback)
                return
        callback(self.future.result())
