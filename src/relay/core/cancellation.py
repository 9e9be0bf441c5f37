from __future__ import annotations
import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Capability object used to stop an in-flight request or stream.

    - is_cancelled: already cancelled?
    - on_cancelled(cb): run cb once on cancellation (immediately if already cancelled)
    - cancel(): idempotent; safe to call from a signal handler or another thread,
      callbacks are responsible for hopping onto their own event loop.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def on_cancelled(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        self._invoke(callback)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            self._invoke(cb)

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            # One failing listener must not keep the others from being told.
            logger.exception("Cancellation callback failed")

