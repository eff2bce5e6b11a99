"""
Batched persistence: writes mark a dirty flag and a background thread
flushes on a fixed interval.

Flush triggers are the interval tick (only when dirty), ``flush_now()``
(startup after load, graceful shutdown) and ``stop()``. A hard crash between
two ticks loses the writes made since the last successful flush.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from timetracker.errors import InternalError

logger = logging.getLogger(__name__)


class PeriodicFlusher:
    """Mark-dirty + periodic-flush + flush-on-shutdown."""

    def __init__(
        self,
        flush: Callable[[], None],
        interval: float = 5.0,
        name: str = "storage-flusher",
    ):
        if interval <= 0:
            raise ValueError("flush interval must be positive")
        self._flush = flush
        self.interval = interval
        self.name = name
        self._dirty = False
        self._state_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.flush_count = 0
        self.last_error: Optional[BaseException] = None

    @property
    def dirty(self) -> bool:
        with self._state_lock:
            return self._dirty

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def mark_dirty(self) -> None:
        with self._state_lock:
            self._dirty = True

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.flush_if_dirty()

    def _take_dirty(self) -> bool:
        with self._state_lock:
            was_dirty = self._dirty
            self._dirty = False
            return was_dirty

    def flush_if_dirty(self) -> bool:
        """
        Tick handler. Failures are logged and the dirty flag restored so the
        next tick retries; they never propagate out of the flusher thread.
        """
        with self._flush_lock:
            if not self._take_dirty():
                return False
            try:
                self._flush()
            except Exception as exc:
                self.mark_dirty()
                self.last_error = exc
                logger.exception("%s: flush failed, retrying on next tick", self.name)
                return False
            self.flush_count += 1
            self.last_error = None
            return True

    def flush_now(self) -> None:
        """Flush unconditionally; raises InternalError if the write fails."""
        with self._flush_lock:
            self._take_dirty()
            try:
                self._flush()
            except Exception as exc:
                self.mark_dirty()
                self.last_error = exc
                logger.exception("%s: immediate flush failed", self.name)
                raise InternalError("Failed to persist database") from exc
            self.flush_count += 1
            self.last_error = None

    def stop(self, flush: bool = True) -> None:
        """Stop the timer thread, then drain any pending writes."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)
        self._thread = None
        if flush and self.dirty:
            self.flush_now()
            logger.info("%s: pending writes flushed on shutdown", self.name)
