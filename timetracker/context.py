"""
Explicit application context: the configured provider, the service on top of
it and their init/shutdown lifecycle.
"""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass, field

from timetracker.config import Settings
from timetracker.provider import StorageProvider
from timetracker.service import TimeTrackingService

logger = logging.getLogger(__name__)


def build_provider(settings: Settings) -> StorageProvider:
    """Select the StorageProvider implementation once, at startup."""
    if settings.storage_backend == "mongo":
        from timetracker.mongo_provider import MongoStorageProvider

        logger.info("Using MongoDB storage backend")
        return MongoStorageProvider(
            uri=settings.mongo_uri, db_name=settings.mongo_db_name
        )

    from timetracker.sqlite_provider import SqliteStorageProvider

    logger.info("Using SQLite storage backend")
    return SqliteStorageProvider(
        db_path=settings.db_path or None,
        autosave_interval=settings.db_auto_save_interval,
    )


@dataclass
class AppContext:
    settings: Settings
    provider: StorageProvider
    service: TimeTrackingService = field(init=False)
    started: bool = field(default=False, init=False)

    def __post_init__(self):
        self.service = TimeTrackingService(self.provider)
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppContext":
        return cls(settings=settings, provider=build_provider(settings))

    def init(self) -> None:
        with self._lock:
            if self.started:
                return
            self.provider.init()
            self.started = True
            logger.info("Storage backend %s initialized", self.settings.storage_backend)

    def shutdown(self) -> None:
        with self._lock:
            if not self.started:
                return
            self.provider.shutdown()
            self.started = False
            logger.info("Storage backend %s shut down", self.settings.storage_backend)

    def install_signal_handlers(self) -> bool:
        """
        Drain pending writes on SIGTERM/SIGINT, then hand the signal to the
        previously installed handler. Only possible from the main thread.
        """
        if threading.current_thread() is not threading.main_thread():
            return False
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous = signal.getsignal(signum)
            signal.signal(signum, self._make_handler(previous))
        return True

    def _make_handler(self, previous):
        def _handler(signum, frame):
            logger.info("Received signal %s, shutting down storage", signum)
            self.shutdown()
            if callable(previous):
                previous(signum, frame)
            elif previous == signal.SIG_DFL:
                signal.signal(signum, signal.SIG_DFL)
                signal.raise_signal(signum)

        return _handler

