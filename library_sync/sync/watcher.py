"""
Library watcher.

Listens for filesystem events on the Calibre database file and triggers a
sync once a change has settled. Calibre holds write locks while it saves,
so syncs that fail with a locked/busy database are retried with a short
backoff.
"""

import os
import time
import threading
from dataclasses import dataclass, field
from typing import Optional, List, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from library_sync.sync.engine import SYNC_IN_PROGRESS_ERROR
from library_sync.sync.models import SyncResult
from library_sync.utils.logging import get_logger

logger = get_logger(__name__)

LOCK_ERROR_MARKERS = ("locked", "busy")


def is_lock_error(message: Optional[str]) -> bool:
    """True if ``message`` describes a locked or busy database."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in LOCK_ERROR_MARKERS)


@dataclass
class WatchOutcome:
    """Result of one triggered sync, including retries."""
    success: bool
    attempts: List[int] = field(default_factory=list)
    reason: Optional[str] = None  # max_retries, non_lock_error, in_progress
    result: Optional[SyncResult] = None


class LibraryChangeHandler(FileSystemEventHandler):
    """Forwards events touching one file name to ``on_change``."""

    def __init__(self, filename: str, on_change: Callable[[], None]):
        super().__init__()
        self.filename = filename
        self._on_change = on_change

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def _handle(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = (event.src_path, getattr(event, "dest_path", ""))
        if any(path and os.path.basename(os.fsdecode(path)) == self.filename for path in paths):
            self._on_change()


class LibraryWatcher:
    """
    Triggers a sync when the watched file changes.

    ``start()`` runs a watchdog observer on the file's directory; every
    event for the file arms a pending sync. ``check()`` is called
    periodically (the service runs it as a scheduler job) and fires the
    sync once no event has arrived for ``debounce_seconds``.
    """

    def __init__(
        self,
        path: str,
        trigger: Callable[[], SyncResult],
        debounce_seconds: float = 2.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = os.path.abspath(path)
        self.trigger = trigger
        self.debounce_seconds = debounce_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._clock = clock

        self.handler = LibraryChangeHandler(os.path.basename(self.path), self.notify_change)
        self._observer: Optional[BaseObserver] = None

        self._lock = threading.Lock()
        self._pending_since: Optional[float] = None
        self._suspended = False
        self._ignore_until = 0.0

    @property
    def running(self) -> bool:
        return self._observer is not None

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def pending(self) -> bool:
        """True while a change is waiting for the debounce window."""
        return self._pending_since is not None

    def start(self) -> None:
        """Start watching the library directory."""
        if self._observer is not None:
            return

        observer = Observer()
        observer.schedule(self.handler, os.path.dirname(self.path), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Library watcher started", path=self.path)

    def stop(self) -> None:
        if self._observer is None:
            return

        self._observer.stop()
        self._observer.join()
        self._observer = None
        logger.info("Library watcher stopped", path=self.path)

    def suspend(self) -> None:
        """Stop triggering syncs; changes are still tracked."""
        with self._lock:
            self._suspended = True
        logger.info("Library watcher suspended", path=self.path)

    def resume(self) -> None:
        """Resume triggering, treating the current file state as already synced."""
        with self._lock:
            self._suspended = False
            self._pending_since = None
        logger.info("Library watcher resumed", path=self.path)

    def ignore_for(self, seconds: float) -> None:
        """Ignore changes for ``seconds``, e.g. while this service writes to the library."""
        with self._lock:
            self._ignore_until = self._clock() + seconds

    def notify_change(self) -> None:
        """Record a change to the watched file. Called from the observer thread."""
        with self._lock:
            now = self._clock()
            if now < self._ignore_until:
                self._pending_since = None
                logger.debug("Ignoring library change", path=self.path)
                return
            self._pending_since = now
        logger.debug("Library change detected", path=self.path)

    def check(self) -> bool:
        """
        Fire the pending sync if changes have settled.

        Returns:
            True if a sync was triggered
        """
        with self._lock:
            if self._suspended or self._pending_since is None:
                return False
            if self._clock() - self._pending_since < self.debounce_seconds:
                return False
            self._pending_since = None

        self.trigger_sync()
        return True

    def trigger_sync(self) -> WatchOutcome:
        """Run the sync, retrying lock errors with linear backoff."""
        attempts: List[int] = []

        for attempt in range(1, self.max_retries + 1):
            attempts.append(attempt)
            try:
                result = self.trigger()
                error = None if result.success else result.error
            except Exception as e:
                result = None
                error = str(e)

            if error is None:
                logger.info("Auto-sync completed", attempts=attempt)
                return WatchOutcome(success=True, attempts=attempts, result=result)

            if error == SYNC_IN_PROGRESS_ERROR:
                logger.info("Auto-sync skipped, another sync is running")
                return WatchOutcome(success=False, attempts=attempts, reason="in_progress", result=result)

            if not is_lock_error(error):
                logger.error("Auto-sync failed", error=error)
                return WatchOutcome(success=False, attempts=attempts, reason="non_lock_error", result=result)

            if attempt < self.max_retries:
                delay = self.backoff_seconds * attempt
                logger.warning("Calibre database locked, retrying", attempt=attempt, retry_in=delay)
                self._sleep(delay)

        logger.error("Auto-sync gave up, Calibre database stayed locked", attempts=len(attempts))
        return WatchOutcome(success=False, attempts=attempts, reason="max_retries", result=result)
