"""Background sync for LotSync.

Replays the mutation queue periodically, and immediately when connectivity
comes back after an offline period. Results are reported through logging and
optional callbacks (the interfaces turn them into notifications).

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .backend import OfflineError
from .models import QueuedMutation, SyncResult
from .sync_queue import MutationExecutor, SyncQueue

logger = logging.getLogger(__name__)

__all__ = ["BackgroundSync"]

DEFAULT_INTERVAL_SECONDS = 30


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count != 1 else ''}"


class BackgroundSync:
    """Drives SyncQueue.process_sync_queue on a schedule."""

    def __init__(
        self,
        queue: SyncQueue,
        executor: MutationExecutor,
        is_online: Callable[[], bool],
        on_sync_complete: Optional[Callable[[SyncResult], None]] = None,
        on_conflict: Optional[Callable[[List[QueuedMutation]], None]] = None,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.is_online = is_online
        self.on_sync_complete = on_sync_complete
        self.on_conflict = on_conflict
        self._was_offline = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def process_sync(self, executor: Optional[MutationExecutor] = None) -> SyncResult:
        """Run one sync pass if there is anything to do.

        Args:
            executor: Override the default executor for this pass

        Returns:
            SyncResult (all zero when skipped)
        """
        status = self.queue.refresh_status()
        if not self.is_online() or status.is_processing:
            return SyncResult()
        if status.pending_count == 0:
            return SyncResult()

        logger.info("Starting background sync...")
        result = self.queue.process_sync_queue(executor or self.executor)

        if result.total == 0:
            return result

        if self.on_sync_complete is not None:
            self.on_sync_complete(result)

        if result.success:
            logger.info(f"Synced {_plural(result.success, 'change')}")
        if result.conflicts:
            logger.warning(f"{_plural(result.conflicts, 'conflict')} need resolution")
            if self.on_conflict is not None:
                self.on_conflict(self.queue.get_conflicts())
        if result.failed:
            logger.error(f"{_plural(result.failed, 'change')} failed to sync")

        return result

    def force_sync(self, executor: Optional[MutationExecutor] = None) -> SyncResult:
        """Sync now, regardless of the schedule.

        Raises:
            OfflineError: If the backend is unreachable
        """
        if not self.is_online():
            raise OfflineError("Cannot sync while offline")
        return self.process_sync(executor)

    def tick(self) -> Optional[SyncResult]:
        """One scheduler step.

        Returns None while offline. Syncs on every online tick; the first
        tick after an offline period is logged as a reconnect.
        """
        if not self.is_online():
            if not self._was_offline:
                logger.info("Went offline, pausing sync")
            self._was_offline = True
            return None

        if self._was_offline:
            logger.info("Back online, syncing...")
            self._was_offline = False
        return self.process_sync()

    def run(
        self,
        stop_event: threading.Event,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        """Tick every `interval_seconds` until `stop_event` is set."""
        logger.info(f"Background sync started (every {interval_seconds}s)")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Background sync error: {e}")
            stop_event.wait(interval_seconds)
        logger.info("Background sync stopped")

    def start(self, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> threading.Thread:
        """Run the sync loop on a daemon thread until stop() is called."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run,
            args=(self._stop_event, interval_seconds),
            name="lotsync-background-sync",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the sync thread to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
