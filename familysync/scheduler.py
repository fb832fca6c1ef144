from __future__ import annotations

import threading
from typing import Optional

from familysync.config_manager import ConfigManager
from familysync.sync_engine import SyncEngine


class PendingRetryScheduler:
    """Background thread that periodically flushes the pending-retry queue."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="familysync-retry-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(5, int(config.sync.retry_interval_seconds))
            self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.sync_engine.flush_pending()
