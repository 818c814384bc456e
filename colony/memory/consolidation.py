"""Periodic background consolidation of near-duplicate skills."""

from __future__ import annotations

import sqlite3
import threading
from typing import TYPE_CHECKING

from colony.errors import ColonyError
from colony.logging import get_logger

if TYPE_CHECKING:
    from colony.memory.store import MemoryStore

logger = get_logger("memory.consolidation")


class ConsolidationScheduler:
    """Runs ``MemoryStore.consolidate`` on a fixed interval."""

    def __init__(self, store: MemoryStore):
        self.store = store
        self._timer: threading.Timer | None = None
        self._interval_seconds: float = 0  # 0 = disabled
        self._lock = threading.Lock()
        self.runs = 0

    def start(self, interval_hours: float) -> None:
        """Start background consolidation at the given interval."""
        self.stop()
        with self._lock:
            self._interval_seconds = interval_hours * 3600
        logger.info(f"Consolidation scheduled: interval={interval_hours}h")
        self._schedule_next()

    def stop(self) -> None:
        with self._lock:
            self._interval_seconds = 0
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            logger.info("Consolidation schedule stopped")

    def _schedule_next(self) -> None:
        with self._lock:
            if self._interval_seconds <= 0:
                return
            self._timer = threading.Timer(self._interval_seconds, self._run_scheduled)
            self._timer.daemon = True
            self._timer.name = "colony-consolidation"
            self._timer.start()

    def _run_scheduled(self) -> None:
        try:
            merges = self.store.consolidate()
            self.runs += 1
            logger.info(f"Scheduled consolidation merged {len(merges)} skills")
        except (ColonyError, sqlite3.Error, ValueError, KeyError) as e:
            logger.error(f"Scheduled consolidation failed: {e}")
        finally:
            self._schedule_next()

    @property
    def running(self) -> bool:
        timer = self._timer
        return timer is not None and timer.is_alive()
