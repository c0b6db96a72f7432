"""Background heartbeat that keeps the hosted database and service awake."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import UTC, datetime
from typing import Any, Dict, Optional

from .dao import TIMESTAMP_FORMAT, Database, KeepAliveDAO

logger = logging.getLogger(__name__)

MAX_COUNT = 100
HEALTHY_WITHIN_MINUTES = 5


class KeepAliveService:
    """Bumps the heartbeat counter every ``interval`` seconds on a daemon thread."""

    def __init__(self, db: Database, interval: int = 180, max_count: int = MAX_COUNT) -> None:
        self.db = db
        self.dao = KeepAliveDAO(db)
        self.interval = interval
        self.max_count = max_count
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> Optional[int]:
        """Run one update; returns the new count, or None if it failed."""
        try:
            record = self.dao.increment(self.max_count)
        except sqlite3.Error as exc:
            logger.error("Keep-alive update failed", extra={"extra": {"error": str(exc)}})
            return None
        action = "reset" if record.count == 1 else "updated"
        logger.debug(
            "Keep-alive counter %s", action,
            extra={"extra": {"count": record.count, "max_count": self.max_count}},
        )
        return record.count

    def _run(self) -> None:
        try:
            self.tick()
            while not self._stop.wait(self.interval):
                self.tick()
        finally:
            self.db.close_thread_connection()

    def start(self) -> bool:
        """Start the worker; a zero or negative interval disables it."""
        if self.interval <= 0:
            logger.info("Keep-alive disabled")
            return False
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="keep-alive", daemon=True)
        self._thread.start()
        logger.info(
            "Keep-alive started",
            extra={"extra": {"interval_seconds": self.interval, "max_count": self.max_count}},
        )
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Keep-alive stopped")

    def status(self) -> Dict[str, Any]:
        try:
            record = self.dao.get()
        except sqlite3.Error as exc:
            return {"active": False, "error": str(exc)}
        if record is None:
            return {"active": False, "message": "Keep-alive not initialized"}

        last = datetime.strptime(record.last_updated, TIMESTAMP_FORMAT).replace(tzinfo=UTC)
        minutes = int((datetime.now(UTC) - last).total_seconds() // 60)
        interval_minutes = max(1, self.interval // 60) if self.interval > 0 else 0
        return {
            "active": True,
            "count": record.count,
            "maxCount": self.max_count,
            "lastUpdated": last.isoformat().replace("+00:00", "Z"),
            "minutesSinceUpdate": minutes,
            "nextUpdateIn": max(0, interval_minutes - minutes),
            "isHealthy": minutes < HEALTHY_WITHIN_MINUTES,
        }
