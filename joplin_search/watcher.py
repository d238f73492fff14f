from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Optional

from .state import Coordinator


POLL_INTERVAL_S = 10.0
# Joplin writes several times per save; wait for a quiet period.
DEBOUNCE_S = 5.0


def latest_mtime(db_path: str) -> Optional[float]:
    """Newest modification time of the database and its write-ahead log.

    In WAL mode saves land in ``<db>-wal`` and the main file only changes on
    checkpoint, so both are watched.
    """
    mtimes = []
    for path in (db_path, f"{db_path}-wal"):
        try:
            mtimes.append(os.stat(path).st_mtime)
        except OSError:
            continue
    return max(mtimes) if mtimes else None


class ChangeWatcher:
    """Polls the Joplin database files and fires one delta update per burst.

    idle -> pending when a new mtime is seen (the timer restarts on every
    further change), pending -> idle once ``debounce_s`` passes quietly and
    the callback has been fired. The first mtime ever seen is only a
    baseline.
    """

    def __init__(
        self,
        coordinator: Coordinator,
        on_change: Callable[[], Awaitable[Any]],
        *,
        poll_interval_s: float = POLL_INTERVAL_S,
        debounce_s: float = DEBOUNCE_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.coordinator = coordinator
        self.poll_interval_s = float(poll_interval_s)
        self.debounce_s = float(debounce_s)
        self._on_change = on_change
        self._clock = clock
        self._last_modified: Optional[float] = None
        self._pending_since: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> str:
        return "pending" if self._pending_since is not None else "idle"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def observe(self, mtime: Optional[float], now: float) -> bool:
        """Feed one poll result; True means a delta update is due now."""
        if mtime is not None:
            if self._last_modified is None:
                self._last_modified = mtime
            elif mtime != self._last_modified:
                self._last_modified = mtime
                self._pending_since = now

        if self._pending_since is not None and now - self._pending_since >= self.debounce_s:
            self._pending_since = None
            return True
        return False

    async def tick(self) -> bool:
        db_path = await self.coordinator.get_db_path()
        if not db_path:
            return False
        mtime = await asyncio.to_thread(latest_mtime, db_path)
        if not self.observe(mtime, self._clock()):
            return False
        logging.debug("Database change settled; running delta update.")
        await self._on_change()
        return True

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_s)
            try:
                await self.tick()
            except Exception:
                logging.warning("Watcher tick failed", exc_info=True)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
