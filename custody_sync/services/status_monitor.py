import asyncio
import logging
from typing import Optional

from ..core.config import settings
from ..core.errors import OfflineQueueError
from ..schemas.sync import SyncStatus
from .offline_queue import OfflineQueue, offline_queue

logger = logging.getLogger(__name__)


class StatusMonitor:
    """Keeps a fresh SyncStatus snapshot for the status surface"""

    def __init__(self, queue: OfflineQueue, interval: Optional[float] = None):
        self.queue = queue
        self.interval = interval or settings.STATUS_REFRESH_SECONDS
        self.latest = SyncStatus()
        self._task: Optional[asyncio.Task] = None

    async def refresh(self) -> SyncStatus:
        """Reload the snapshot; keeps the previous one if the store is unreadable"""
        try:
            self.latest = await self.queue.get_status()
        except OfflineQueueError as e:
            logger.error(f"Failed to load sync status: {e}")
        return self.latest

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


# Singleton instance
status_monitor = StatusMonitor(offline_queue)
