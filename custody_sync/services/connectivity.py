"""
Connectivity watcher

Two states, online and offline. Only edges act: offline -> online runs exactly
one sync cycle and reports its outcome; online -> offline only notifies
listeners. start() runs one opportunistic cycle when already online;
start_in_background() schedules that cycle as a task for application startup.
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Union

import httpx

from ..core.config import settings
from ..core.errors import SyncEngineError, sanitize_error
from ..schemas.sync import SyncResult
from .sync_engine import SyncEngine, sync_engine

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


TransitionHandler = Callable[
    [Optional[ConnectivityState], ConnectivityState],
    Union[None, Awaitable[None]],
]


class Notifier(Protocol):
    """User-visible notification sink (toasts in a UI, log lines here)"""

    def info(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LogNotifier:
    """Notifier that writes notifications to the log"""

    def info(self, message: str) -> None:
        logger.info(message, extra={"notification": "info"})

    def success(self, message: str) -> None:
        logger.info(message, extra={"notification": "success"})

    def error(self, message: str) -> None:
        logger.error(message, extra={"notification": "error"})


async def probe_connectivity(
    url: Optional[str] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """
    Check whether the remote platform answers at all

    Any HTTP response counts as online; only transport failures
    (DNS, refused connection, timeout) count as offline.
    """
    target = url or settings.CONNECTIVITY_PROBE_URL or settings.REMOTE_API_URL
    try:
        async with httpx.AsyncClient(
            timeout=timeout or settings.CONNECTIVITY_PROBE_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            await client.head(target)
        return True
    except httpx.HTTPError as e:
        logger.info(f"Connectivity probe to {target} failed: {e.__class__.__name__}")
        return False


class ConnectivityWatcher:
    """Bridges online/offline transitions to the sync engine"""

    def __init__(self, engine: SyncEngine, notifier: Optional[Notifier] = None):
        self.engine = engine
        self.notifier = notifier or LogNotifier()
        self._state: Optional[ConnectivityState] = None
        self._handlers: list[TransitionHandler] = []
        self.last_result: Optional[SyncResult] = None
        self._startup_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> Optional[ConnectivityState]:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    def on_transition(self, handler: TransitionHandler) -> Callable[[], None]:
        """Register a listener for state edges; returns an unsubscribe callable"""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _set_initial_state(self, initially_online: bool) -> None:
        self._state = ConnectivityState.ONLINE if initially_online else ConnectivityState.OFFLINE
        logger.info(f"Connectivity watcher started ({self._state.value})")

    async def _startup_sync(self) -> Optional[SyncResult]:
        result = await self._sync()
        if result and result.success > 0:
            logger.info(f"Auto-synced {result.success} offline item(s)")
        return result

    async def start(self, initially_online: bool) -> Optional[SyncResult]:
        """Set the initial state; sync once if already online"""
        self._set_initial_state(initially_online)
        if not initially_online:
            return None
        return await self._startup_sync()

    def start_in_background(self, initially_online: bool) -> Optional[asyncio.Task]:
        """
        Set the initial state and schedule the startup sync without waiting for it

        The state is set before returning, so set_online() calls that arrive
        while the startup cycle runs still see the right edge.
        """
        self._set_initial_state(initially_online)
        if not initially_online:
            return None
        self._startup_task = asyncio.create_task(self._startup_sync())
        return self._startup_task

    async def stop(self) -> None:
        self._handlers.clear()
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
            try:
                await self._startup_task
            except asyncio.CancelledError:
                pass
        self._startup_task = None
        logger.info("Connectivity watcher stopped")

    async def set_online(self, online: bool) -> Optional[SyncResult]:
        """
        Feed the platform connectivity signal

        Returns the sync result for an offline -> online edge, otherwise None.
        """
        new_state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        previous = self._state
        if new_state is previous:
            return None

        self._state = new_state
        logger.info(f"Connectivity changed: {previous.value if previous else 'unknown'} -> {new_state.value}")

        for handler in list(self._handlers):
            try:
                outcome = handler(previous, new_state)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                # State has already moved; the edge sync below still runs
                logger.exception(f"Connectivity listener {handler!r} failed")

        if new_state is ConnectivityState.ONLINE and previous is ConnectivityState.OFFLINE:
            self.notifier.info("Connection restored. Syncing offline data...")
            result = await self._sync()
            if result is not None and not result.skipped:
                if result.success > 0:
                    self.notifier.success(f"Successfully synced {result.success} item(s)")
                if result.failed > 0:
                    self.notifier.error(f"Failed to sync {result.failed} item(s)")
            return result

        return None

    async def _sync(self) -> Optional[SyncResult]:
        try:
            result = await self.engine.sync_offline_data()
        except SyncEngineError as e:
            logger.error(f"Automatic sync failed: {e}")
            self.notifier.error(f"Sync failed: {sanitize_error(e)}")
            return None
        self.last_result = result
        return result


# Singleton instance
connectivity_watcher = ConnectivityWatcher(sync_engine)
