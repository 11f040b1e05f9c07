"""
Connectivity and sync triggers.

Tracks whether the remote service is reachable and tells listeners
about online/offline transitions and explicit sync requests (user
action, background task). The sync engine subscribes to trigger a
drain whenever the client comes back online.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

logger = logging.getLogger(__name__)


class TriggerReason(Enum):
    ONLINE = "online"
    REQUESTED = "requested"
    LOCAL_CHANGE = "local_change"
    SCHEDULED = "scheduled"


Listener = Callable[[bool], Awaitable[None] | None]
SyncRequestHandler = Callable[[TriggerReason], Awaitable[object] | object]
Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    """Online/offline state plus sync-request fan out."""

    def __init__(self, online: bool = True, probe: Probe | None = None):
        self._online = online
        self._probe = probe
        self._listeners: list[Listener] = []
        self._sync_handlers: list[SyncRequestHandler] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to online/offline transitions. Returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def on_sync_requested(self, handler: SyncRequestHandler) -> Callable[[], None]:
        self._sync_handlers.append(handler)
        return lambda: self._sync_handlers.remove(handler)

    async def set_online(self, online: bool) -> None:
        """Record a network status change; going online requests a sync."""
        if online == self._online:
            return

        self._online = online
        logger.info("Connectivity changed", extra={"online": online})

        for listener in list(self._listeners):
            result = listener(online)
            if inspect.isawaitable(result):
                await result

        if online:
            await self.request_sync(TriggerReason.ONLINE)

    async def request_sync(self, reason: TriggerReason = TriggerReason.REQUESTED) -> None:
        """Ask every registered handler to sync.

        Handlers run as background tasks; the caller does not wait for
        the drain to finish.
        """
        for handler in list(self._sync_handlers):
            result = handler(reason)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def check(self) -> bool:
        """Probe the remote service and update the online flag."""
        if self._probe is None:
            return self._online

        try:
            online = await self._probe()
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False

        await self.set_online(online)
        return online

    async def wait_idle(self) -> None:
        """Wait for sync requests started by this monitor."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
