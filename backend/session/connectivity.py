"""
Network connectivity notifications.

ConnectivityNotifier:
- holds the last known online/offline status
- notifies subscribers on transitions only (online -> offline, offline -> online)

PollingConnectivityMonitor:
- checks a TCP endpoint on an interval and feeds the notifier
- a connection within the timeout means online
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from constants import CONNECTIVITY_CHECK_PORT, CONNECTIVITY_CHECK_TIMEOUT_S
from observability.logger import log_event

ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivityNotifier:
    """Online/offline status with transition callbacks."""

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        log_event({
            "event_type": "connectivity_changed",
            "online": online,
        })
        for listener in list(self._listeners):
            await listener(online)


class PollingConnectivityMonitor(ConnectivityNotifier):
    """Periodic TCP reachability check."""

    def __init__(
        self,
        *,
        host: str,
        interval_s: float,
        port: int = CONNECTIVITY_CHECK_PORT,
        timeout_s: float = CONNECTIVITY_CHECK_TIMEOUT_S,
    ) -> None:
        super().__init__(online=True)
        self._host = host
        self._port = port
        self._interval_s = interval_s
        self._timeout_s = timeout_s
        self._task: asyncio.Task[None] | None = None

    async def reachable(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._timeout_s,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def check_now(self) -> bool:
        """Check once and publish the result."""
        online = await self.reachable()
        await self.set_online(online)
        return online

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            try:
                await self.check_now()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "connectivity_listener_failed",
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
            await asyncio.sleep(self._interval_s)
