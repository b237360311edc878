"""
Connectivity observers.

A ConnectivityObserver knows whether the device is online and tells its
subscribers about every online/offline transition.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from .errors import TransientNetworkError
from .transport import HttpTransport

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivityObserver(ABC):
    """Online/offline state with subscribe and poll semantics."""

    def __init__(self, initially_online: bool = True):
        self._online = initially_online
        self._subscribers: List[ConnectivityCallback] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """
        Register a transition callback.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _set_state(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Internet connection restored")
        else:
            logger.info("Internet connection lost")

        for callback in list(self._subscribers):
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Error in connectivity callback: {e}")

    @abstractmethod
    async def poll(self) -> bool:
        """Refresh and return the current online state."""

    async def start(self) -> None:
        """Begin observing. No-op for push-driven observers."""

    async def stop(self) -> None:
        """Stop observing."""


class ManualConnectivity(ConnectivityObserver):
    """Driven by platform online/offline signals, or by tests."""

    def set_online(self) -> None:
        self._set_state(True)

    def set_offline(self) -> None:
        self._set_state(False)

    async def poll(self) -> bool:
        return self._online


class HealthCheckConnectivity(ConnectivityObserver):
    """Actively probes the API health endpoint on a fixed interval."""

    def __init__(
        self,
        transport: HttpTransport,
        health_url: str,
        interval: float = 30.0,
        timeout: float = 5.0,
        initially_online: bool = False
    ):
        super().__init__(initially_online)
        self.transport = transport
        self.health_url = health_url
        self.interval = interval
        self.timeout = timeout
        self._task: Optional[asyncio.Task] = None

    async def poll(self) -> bool:
        try:
            response = await asyncio.wait_for(
                self.transport.send("GET", self.health_url, {}, None, timeout=self.timeout),
                self.timeout
            )
            online = response.status == 200
        except (TransientNetworkError, asyncio.TimeoutError) as e:
            logger.debug(f"Health check failed: {e}")
            online = False
        self._set_state(online)
        return online

    async def _poll_loop(self) -> None:
        while True:
            await self.poll()
            await asyncio.sleep(self.interval)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._poll_loop())
            logger.debug(f"Health check polling started: {self.health_url}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
