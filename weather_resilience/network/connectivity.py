"""Connectivity tracking for online/offline decisions."""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Set

from weather_resilience.network.fetch_helper import FetchError, FetchRequest, NetworkFetchHelper


logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Tracks whether the upstream network is reachable.

    The state can be set directly (tests, platform events) or probed by
    fetching a lightweight URL. Listeners are called with the new state on
    every transition; coroutine listeners are scheduled as tasks.
    """

    def __init__(
        self,
        fetch_helper: Optional[NetworkFetchHelper] = None,
        probe_url: Optional[str] = None,
        initially_online: bool = True,
        probe_timeout_ms: int = 5000
    ):
        """
        Initialize connectivity monitor.

        Args:
            fetch_helper: Helper used for probing (probing disabled if None)
            probe_url: URL fetched by check()
            initially_online: State assumed before the first probe
            probe_timeout_ms: Timeout for a single probe
        """
        self.fetch_helper = fetch_helper
        self.probe_url = probe_url
        self.probe_timeout_ms = probe_timeout_ms
        self._online = initially_online
        self._listeners: List[Callable[[bool], Any]] = []
        self._tasks: Set[asyncio.Task] = set()
        self.last_change_at: Optional[datetime] = None

    def is_online(self) -> bool:
        """Get current connectivity state."""
        return self._online

    def add_listener(self, callback: Callable[[bool], Any]) -> None:
        """
        Register a callback fired on every online/offline transition.

        Args:
            callback: Called with the new state; may be a coroutine function
        """
        self._listeners.append(callback)

    def set_online(self, online: bool) -> None:
        """
        Update connectivity state and notify listeners when it changes.

        Args:
            online: New connectivity state
        """
        if online == self._online:
            return

        self._online = online
        self.last_change_at = datetime.now()
        if online:
            logger.info("Connectivity regained")
        else:
            logger.warning("Connectivity lost, operating offline")

        for callback in list(self._listeners):
            try:
                result = callback(online)
            except Exception as e:
                logger.error(f"Connectivity listener {callback!r} failed: {type(e).__name__}: {e}")
                continue

            if inspect.iscoroutine(result):
                self._schedule(result)

    def _schedule(self, coroutine) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, dropping asynchronous connectivity listener")
            coroutine.close()
            return

        task = loop.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def check(self) -> bool:
        """
        Probe the network and update state.

        Returns:
            True if the probe URL answered with a 2xx status
        """
        if self.fetch_helper is None or not self.probe_url:
            return self._online

        try:
            await self.fetch_helper.fetch_with_timeout(
                FetchRequest(self.probe_url, method='HEAD'),
                timeout_ms=self.probe_timeout_ms
            )
            online = True
        except FetchError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False

        self.set_online(online)
        return online

    async def run(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """
        Probe periodically until stop_event is set.

        Args:
            interval_seconds: Delay between probes
            stop_event: Event ending the loop
        """
        logger.info(f"Connectivity monitor started (interval: {interval_seconds}s)")
        while not stop_event.is_set():
            await self.check()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Connectivity monitor stopped")
