"""
Connectivity monitor: the reconnect signal the outbox subscribes to.

Emits ``online`` / ``offline`` only when the state actually changes, so a
subscriber sees exactly one ``online`` event per reconnect.
"""

import logging

import httpx

from utils.events import EventEmitter

logger = logging.getLogger(__name__)


class ConnectivityMonitor(EventEmitter):
    """
    Tracks whether the client is online.

    State can be pushed (set_online, e.g. from a platform callback) or
    pulled (probe, an HTTP reachability check).
    """

    def __init__(self, online: bool = True, timeout: float = 5.0):
        self.__init_events__()
        self._online = online
        self.timeout = timeout

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> bool:
        """Update the state; returns True if it changed."""
        if online == self._online:
            return False
        self._online = online
        event = "online" if online else "offline"
        logger.info("Connectivity changed: %s", event)
        self.emit(event, {"online": online})
        return True

    async def probe(self, url: str) -> bool:
        """
        Check reachability of ``url`` and update the state.

        Any HTTP response counts as online; connection errors and
        timeouts count as offline.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await client.head(url)
            reachable = True
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe to %s failed: %s", url, e)
            reachable = False
        self.set_online(reachable)
        return reachable
