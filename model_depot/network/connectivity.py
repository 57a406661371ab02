"""
Classifies current connectivity with a lightweight reachability probe.
"""

import asyncio
import logging

import aiohttp

from .policy import NetworkClass

log = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Probes a well-known URL to tell reachable from unreachable networks.

    Whether a reachable network is metered cannot be observed portably, so the
    cost class comes from the configured network mode: 'metered' and
    'unmetered' force it, 'auto' treats any reachable network as unmetered.
    """

    def __init__(
        self,
        probe_url: str,
        network_mode: str = "auto",
        timeout: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.probe_url = probe_url
        self.network_mode = network_mode
        self.timeout = timeout
        self._session = session

    async def is_reachable(self) -> bool:
        """Sends a HEAD request to the probe URL. Any response counts as reachable."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            if self._session is not None:
                async with self._session.head(
                    self.probe_url, timeout=timeout, allow_redirects=True
                ):
                    return True
            async with (
                aiohttp.ClientSession(timeout=timeout) as session,
                session.head(self.probe_url, allow_redirects=True),
            ):
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.debug(f"Connectivity probe to {self.probe_url} failed: {e}")
            return False

    async def classify(self) -> NetworkClass:
        if not await self.is_reachable():
            return NetworkClass.UNREACHABLE
        if self.network_mode == "metered":
            return NetworkClass.METERED
        return NetworkClass.UNMETERED
