"""
Liveness probe for started sites.

A site is live once an HTTP HEAD on its port gets any response at all
(WordPress answers a fresh install with a 302 to the installer, a broken
plugin with a 500; both prove the web server is up). The wait is a bounded
polling loop, and every attempt has its own short timeout so one hung
request cannot eat the whole budget.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class LivenessProbe:
    def __init__(
        self,
        host: str = "127.0.0.1",
        timeout: float = 10.0,
        poll_interval: float = 0.5,
        request_timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host = host
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self._transport = transport

    def _url(self, port: int) -> str:
        return f"http://{self.host}:{port}/"

    async def check(self, port: int, timeout: Optional[float] = None) -> bool:
        """Single probe attempt."""
        attempt_timeout = timeout if timeout is not None else self.request_timeout
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=attempt_timeout,
                follow_redirects=False,
            ) as client:
                await client.head(self._url(port))
            return True
        except httpx.HTTPError:
            return False

    async def wait_until_live(self, port: int, timeout: Optional[float] = None) -> bool:
        """
        Poll until the port answers HTTP or the budget runs out.

        Returns:
            True once live, False on timeout
        """
        budget = timeout if timeout is not None else self.timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget
        attempts = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            attempts += 1
            if await self.check(port, timeout=min(self.request_timeout, remaining)):
                logger.debug(f"[LIVENESS] Port {port} live after {attempts} attempt(s)")
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        logger.warning(f"[LIVENESS] Port {port} not live after {budget:.1f}s ({attempts} attempts)")
        return False
