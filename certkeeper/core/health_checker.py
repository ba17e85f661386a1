"""
Readiness probing for NGINX during bring-up.

Polls the proxy's own HTTP address until it answers, so certificate
issuance only starts once webroot challenges can be served.
"""

import asyncio
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class StartupTimeout(Exception):
    """NGINX did not become reachable within the allowed time."""

    def __init__(self, message: str, attempts: int, last_error: Optional[str] = None):
        self.message = message
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class HealthChecker:
    """Verify NGINX serves HTTP on the given URL."""

    def __init__(
        self,
        url: str,
        interval: float = 1.0,
        timeout: float = 120.0,
        request_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.transport = transport
        self.interval = interval
        self.timeout = timeout
        self.request_timeout = request_timeout

    async def is_reachable(self, client: Optional[httpx.AsyncClient] = None) -> tuple[bool, Optional[str]]:
        """
        Single readiness check without retries.

        Returns:
            Tuple of (is_reachable, error_message)
        """
        try:
            if client is None:
                async with httpx.AsyncClient(transport=self.transport) as own_client:
                    response = await own_client.get(self.url, timeout=self.request_timeout)
            else:
                response = await client.get(self.url, timeout=self.request_timeout)
        except httpx.RequestError as e:
            return False, str(e) or type(e).__name__

        # curl -f semantics: anything below 400 counts as serving
        if response.status_code < 400:
            return True, None
        return False, f"HTTP {response.status_code}"

    async def wait_until_ready(self) -> int:
        """
        Poll until NGINX answers or the deadline passes.

        Returns:
            Number of attempts it took

        Raises:
            StartupTimeout: If NGINX is still unreachable after `timeout` seconds
        """
        deadline = time.monotonic() + self.timeout
        attempt = 0
        last_error = None

        logger.info(f"Waiting for nginx to be ready at {self.url}")

        async with httpx.AsyncClient(transport=self.transport) as client:
            while True:
                attempt += 1
                ok, last_error = await self.is_reachable(client)
                if ok:
                    logger.info(f"Nginx is up and serving HTTP (attempt {attempt})")
                    return attempt

                logger.debug(f"Readiness attempt {attempt} failed: {last_error}")

                if time.monotonic() + self.interval > deadline:
                    break
                await asyncio.sleep(self.interval)

        raise StartupTimeout(
            f"Nginx not reachable at {self.url} after {self.timeout}s",
            attempts=attempt,
            last_error=last_error,
        )
