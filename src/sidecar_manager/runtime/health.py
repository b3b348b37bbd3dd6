"""Periodic HTTP health check for a running runtime instance.

sidecar-manager runtime module

Classification of ``GET {api_base_url}/health``:
- 2xx with a JSON body -> healthy (latency + decoded body as detail)
- any other status    -> degraded ("HTTP {status}")
- network error/timeout or undecodable body -> unhealthy
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import aiohttp

from ..models import HealthStatus, RuntimeHealth

__all__ = [
    "HealthPoller",
    "HealthCallback",
    "DEFAULT_INTERVAL",
    "DEFAULT_TIMEOUT",
    "MIN_INTERVAL",
    "MIN_TIMEOUT",
]

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
DEFAULT_TIMEOUT = 2.5
MIN_INTERVAL = 2.0
MIN_TIMEOUT = 1.0

HealthCallback = Callable[[RuntimeHealth], None]


class HealthPoller:
    """Polls one deployment: immediately on start, then every ``interval``.

    Checks never overlap: the loop awaits each check before sleeping.
    ``start()`` and ``stop()`` are both idempotent.
    """

    def __init__(
        self,
        deployment_id: str,
        api_base_url: str,
        on_health: HealthCallback,
        *,
        interval: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self.deployment_id = deployment_id
        self.api_base_url = api_base_url.rstrip("/")
        self.interval = max(MIN_INTERVAL, interval or DEFAULT_INTERVAL)
        self.timeout = max(MIN_TIMEOUT, timeout or DEFAULT_TIMEOUT)
        self._on_health = on_health
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            self._poll_loop(), name=f"health-{self.deployment_id}"
        )

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _poll_loop(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            while True:
                health = await self.check(session)
                try:
                    self._on_health(health)
                except Exception as e:
                    logger.warning(
                        f"Health callback failed for {self.deployment_id}: {e}"
                    )
                await asyncio.sleep(self.interval)

    async def check(self, session: aiohttp.ClientSession) -> RuntimeHealth:
        """Run a single check and classify the result."""
        url = f"{self.api_base_url}/health"
        started = time.monotonic()
        try:
            async with session.get(url, headers={"Accept": "application/json"}) as response:
                latency_ms = int((time.monotonic() - started) * 1000)
                if not 200 <= response.status < 300:
                    return RuntimeHealth(
                        deployment_id=self.deployment_id,
                        status=HealthStatus.DEGRADED,
                        latency_ms=latency_ms,
                        error=f"HTTP {response.status}",
                    )
                body = await response.json(content_type=None)
                return RuntimeHealth(
                    deployment_id=self.deployment_id,
                    status=HealthStatus.HEALTHY,
                    latency_ms=latency_ms,
                    detail=body if isinstance(body, dict) else {},
                )
        except asyncio.TimeoutError:
            return self._unhealthy(f"Health request timed out after {self.timeout}s")
        except (aiohttp.ClientError, ValueError) as e:
            return self._unhealthy(str(e) or "Health request failed")

    def _unhealthy(self, message: str) -> RuntimeHealth:
        logger.debug(f"Health check failed for {self.deployment_id}: {message}")
        return RuntimeHealth(
            deployment_id=self.deployment_id,
            status=HealthStatus.UNHEALTHY,
            error=message,
        )
