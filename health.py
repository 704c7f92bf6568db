"""Periodic connectivity probes and the availability pre-check used before dispatch."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from adapters import PracticeManagementAdapter, utcnow
from clients import PracticeManagementError
from models import HealthConfig
from utils import backoff_delay

logger = logging.getLogger(__name__)


@dataclass
class PlatformHealth:
    platform: str
    healthy: bool | None = None  # None until the first probe
    latency_ms: float | None = None
    last_checked: datetime | None = None
    consecutive_failures: int = 0
    next_probe_at: datetime | None = None
    last_error: str | None = None


class HealthMonitor:
    def __init__(self, adapters: dict[str, PracticeManagementAdapter], config: HealthConfig | None = None):
        self.adapters = adapters
        self.config = config or HealthConfig()
        self._health = {name: PlatformHealth(platform=name) for name in adapters}
        self._task: asyncio.Task | None = None

    def status(self, platform: str) -> PlatformHealth:
        return self._health.setdefault(platform, PlatformHealth(platform=platform))

    def statuses(self) -> list[PlatformHealth]:
        return list(self._health.values())

    def is_available(self, platform: str) -> bool:
        """False only while an unhealthy platform is inside its backoff window."""
        health = self.status(platform)
        if health.healthy is not False:
            return True
        return health.next_probe_at is None or utcnow() >= health.next_probe_at

    def retry_in(self, platform: str) -> float:
        """Seconds until the platform may be tried again (0 if available)."""
        health = self.status(platform)
        if self.is_available(platform) or health.next_probe_at is None:
            return 0.0
        return max((health.next_probe_at - utcnow()).total_seconds(), 0.0)

    def report_success(self, platform: str, latency_ms: float | None = None) -> None:
        health = self.status(platform)
        if health.healthy is False:
            logger.info("%s is reachable again", platform)
        health.healthy = True
        health.consecutive_failures = 0
        health.next_probe_at = None
        health.last_error = None
        health.last_checked = utcnow()
        if latency_ms is not None:
            health.latency_ms = latency_ms

    def report_failure(self, platform: str, error: str | None = None, latency_ms: float | None = None) -> None:
        health = self.status(platform)
        health.healthy = False
        health.consecutive_failures += 1
        health.last_error = error
        health.last_checked = utcnow()
        if latency_ms is not None:
            health.latency_ms = latency_ms
        delay = backoff_delay(
            health.consecutive_failures, self.config.backoff_base_s, 2.0, self.config.max_backoff_s
        )
        health.next_probe_at = health.last_checked + timedelta(seconds=delay)
        logger.warning(
            "%s unhealthy (%d consecutive failures), backing off %.0fs: %s",
            platform, health.consecutive_failures, delay, error,
        )

    async def probe(self, platform: str) -> PlatformHealth:
        """Time one validate_connection() call and record the outcome."""
        adapter = self.adapters[platform]
        start = time.monotonic()
        error = None
        try:
            ok = await asyncio.wait_for(adapter.validate_connection(), self.config.probe_timeout_s)
        except asyncio.TimeoutError:
            ok, error = False, f"Probe timed out after {self.config.probe_timeout_s:.0f}s"
        except PracticeManagementError as e:
            ok, error = False, str(e)
        latency_ms = (time.monotonic() - start) * 1000

        if ok:
            self.report_success(platform, latency_ms)
        else:
            self.report_failure(platform, error or "Connection check failed", latency_ms)
        return self.status(platform)

    async def probe_all(self) -> list[PlatformHealth]:
        return list(await asyncio.gather(*(self.probe(name) for name in self.adapters)))

    async def _run(self) -> None:
        while True:
            await self.probe_all()
            await asyncio.sleep(self.config.interval_s)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
