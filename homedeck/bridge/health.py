"""Connectivity checks behind the system stream, with flap smoothing."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from homedeck.bridge.database import ChatDatabase
from homedeck.bridge.home_assistant import HomeAssistantClient
from homedeck.config import Settings, get_settings
from homedeck.devices.models import SystemStatus

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    """Smoothed state of one checked component."""
    ok: bool = False
    latency_ms: int = 0
    consecutive_failures: int = 0

    def record(self, ok: bool, latency_ms: int, threshold: int) -> None:
        if ok:
            self.consecutive_failures = 0
            self.ok = True
            self.latency_ms = latency_ms
        else:
            self.consecutive_failures += 1
            if self.consecutive_failures >= threshold:
                self.ok = False


class HealthChecker:
    """Pings Home Assistant and the database and reports a `SystemStatus`.

    A component only turns unhealthy after `health_failure_threshold`
    consecutive failed checks. After `db_cooldown_failures` consecutive
    database failures the database is left alone for `db_cooldown_seconds`
    and its last known value is reported instead.
    """

    def __init__(
        self,
        ha_client: HomeAssistantClient,
        database: Optional[ChatDatabase] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.ha_client = ha_client
        self.database = database
        self.http_client = http_client
        self.clock = clock
        self.ha = ComponentHealth()
        self.db = ComponentHealth()
        self.db_cooldown_until = 0.0
        self.started_at = clock()

    @property
    def db_in_cooldown(self) -> bool:
        return self.clock() < self.db_cooldown_until

    async def ping_ha(self) -> tuple[bool, int]:
        return await self.ha_client.ping(timeout=self.settings.health_timeout_seconds)

    async def ping_db(self) -> tuple[bool, int]:
        """HEAD the configured database URL, or query the local store."""
        start_time = time.time()
        if self.settings.db_health_url:
            client = self.http_client or httpx.AsyncClient()
            try:
                response = await client.head(
                    self.settings.db_health_url, timeout=self.settings.health_timeout_seconds
                )
                ok = response.is_success
            except httpx.HTTPError as e:
                logger.debug(f"Database check failed: {e}")
                return False, 0
            finally:
                if self.http_client is None:
                    await client.aclose()
        elif self.database is not None:
            ok = await asyncio.to_thread(self.database.ping)
        else:
            return False, 0
        if not ok:
            return False, 0
        return True, int((time.time() - start_time) * 1000)

    async def _cached_db(self) -> tuple[bool, int]:
        return self.db.ok, self.db.latency_ms

    async def snapshot(self) -> SystemStatus:
        """Check both components concurrently and return the smoothed status."""
        db_check = self._cached_db() if self.db_in_cooldown else self.ping_db()
        (ha_ok, ha_ms), (db_ok, db_ms) = await asyncio.gather(self.ping_ha(), db_check)

        threshold = self.settings.health_failure_threshold
        self.ha.record(ha_ok, ha_ms, threshold)
        self.db.record(db_ok, db_ms, threshold)

        if (
            not db_ok
            and self.db.consecutive_failures >= self.settings.db_cooldown_failures
            and not self.db_in_cooldown
        ):
            logger.warning(
                f"Database check failed {self.db.consecutive_failures} times, "
                f"pausing for {self.settings.db_cooldown_seconds:.0f}s"
            )
            self.db_cooldown_until = self.clock() + self.settings.db_cooldown_seconds

        return SystemStatus(
            ts=int(time.time() * 1000),
            uptime_s=round(self.clock() - self.started_at),
            ha_ok=self.ha.ok,
            ha_latency_ms=self.ha.latency_ms,
            db_ok=self.db.ok,
            db_latency_ms=self.db.latency_ms,
        )
