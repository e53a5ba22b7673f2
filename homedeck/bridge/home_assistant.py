"""Home Assistant REST client used by the bridge."""
import logging
import time
from typing import Any, Optional

import httpx

from homedeck.config import get_settings

logger = logging.getLogger(__name__)


class HomeAssistantClient:
    """Client for the Home Assistant REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.ha_url).rstrip("/")
        self.token = token if token is not None else settings.ha_token
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.token)

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make an HTTP request to Home Assistant and return the decoded body."""
        start_time = time.time()
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=self.headers,
                timeout=kwargs.pop("timeout", self.timeout),
                **kwargs
            )
            response.raise_for_status()
            duration_ms = int((time.time() - start_time) * 1000)
            logger.debug(f"HA {method} {endpoint} -> {response.status_code} in {duration_ms}ms")
            return response.json() if response.content else None
        except httpx.HTTPError as e:
            duration_ms = int((time.time() - start_time) * 1000)
            logger.warning(f"HA {method} {endpoint} failed after {duration_ms}ms: {e}")
            raise
        finally:
            if self._client is None:
                await client.aclose()

    async def get_states(self) -> list[dict]:
        """Get all entity states."""
        return await self._request("GET", "/api/states") or []

    async def get_state(self, entity_id: str) -> Optional[dict]:
        """Get state for a specific entity, or None when it does not exist."""
        try:
            return await self._request("GET", f"/api/states/{entity_id}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

    async def call_service(self, domain: str, service: str, payload: Optional[dict] = None) -> Any:
        """Call a Home Assistant service."""
        return await self._request(
            "POST",
            f"/api/services/{domain}/{service}",
            json=payload or {},
        )

    async def list_areas(self) -> list[dict]:
        return await self._request("POST", "/api/config/area_registry/list", json={}) or []

    async def list_device_registry(self) -> list[dict]:
        return await self._request("POST", "/api/config/device_registry/list", json={}) or []

    async def list_entity_registry(self) -> list[dict]:
        return await self._request("POST", "/api/config/entity_registry/list", json={}) or []

    async def ping(self, timeout: float = 5.0) -> tuple[bool, int]:
        """Ping `GET /api/`. Returns (ok, latency_ms); latency is 0 on failure."""
        if not self.configured:
            return False, 0
        start_time = time.time()
        try:
            await self._request("GET", "/api/", timeout=timeout)
        except httpx.HTTPError:
            return False, 0
        return True, int((time.time() - start_time) * 1000)
