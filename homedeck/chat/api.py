"""HTTP client for the dashboard's chat endpoints."""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx

from homedeck.chat.errors import StreamError
from homedeck.chat.models import StreamRequest
from homedeck.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class ApiResult:
    """Envelope of a `{ ok, ...payload }` response. `ok: false` is a soft failure."""
    ok: bool
    data: dict = field(default_factory=dict)
    error: Optional[str] = None
    status_code: int = 0

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


class ChatApiClient:
    """Client for thread/message CRUD and the streaming agent endpoint."""

    STREAM_ENDPOINT = "/api/agent/smart-stream"

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or get_settings().dashboard_url).rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> ApiResult:
        """Make a CRUD request. Transport and HTTP failures come back as ok=False."""
        start_time = time.time()
        try:
            response = await self.client.request(method, f"{self.base_url}{endpoint}", **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {endpoint} failed: {e}")
            return ApiResult(ok=False, error=str(e) or e.__class__.__name__)

        duration_ms = int((time.time() - start_time) * 1000)
        logger.debug(f"{method} {endpoint} -> {response.status_code} in {duration_ms}ms")

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            return ApiResult(
                ok=False,
                error=f"HTTP {response.status_code}: unexpected response body",
                status_code=response.status_code,
            )

        ok = bool(body.get("ok")) and response.is_success
        error = None
        if not ok:
            error = str(body.get("error") or f"HTTP {response.status_code}")
            logger.info(f"{method} {endpoint} returned ok=false: {error}")
        return ApiResult(ok=ok, data=body, error=error, status_code=response.status_code)

    # ==================== Threads ====================

    async def list_threads(self) -> ApiResult:
        return await self._request("GET", "/api/chat/threads")

    async def create_thread(self, title: str = "New Chat") -> ApiResult:
        return await self._request("POST", "/api/chat/threads", json={"title": title})

    async def update_thread(self, thread_id: str, **fields: Any) -> ApiResult:
        """PATCH title, pinned, archived, tags, folder, enabled_tools, model or agent_style."""
        return await self._request("PATCH", f"/api/chat/threads/{thread_id}", json=fields)

    async def delete_thread(self, thread_id: str) -> ApiResult:
        return await self._request("DELETE", f"/api/chat/threads/{thread_id}")

    async def suggest_title(
        self,
        thread_id: str,
        first_message: Optional[str] = None,
        conversation_history: Optional[list[dict]] = None,
    ) -> ApiResult:
        body: dict[str, Any] = {}
        if first_message is not None:
            body["firstMessage"] = first_message
        if conversation_history:
            body["conversationHistory"] = conversation_history
        return await self._request("POST", f"/api/chat/threads/{thread_id}/suggest-title", json=body)

    async def share_thread(self, thread_id: str, expires_in_days: Optional[int] = None) -> ApiResult:
        return await self._request(
            "POST", f"/api/chat/threads/{thread_id}/share", json={"expiresInDays": expires_in_days}
        )

    async def unshare_thread(self, thread_id: str) -> ApiResult:
        return await self._request("DELETE", f"/api/chat/threads/{thread_id}/share")

    # ==================== Messages ====================

    async def list_messages(self, thread_id: str) -> ApiResult:
        return await self._request("GET", "/api/chat/messages", params={"thread_id": thread_id})

    async def create_message(self, thread_id: str, role: str, content: str) -> ApiResult:
        return await self._request(
            "POST",
            "/api/chat/messages",
            json={"thread_id": thread_id, "role": role, "content": content},
        )

    # ==================== Agent stream ====================

    @asynccontextmanager
    async def open_stream(self, request: StreamRequest) -> AsyncIterator[AsyncIterator[str]]:
        """POST a turn to the agent and yield the response body line by line.

        The body is never buffered; read timeouts are left to the consumer.
        """
        async with self.client.stream(
            "POST",
            f"{self.base_url}{self.STREAM_ENDPOINT}",
            json=request.to_payload(),
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self.timeout, read=None),
        ) as response:
            if not response.is_success:
                raise StreamError(f"Stream request failed (HTTP {response.status_code})")
            yield response.aiter_lines()
