"""Server-sent events client with browser-style automatic reconnection."""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

EventListener = Callable[["ServerSentEvent"], None]


@dataclass
class ServerSentEvent:
    """One dispatched event."""
    event: str = "message"
    data: str = ""
    id: Optional[str] = None

    def json(self) -> Any:
        return json.loads(self.data)


class SSEDecoder:
    """Line-by-line decoder for the `text/event-stream` format.

    Fields accumulate until a blank line dispatches the event. `retry` and
    `last_event_id` are updated as soon as their fields are seen.
    """

    def __init__(self):
        self._event = ""
        self._data: list[str] = []
        self.last_event_id: Optional[str] = None
        self.retry: Optional[int] = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        """Feed one line (without its terminator). Returns an event on dispatch."""
        if not line:
            if not self._data:
                self._event = ""
                return None
            event = ServerSentEvent(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self.last_event_id,
            )
            self._event = ""
            self._data = []
            return event

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry = int(value)
        return None


class EventSource:
    """Subscribes to a push channel and keeps it alive.

    Transport errors and server-side closes are reported through `on_error`
    and followed by a reconnect after `retry_ms` (updated by the server's
    `retry:` field). Every successful connection is reported through `on_open`.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        retry_ms: int = 3000,
        on_open: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[], None]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.url = url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        self.retry_ms = retry_ms
        self.on_open = on_open
        self.on_error = on_error
        self.headers = headers or {}
        self.last_event_id: Optional[str] = None
        self._listeners: dict[str, list[EventListener]] = {}
        self._closed = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def add_listener(self, event: str, listener: EventListener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: EventListener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> asyncio.Task:
        """Run the subscription in a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def close(self) -> None:
        """Stop reconnecting and drop the current connection."""
        self._closed.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._owns_client:
            await self.client.aclose()

    async def run(self) -> None:
        """Connect, dispatch events and reconnect until closed."""
        while not self.closed:
            try:
                await self._connect_once()
            except (httpx.HTTPError, httpx.StreamError) as e:
                logger.debug(f"Event stream {self.url} failed: {e}")

            if self.closed:
                break
            self._emit(self.on_error)
            await self._wait_retry()

    async def _connect_once(self) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **self.headers}
        if self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id

        async with self.client.stream(
            "GET", self.url, headers=headers, timeout=httpx.Timeout(10.0, read=None)
        ) as response:
            if response.status_code != 200:
                logger.debug(f"Event stream {self.url} answered HTTP {response.status_code}")
                return

            self._emit(self.on_open)
            decoder = SSEDecoder()
            async for line in response.aiter_lines():
                event = decoder.decode(line)
                if decoder.retry is not None:
                    self.retry_ms = decoder.retry
                if decoder.last_event_id is not None:
                    self.last_event_id = decoder.last_event_id
                if event is not None:
                    self._dispatch(event)
                if self.closed:
                    return

    def _dispatch(self, event: ServerSentEvent) -> None:
        for listener in list(self._listeners.get(event.event, [])):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener for '{event.event}' failed")

    def _emit(self, callback: Optional[Callable[[], None]]) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception:
            logger.exception("Event stream callback failed")

    async def _wait_retry(self) -> None:
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=self.retry_ms / 1000)
        except asyncio.TimeoutError:
            pass
