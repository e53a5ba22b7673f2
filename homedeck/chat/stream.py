"""Incremental consumer for the agent's line-delimited event stream."""
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterable, Callable, Optional

import httpx

from homedeck.chat.cancellation import CancelToken
from homedeck.chat.events import (
    ContentEvent,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    MetadataEvent,
    MetricsEvent,
    ToolsEvent,
    decode_events,
    parse_data_line,
)
from homedeck.chat.models import RunMetrics, StreamingMetadata

logger = logging.getLogger(__name__)

COMPLETED = "completed"
CANCELLED = "cancelled"
FAILED = "failed"

# Failure sources
AGENT = "agent"
TRANSPORT = "transport"
LIMIT = "limit"

_EOF = object()


@dataclass
class StreamOutcome:
    """Everything accumulated while reading one agent stream."""
    status: str = COMPLETED
    content: str = ""
    metadata: Optional[StreamingMetadata] = None
    metrics: Optional[RunMetrics] = None
    tools: Optional[list[str]] = None
    error: Optional[str] = None
    error_source: Optional[str] = None
    done: bool = False
    malformed_lines: int = 0

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status == CANCELLED

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    @property
    def resolved_tools(self) -> Optional[list[str]]:
        """Tools actually invoked win over the tools planned in the metadata."""
        if self.tools:
            return self.tools
        return self.metadata.tools if self.metadata else None


async def _next_line(iterator) -> object:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EOF


class StreamConsumer:
    """Reads `data:` lines, accumulates the reply and reports progress.

    `on_content` receives the whole buffer after every delta or content
    replacement; `on_metadata` receives the latest metadata, or None once the
    stream reports done or terminates.
    """

    def __init__(
        self,
        on_content: Optional[Callable[[str], None]] = None,
        on_metadata: Optional[Callable[[Optional[StreamingMetadata]], None]] = None,
        idle_timeout: Optional[float] = None,
        max_chars: Optional[int] = None,
    ):
        self.on_content = on_content
        self.on_metadata = on_metadata
        self.idle_timeout = idle_timeout
        self.max_chars = max_chars

    async def consume(
        self, lines: AsyncIterable[str], token: Optional[CancelToken] = None
    ) -> StreamOutcome:
        """Read `lines` until the stream is exhausted, fails or `token` is cancelled.

        The `done` flag ends generation but not reading: lines keep being
        processed until the underlying stream is exhausted.
        """
        token = token or CancelToken()
        outcome = StreamOutcome()
        iterator = lines.__aiter__()

        try:
            while True:
                next_line = _next_line(iterator)
                if self.idle_timeout:
                    next_line = asyncio.wait_for(next_line, self.idle_timeout)

                try:
                    cancelled, line = await token.race(next_line)
                except asyncio.TimeoutError:
                    return self._fail(outcome, "stream idle timeout", TRANSPORT)
                except (httpx.HTTPError, httpx.StreamError) as e:
                    return self._fail(outcome, f"stream interrupted: {e}", TRANSPORT)

                if cancelled:
                    outcome.status = CANCELLED
                    logger.info("Agent stream cancelled")
                    return outcome
                if line is _EOF:
                    return outcome

                failure = self._handle_line(line, outcome)
                if failure is not None:
                    return self._fail(outcome, *failure)
        finally:
            self._emit_metadata(None)

    def _handle_line(self, line: str, outcome: StreamOutcome) -> Optional[tuple[str, str]]:
        """Apply one line to `outcome`. Returns `(error, source)` if the turn must stop."""
        try:
            payload = parse_data_line(line)
            events = decode_events(payload) if payload is not None else []
        except ValueError as e:
            outcome.malformed_lines += 1
            logger.warning(f"Skipping malformed stream line {line[:200]!r}: {e}")
            return None

        for event in events:
            if isinstance(event, ErrorEvent):
                return event.message, AGENT
            elif isinstance(event, MetadataEvent):
                outcome.metadata = event.metadata
                self._emit_metadata(event.metadata)
            elif isinstance(event, DeltaEvent):
                outcome.content += event.text
                if self._too_large(outcome):
                    return f"response exceeded {self.max_chars} characters", LIMIT
                self._emit_content(outcome.content)
            elif isinstance(event, MetricsEvent):
                outcome.metrics = event.metrics
            elif isinstance(event, ToolsEvent):
                outcome.tools = event.tools
            elif isinstance(event, ContentEvent):
                outcome.content = event.text
                if self._too_large(outcome):
                    return f"response exceeded {self.max_chars} characters", LIMIT
                self._emit_content(outcome.content)
            elif isinstance(event, DoneEvent):
                outcome.done = True
                self._emit_metadata(None)
        return None

    def _too_large(self, outcome: StreamOutcome) -> bool:
        return bool(self.max_chars) and len(outcome.content) > self.max_chars

    def _fail(self, outcome: StreamOutcome, error: str, source: str) -> StreamOutcome:
        logger.warning(f"Agent stream failed ({source}): {error}")
        outcome.status = FAILED
        outcome.error = error
        outcome.error_source = source
        return outcome

    def _emit_content(self, content: str) -> None:
        if self.on_content:
            self.on_content(content)

    def _emit_metadata(self, metadata: Optional[StreamingMetadata]) -> None:
        if self.on_metadata:
            self.on_metadata(metadata)
