"""Decoding of the agent stream's `data:` lines into typed events.

Each line of the stream is either ignored or carries ``data: <json>``. A decoded
object may hold several keys at once (e.g. ``metrics`` together with ``done``),
so every key is checked and one event is produced per key present, always in
the order error, metadata, delta, metrics, tools, content, done.
A metadata or metrics value that does not fit its model is dropped on its own;
the other keys of the line still produce their events.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import ValidationError

from homedeck.chat.models import RunMetrics, StreamingMetadata

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class MetadataEvent:
    metadata: StreamingMetadata


@dataclass(frozen=True)
class DeltaEvent:
    text: str


@dataclass(frozen=True)
class MetricsEvent:
    metrics: RunMetrics


@dataclass(frozen=True)
class ToolsEvent:
    tools: list[str]


@dataclass(frozen=True)
class ContentEvent:
    text: str


@dataclass(frozen=True)
class DoneEvent:
    pass


StreamEvent = Union[
    ErrorEvent, MetadataEvent, DeltaEvent, MetricsEvent, ToolsEvent, ContentEvent, DoneEvent
]


def parse_data_line(line: str) -> Optional[Any]:
    """Return the JSON payload of a ``data:`` line, or None for any other line.

    Raises ValueError when the payload is not valid JSON.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    return json.loads(line[len(DATA_PREFIX):])


def decode_events(obj: Any) -> list[StreamEvent]:
    """Turn one decoded stream object into its events, in dispatch order."""
    if not isinstance(obj, dict):
        return []

    events: list[StreamEvent] = []

    if obj.get("error"):
        events.append(ErrorEvent(message=str(obj["error"])))

    if isinstance(obj.get("metadata"), dict):
        try:
            events.append(MetadataEvent(metadata=StreamingMetadata.model_validate(obj["metadata"])))
        except ValidationError as e:
            logger.warning(f"Dropping unreadable stream metadata: {e}")

    if isinstance(obj.get("delta"), str):
        events.append(DeltaEvent(text=obj["delta"]))

    if isinstance(obj.get("metrics"), dict):
        try:
            events.append(MetricsEvent(metrics=RunMetrics.model_validate(obj["metrics"])))
        except ValidationError as e:
            logger.warning(f"Dropping unreadable run metrics: {e}")

    if isinstance(obj.get("tools"), list):
        events.append(ToolsEvent(tools=[str(t) for t in obj["tools"]]))

    if isinstance(obj.get("content"), str):
        events.append(ContentEvent(text=obj["content"]))

    if obj.get("done"):
        events.append(DoneEvent())

    return events
