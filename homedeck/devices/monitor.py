"""Dashboard-side subscribers for the device and system push channels."""
import logging
from typing import Iterable, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from homedeck.config import get_settings
from homedeck.devices.eventsource import EventSource, ServerSentEvent
from homedeck.devices.models import Device, DeviceSnapshot, SystemStatus
from homedeck.devices.reconciler import ConnectionTracker, DeviceReconciler, SystemHealthReconciler
from homedeck.notifications import Notifier, get_notifier

logger = logging.getLogger(__name__)

STATUS_ALL = "all"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

UNASSIGNED_AREA = "Other"

DEVICE_LIST = TypeAdapter(list[Device])


def filter_devices(
    devices: Iterable[Device],
    status: str = STATUS_ALL,
    type: Optional[str] = None,
    area: Optional[str] = None,
    query: str = "",
) -> list[Device]:
    """Apply the dashboard filters. Devices without an area match `Other`."""
    needle = query.strip().lower()
    result = []
    for device in devices:
        if status == STATUS_ONLINE and not device.is_online:
            continue
        if status == STATUS_OFFLINE and device.is_online:
            continue
        if type and device.type != type:
            continue
        if area and (device.area or UNASSIGNED_AREA) != area:
            continue
        if needle and needle not in device.display_name.lower() and needle not in device.id.lower():
            continue
        result.append(device)
    return result


def count_online(devices: Iterable[Device]) -> int:
    return sum(1 for device in devices if device.is_online)


class DeviceMonitor:
    """Keeps the device list in sync with `/api/devices/stream`."""

    STREAM_PATH = "/api/devices/stream"
    LIST_PATH = "/api/devices"

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        notifier: Optional[Notifier] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.dashboard_url).rstrip("/")
        self.notifier = notifier or get_notifier()
        self.client = client
        self.reconciler = DeviceReconciler(self.notifier)
        self.tracker = ConnectionTracker("device stream", self.notifier)
        self.source = EventSource(
            f"{self.base_url}{self.STREAM_PATH}",
            client=client,
            retry_ms=settings.sse_retry_ms,
            on_open=self.tracker.on_open,
            on_error=self.tracker.on_error,
        )
        self.source.add_listener("devices", self.handle_event)

    @property
    def devices(self) -> list[Device]:
        return self.reconciler.devices

    @property
    def connected(self) -> bool:
        return self.tracker.connected

    def handle_event(self, event: ServerSentEvent) -> None:
        try:
            snapshot = DeviceSnapshot.model_validate_json(event.data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed devices event: {e}")
            return
        self.reconciler.apply(snapshot)

    async def refresh(self) -> list[Device]:
        """One-shot `GET /api/devices`; goes through the same reconciler."""
        client = self.client or self.source.client
        try:
            response = await client.get(f"{self.base_url}{self.LIST_PATH}")
            response.raise_for_status()
            snapshot = DeviceSnapshot(items=DEVICE_LIST.validate_python(response.json()))
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Device refresh failed: {e}")
            self.notifier.error("Failed to load devices")
            return self.devices
        self.reconciler.apply(snapshot)
        return self.devices

    def start(self):
        return self.source.start()

    async def close(self) -> None:
        await self.source.close()


class SystemMonitor:
    """Keeps the system health badge in sync with `/api/system/stream`.

    Plain `message` events that carry `uptime_s` are status updates too.
    Fields they omit keep their last known value; before the first full
    status, an event without both health flags only updates the uptime.
    """

    STREAM_PATH = "/api/system/stream"

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        notifier: Optional[Notifier] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.dashboard_url).rstrip("/")
        self.notifier = notifier or get_notifier()
        self.reconciler = SystemHealthReconciler(self.notifier)
        self.tracker = ConnectionTracker("system stream", self.notifier)
        self.uptime_s: Optional[int] = None
        self.source = EventSource(
            f"{self.base_url}{self.STREAM_PATH}",
            client=client,
            retry_ms=settings.sse_retry_ms,
            on_open=self.tracker.on_open,
            on_error=self.tracker.on_error,
        )
        self.source.add_listener("system", self.handle_system)
        self.source.add_listener("message", self.handle_message)

    @property
    def status(self) -> Optional[SystemStatus]:
        return self.reconciler.status

    @property
    def connected(self) -> bool:
        return self.tracker.connected

    def _apply(self, payload: dict) -> None:
        try:
            status = SystemStatus.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed system status: {e}")
            return
        self.uptime_s = status.uptime_s
        self.reconciler.apply(status)

    def handle_system(self, event: ServerSentEvent) -> None:
        try:
            payload = event.json()
        except ValueError as e:
            logger.warning(f"Ignoring malformed system event: {e}")
            return
        if isinstance(payload, dict):
            self._apply(payload)

    def handle_message(self, event: ServerSentEvent) -> None:
        try:
            payload = event.json()
        except ValueError:
            return
        if not isinstance(payload, dict) or "uptime_s" not in payload:
            return
        if self.status is not None:
            self._apply({**self.status.model_dump(), **payload})
        elif "ha_ok" in payload and "db_ok" in payload:
            self._apply(payload)
        elif isinstance(payload["uptime_s"], (int, float)):
            self.uptime_s = int(payload["uptime_s"])

    def start(self):
        return self.source.start()

    async def close(self) -> None:
        await self.source.close()
