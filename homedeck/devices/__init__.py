"""Device and system-health push channels and their reconcilers."""

from homedeck.devices.eventsource import EventSource, ServerSentEvent, SSEDecoder
from homedeck.devices.models import Device, DeviceSnapshot, DeviceType, SystemStatus
from homedeck.devices.monitor import DeviceMonitor, SystemMonitor, count_online, filter_devices
from homedeck.devices.reconciler import (
    ConnectionTracker,
    DeviceReconciler,
    SystemHealthReconciler,
    Transition,
)

__all__ = [
    "ConnectionTracker",
    "Device",
    "DeviceMonitor",
    "DeviceReconciler",
    "DeviceSnapshot",
    "DeviceType",
    "EventSource",
    "SSEDecoder",
    "ServerSentEvent",
    "SystemHealthReconciler",
    "SystemMonitor",
    "SystemStatus",
    "Transition",
    "count_online",
    "filter_devices",
]
