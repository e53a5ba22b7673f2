"""Reconcile pushed snapshots against the previous one and notify on edges.

Snapshots always replace local state wholesale; the only per-field
comparison is the `online` predicate, and only for devices present in both
the previous and the new snapshot. The first snapshot of a session has
nothing to compare against, so it never produces a transition.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from homedeck.devices.models import Device, DeviceSnapshot, SystemStatus
from homedeck.notifications import Notifier, Toast, get_notifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """A device whose online predicate flipped between two snapshots."""
    device_id: str
    name: str
    online: bool


def diff_online(previous: Iterable[Device], current: Iterable[Device]) -> list[Transition]:
    """Devices present in both lists whose `is_online` changed, in `current` order."""
    by_id = {device.id: device for device in previous}
    transitions = []
    for device in current:
        before = by_id.get(device.id)
        if before is None:
            continue
        if before.is_online != device.is_online:
            transitions.append(
                Transition(device_id=device.id, name=device.display_name, online=device.is_online)
            )
    return transitions


class DeviceReconciler:
    """Keeps the device list and raises one toast per online/offline edge."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or get_notifier()
        self.devices: list[Device] = []
        self._previous: Optional[list[Device]] = None

    @property
    def has_snapshot(self) -> bool:
        return self._previous is not None

    def apply(self, snapshot: DeviceSnapshot) -> list[Transition]:
        """Apply a snapshot and return the transitions that were notified."""
        transitions: list[Transition] = []
        if self._previous is not None:
            transitions = diff_online(self._previous, snapshot.items)
            for transition in transitions:
                if transition.online:
                    self.notifier.success(f"{transition.name} is online")
                else:
                    self.notifier.error(f"{transition.name} is offline")

        self.devices = list(snapshot.items)
        self._previous = list(snapshot.items)
        if transitions:
            logger.info(f"{len(transitions)} device(s) changed availability")
        return transitions

    def reset(self) -> None:
        """Forget the previous snapshot; the next one is treated as the first."""
        self.devices = []
        self._previous = None


class SystemHealthReconciler:
    """Same pattern for the `ha_ok`/`db_ok` flags of the system stream."""

    COMPONENTS = (
        ("ha_ok", "Home Assistant"),
        ("db_ok", "Database"),
    )

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or get_notifier()
        self.status: Optional[SystemStatus] = None

    def apply(self, status: SystemStatus) -> list[Toast]:
        previous = self.status
        self.status = status
        toasts: list[Toast] = []

        if previous is None:
            # Nothing to compare against: only report what is already down
            for flag, label in self.COMPONENTS:
                if not getattr(status, flag):
                    toasts.append(self.notifier.error(f"{label} is unreachable"))
            return toasts

        for flag, label in self.COMPONENTS:
            was_ok = getattr(previous, flag)
            is_ok = getattr(status, flag)
            if was_ok and not is_ok:
                toasts.append(self.notifier.error(f"{label} became unreachable"))
            elif not was_ok and is_ok:
                toasts.append(self.notifier.success(f"{label} connectivity restored"))
        return toasts

    def reset(self) -> None:
        self.status = None


class ConnectionTracker:
    """Connected/disconnected state of a push channel, notified once per edge."""

    def __init__(self, label: str, notifier: Optional[Notifier] = None):
        self.label = label
        self.notifier = notifier or get_notifier()
        self.connected = False
        self._disconnected = False

    def on_open(self) -> None:
        self.connected = True
        if self._disconnected:
            self._disconnected = False
            self.notifier.success(f"Reconnected to {self.label}")

    def on_error(self) -> None:
        self.connected = False
        if not self._disconnected:
            self._disconnected = True
            self.notifier.error(f"{self.label[:1].upper()}{self.label[1:]} disconnected")
