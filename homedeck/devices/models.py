"""Pydantic models for device snapshots and system health."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class DeviceType(str, Enum):
    """Home Assistant domains the dashboard knows how to render."""

    LIGHT = "light"
    SWITCH = "switch"
    CLIMATE = "climate"
    COVER = "cover"
    MEDIA_PLAYER = "media_player"
    SENSOR = "sensor"
    SCENE = "scene"
    SCRIPT = "script"
    OTHER = "other"

    @classmethod
    def from_domain(cls, domain: str) -> "DeviceType":
        try:
            return cls(domain)
        except ValueError:
            return cls.OTHER


class Device(BaseModel):
    """A Home Assistant entity snapshot."""

    id: str
    name: str = ""
    type: str = DeviceType.OTHER.value
    area: Optional[str] = None
    area_id: Optional[str] = None
    state: Optional[str] = None
    online: Optional[bool] = None  # None means online
    attrs: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_online(self) -> bool:
        """Online unless explicitly false."""
        return self.online is not False

    @property
    def display_name(self) -> str:
        return self.name or self.id


class DeviceSnapshot(BaseModel):
    """Payload of the `devices` push event."""

    ts: int = 0
    items: list[Device] = Field(default_factory=list)


class SystemStatus(BaseModel):
    """Payload of the `system` push event."""

    ts: int = 0
    uptime_s: int = 0
    ha_ok: bool = False
    ha_latency_ms: int = 0
    db_ok: bool = False
    db_latency_ms: int = 0
