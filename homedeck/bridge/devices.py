"""Map Home Assistant states and registries into dashboard devices."""
import logging

import httpx

from homedeck.bridge.home_assistant import HomeAssistantClient
from homedeck.devices.models import Device, DeviceType

logger = logging.getLogger(__name__)


def _index(rows: list[dict], key_fields: tuple[str, ...], value_field: str) -> dict[str, str]:
    """Build `key -> value` from registry rows, skipping rows missing either side."""
    index = {}
    for row in rows or []:
        key = next((str(row[f]) for f in key_fields if row.get(f)), "")
        value = str(row.get(value_field) or "")
        if key and value:
            index[key] = value
    return index


def build_devices(
    states: list[dict],
    areas: list[dict],
    registry_devices: list[dict],
    registry_entities: list[dict],
) -> list[Device]:
    area_names = _index(areas, ("area_id", "id"), "name")
    area_by_device = _index(registry_devices, ("id",), "area_id")
    device_by_entity = _index(registry_entities, ("entity_id",), "device_id")

    devices = []
    for state in states:
        entity_id = state["entity_id"]
        domain = DeviceType.from_domain(entity_id.split(".")[0])
        attrs = state.get("attributes") or {}
        device_id = device_by_entity.get(entity_id, "")
        area_id = area_by_device.get(device_id, "") if device_id else ""
        devices.append(Device(
            id=entity_id,
            name=str(attrs.get("friendly_name") or entity_id),
            type=domain.value,
            area=area_names.get(area_id, "") if area_id else "",
            area_id=area_id,
            state=state.get("state"),
            online=state.get("state") != "unavailable",
            attrs=attrs,
        ))
    return devices


async def load_devices(client: HomeAssistantClient, raise_errors: bool = False) -> list[Device]:
    """Current devices, or an empty list when Home Assistant is unreachable.

    With `raise_errors` a failed states request propagates instead. Registry
    lookups are best effort: when any of them fails every device is returned
    without an area.
    """
    if not client.configured:
        return []
    try:
        states = await client.get_states()
    except (httpx.HTTPError, ValueError) as e:
        if raise_errors:
            raise
        logger.warning(f"Failed to load states: {e}")
        return []

    areas, registry_devices, registry_entities = [], [], []
    try:
        areas = await client.list_areas()
        registry_devices = await client.list_device_registry()
        registry_entities = await client.list_entity_registry()
    except (httpx.HTTPError, ValueError) as e:
        logger.info(f"Registry lookup failed, areas unavailable: {e}")
        areas, registry_devices, registry_entities = [], [], []

    return build_devices(states, areas, registry_devices, registry_entities)
