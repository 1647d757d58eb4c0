import json
import logging
from typing import Any, Dict, List

from net.ibremote.api.client import ApiClient

logger = logging.getLogger(__name__)

KEYBOARD_KEYS = frozenset({"up", "down", "left", "right"})


async def list_online_devices(client: ApiClient) -> List[Dict[str, Any]]:
    """Devices currently online, or an empty list if the listing was denied."""
    response = await client.request("GET", "device/list?filter:is_online=true")
    if not isinstance(response, dict):
        return []
    return list(response.get("devices", []))


async def send_key_event(
    client: ApiClient, device_id: int, key: str, action: str = "down"
) -> bool:
    """
    Send a keyboard event to the root node of a device.

    Returns True when the API acknowledged the event.
    """
    response = await client.request(
        "POST",
        f"device/{device_id}/node/root/event/keyboard",
        {"data": json.dumps({"key": key, "action": action})},
    )
    if not isinstance(response, dict):
        return False
    return bool(response.get("ok"))
