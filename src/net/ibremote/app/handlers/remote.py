"""
Remote-Control Handlers

Thin endpoints over the remote-control API. Both are ordinary authenticated calls made
through the page's ApiClient, so rate limiting and session expiry are handled there.

- GET /devices - Online devices
- POST /devices/{device_id}/keys/{key} - Send a key press to a device
"""

import logging

from aiohttp import web

from net.ibremote.api.client import ApiClient, ApiClientRequestKey
from net.ibremote.api.remote import KEYBOARD_KEYS, list_online_devices, send_key_event
from net.ibremote.auth.session import SessionManagerRequestKey

logger = logging.getLogger(__name__)


async def handle_devices(request: web.Request):
    client: ApiClient = request[ApiClientRequestKey]
    devices = await list_online_devices(client)
    return web.json_response(
        {
            "devices": devices,
            "notices": request[SessionManagerRequestKey].navigator.notices,
        }
    )


async def handle_key_event(request: web.Request):
    try:
        device_id = int(request.match_info["device_id"])
    except ValueError:
        raise web.HTTPBadRequest(
            text='{"error": "Invalid device id"}', content_type="application/json"
        )

    key = request.match_info["key"]
    if key not in KEYBOARD_KEYS:
        raise web.HTTPBadRequest(
            text='{"error": "Invalid key"}', content_type="application/json"
        )

    client: ApiClient = request[ApiClientRequestKey]
    ok = await send_key_event(client, device_id, key)
    return web.json_response(
        {
            "ok": ok,
            "notices": request[SessionManagerRequestKey].navigator.notices,
        }
    )
