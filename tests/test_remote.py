import json
from unittest.mock import AsyncMock

import pytest

from net.ibremote.api.client import ApiClient
from net.ibremote.api.remote import list_online_devices, send_key_event
from net.ibremote.auth.store import ACCESS_TOKEN_KEY

from conftest import ScriptedResponse


@pytest.fixture
def api_client(make_session_manager, store):
    store.values[ACCESS_TOKEN_KEY] = "T1"
    return ApiClient(make_session_manager(), sleep=AsyncMock())


@pytest.mark.asyncio
async def test_list_online_devices(api_client, upstream):
    devices = [{"id": 1, "description": "Lobby"}, {"id": 2, "description": "Kitchen"}]
    upstream.api_responses.append(ScriptedResponse(body={"devices": devices}))

    assert await list_online_devices(api_client) == devices

    (recorded,) = upstream.requests_to("/api/v1/device/list")
    assert recorded.method == "GET"
    assert recorded.query_string == "filter:is_online=true"


@pytest.mark.asyncio
async def test_list_online_devices_denied(api_client, upstream):
    upstream.api_responses.append(ScriptedResponse(status=403))

    assert await list_online_devices(api_client) == []


@pytest.mark.asyncio
async def test_send_key_event(api_client, upstream):
    upstream.api_responses.append(ScriptedResponse(body={"ok": True}))

    assert await send_key_event(api_client, 7, "up") is True

    (recorded,) = upstream.requests_to("/api/v1/device/7/node/root/event/keyboard")
    assert recorded.method == "POST"
    assert json.loads(recorded.form["data"]) == {"key": "up", "action": "down"}


@pytest.mark.asyncio
async def test_send_key_event_not_acknowledged(api_client, upstream):
    upstream.api_responses.append(ScriptedResponse(body={"ok": False}))

    assert await send_key_event(api_client, 7, "left") is False
