"""
Shared test configuration and fixtures.

Provides a fake upstream (authorization server token endpoint and resource API) served
by aiohttp's test server, settings pointing at it, and session store fixtures.
"""

from dataclasses import dataclass, field
import json
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import Mock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

from net.ibremote.app.config import Settings
from net.ibremote.app.metrics import MetricsClient
from net.ibremote.auth.navigation import Navigator
from net.ibremote.auth.session import SessionManager
from net.ibremote.auth.store import MemorySessionStore, SessionStore

APP_ROOT = "https://remote.example.com/"
WEB_ROOT = "https://hosted.example.com/"


@dataclass
class RecordedRequest:
    method: str
    path: str
    query_string: str
    headers: Dict[str, str]
    form: Dict[str, str]
    content_type: str


@dataclass
class ScriptedResponse:
    status: int = 200
    body: Any = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    raw: Optional[str] = None


class FakeUpstream:
    """
    Token endpoint and resource API in one aiohttp application.

    Resource API responses are taken from ``api_responses`` in order; once the list is
    empty every call answers 200 with an empty JSON object.
    """

    def __init__(self) -> None:
        self.base_url = ""
        self.requests: List[RecordedRequest] = []
        self.token_response = ScriptedResponse(body={"access_token": "T1"})
        self.destroy_status = 200
        self.api_responses: List[ScriptedResponse] = []

    def url(self, path: str) -> str:
        return self.base_url + path

    def requests_to(self, path: str) -> List[RecordedRequest]:
        return [r for r in self.requests if r.path == path]

    async def _record(self, request: web.Request) -> None:
        form = await request.post()
        self.requests.append(
            RecordedRequest(
                method=request.method,
                path=request.path,
                query_string=request.query_string,
                headers=dict(request.headers),
                form={k: str(v) for k, v in form.items()},
                content_type=request.headers.get("Content-Type", ""),
            )
        )

    @staticmethod
    def _respond(scripted: ScriptedResponse) -> web.Response:
        if scripted.raw is not None:
            return web.Response(
                status=scripted.status,
                text=scripted.raw,
                headers=scripted.headers,
                content_type="text/html",
            )
        return web.Response(
            status=scripted.status,
            text=json.dumps(scripted.body),
            headers=scripted.headers,
            content_type="application/json",
        )

    async def handle_token(self, request: web.Request) -> web.Response:
        await self._record(request)
        return self._respond(self.token_response)

    async def handle_destroy(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({"ok": True}, status=self.destroy_status)

    async def handle_api(self, request: web.Request) -> web.Response:
        await self._record(request)
        if self.api_responses:
            return self._respond(self.api_responses.pop(0))
        return web.json_response({})

    def app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.post("/oauth/token", self.handle_token),
                web.post("/api/v1/session/destroy", self.handle_destroy),
                web.route("*", "/api/v1/{tail:.*}", self.handle_api),
            ]
        )
        return app


@pytest_asyncio.fixture
async def upstream():
    fake = FakeUpstream()
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = str(server.make_url("/"))
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def settings(upstream) -> Settings:
    return Settings(
        client_id="test-client",
        requested_scopes="device:read device:node",
        redirect_uri=APP_ROOT,
        authorization_endpoint=upstream.url("oauth/authorize"),
        token_endpoint=upstream.url("oauth/token"),
        api_root=upstream.url("api/v1/"),
        app_root=APP_ROOT,
        web_root=WEB_ROOT,
    )  # type: ignore


@pytest.fixture
def metrics_client():
    return Mock(spec=MetricsClient)


@pytest.fixture
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def make_session_manager(
    settings, http_session, metrics_client, store
) -> Callable[..., SessionManager]:
    """Build a SessionManager for a page loaded at ``url``."""

    def factory(url: str = APP_ROOT, session_store: Optional[SessionStore] = None):
        return SessionManager(
            settings,
            http_session,
            metrics_client,
            session_store if session_store is not None else store,
            Navigator(url),
        )

    return factory


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()
