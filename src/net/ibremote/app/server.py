import html
import logging
import re
import secrets
from time import time
from typing import Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from net.ibremote.api.client import ApiClient, ApiClientRequestKey
from net.ibremote.app.config import (
    BrowserIdRequestKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
)
from net.ibremote.app.handlers.internal import handle_internal_alive
from net.ibremote.app.handlers.remote import handle_devices, handle_key_event
from net.ibremote.app.handlers.session import (
    handle_index,
    handle_login,
    handle_logout,
)
from net.ibremote.app.metrics import create_metrics_client
from net.ibremote.auth.navigation import Navigation, Navigator
from net.ibremote.auth.session import SessionManager, SessionManagerRequestKey
from net.ibremote.auth.store import (
    EncryptedSessionStore,
    RedisSessionStore,
    SessionStore,
)

logger = logging.getLogger(__name__)

BROWSER_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
BROWSER_ID_MAX_AGE = 365 * 24 * 60 * 60


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    app[RedisClientAppKey] = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        otel_endpoint=settings.otel_endpoint,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


def browser_store(settings: Settings, redis_client: redis.Redis, browser_id: str) -> SessionStore:
    store: SessionStore = RedisSessionStore(
        redis_client,
        f"{settings.store_namespace}:{browser_id}",
        default_ttl=settings.session_ttl,
    )
    if settings.encryption_key is not None:
        store = EncryptedSessionStore(store, settings.encryption_key)
    return store


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "ibremote.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "ibremote.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "ibremote.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


@web.middleware
async def browser_session_middleware(request: web.Request, handler):
    """
    Scope the session store to the requesting browser.

    The browser is identified by a random id kept in a cookie. A browser without a valid
    id is given a new one, set on whatever response (or redirect) the handler produces.
    """
    settings = request.app[SettingsAppKey]

    browser_id = request.cookies.get(settings.session_cookie_name, "")
    is_new_browser = BROWSER_ID_PATTERN.match(browser_id) is None
    if is_new_browser:
        browser_id = secrets.token_hex(16)

    session_manager = SessionManager(
        settings,
        request.app[SessionAppKey],
        request.app[MetricsClientAppKey],
        browser_store(settings, request.app[RedisClientAppKey], browser_id),
        Navigator(str(request.url)),
    )
    request[BrowserIdRequestKey] = browser_id
    request[SessionManagerRequestKey] = session_manager
    request[ApiClientRequestKey] = ApiClient(session_manager)

    def set_browser_cookie(response: web.StreamResponse) -> None:
        if is_new_browser:
            response.set_cookie(
                settings.session_cookie_name,
                browser_id,
                max_age=BROWSER_ID_MAX_AGE,
                httponly=True,
                samesite="Lax",
                secure=settings.app_root.startswith("https://"),
            )

    try:
        response = await handler(request)
    except web.HTTPException as e:
        set_browser_cookie(e)
        raise e
    set_browser_cookie(response)
    return response


def notice_page(notices, location: str) -> web.Response:
    items = "".join(f"<li>{html.escape(notice)}</li>" for notice in notices)
    escaped_location = html.escape(location, quote=True)
    return web.Response(
        text=(
            "<!DOCTYPE html><html><head>"
            f'<meta http-equiv="refresh" content="5;url={escaped_location}">'
            f"</head><body><ul>{items}</ul>"
            f'<a href="{escaped_location}">Continue</a></body></html>'
        ),
        content_type="text/html",
    )


@web.middleware
async def navigation_middleware(request: web.Request, handler):
    """
    Turn a terminal page navigation into an HTTP redirect.

    Notices raised before leaving the page cannot travel with a plain redirect, so they
    are shown on an interstitial page that forwards to the target.
    """
    try:
        return await handler(request)
    except Navigation as navigation:
        session_manager: Optional[SessionManager] = request.get(
            SessionManagerRequestKey
        )
        if session_manager is not None and session_manager.navigator.notices:
            return notice_page(session_manager.navigator.notices, navigation.location)
        raise web.HTTPFound(navigation.location)


def create_app(settings: Settings) -> web.Application:
    """
    Build the application: middleware, settings and routes.

    Shared resources (HTTP session, Redis client, metrics client) are attached by
    ``background_tasks``, which ``start_web_server`` registers.
    """
    app = web.Application(
        middlewares=[
            sentry_middleware,
            statsd_middleware,
            browser_session_middleware,
            navigation_middleware,
        ]
    )

    app[SettingsAppKey] = settings

    app.add_routes(
        [
            web.get("/", handle_index),
            web.get("/login", handle_login),
            web.get("/logout", handle_logout),
            web.post("/logout", handle_logout),
            web.get("/devices", handle_devices),
            web.post("/devices/{device_id}/keys/{key}", handle_key_event),
        ]
    )

    app.add_routes([web.get("/internal/alive", handle_internal_alive)])

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = create_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
