"""
Session Handlers

The page, login and logout endpoints. The page handler runs the login-state probe once per
load; the redirect URI points at it, so it is also where authorization callbacks arrive.

- GET / - Page load, consumes callbacks and reports the login state
- GET /login - Redirect to the authorization server
- GET|POST /logout - End the session and leave for the app root or hosted site
"""

import logging

from aiohttp import web
import sentry_sdk

from net.ibremote.auth.exceptions import TokenExchangeException
from net.ibremote.auth.session import SessionManager, SessionManagerRequestKey

logger = logging.getLogger(__name__)

TRUE_VALUES = frozenset({"1", "true", "yes"})


def query_flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() in TRUE_VALUES


async def handle_index(request: web.Request):
    """
    Handle a page load.

    Query Parameters:
        force_login: Redirect to the authorization server when not logged in
        next: Path to land on after a forced login

    Returns:
        JSON with the login state and any notices for the visitor

    Raises:
        HTTPFound: To strip callback parameters after login, or to start a login
    """
    session_manager: SessionManager = request[SessionManagerRequestKey]

    try:
        access_token = await session_manager.probe_login_state(
            force_login=query_flag(request, "force_login"),
            next_target=request.query.get("next"),
        )
    except TokenExchangeException as e:
        logger.exception("login error")
        sentry_sdk.capture_exception(e)
        return web.json_response(
            {"logged_in": False, "error": str(e)},
            status=502,
        )

    replaced_url = session_manager.navigator.replaced_url
    if replaced_url is not None and replaced_url != str(request.url):
        raise web.HTTPFound(replaced_url)

    return web.json_response(
        {
            "logged_in": access_token is not None,
            "state": session_manager.state.value,
            "notices": session_manager.navigator.notices,
        }
    )


async def handle_login(request: web.Request):
    session_manager: SessionManager = request[SessionManagerRequestKey]
    await session_manager.begin_login(next_target=request.query.get("next"))


async def handle_logout(request: web.Request):
    session_manager: SessionManager = request[SessionManagerRequestKey]
    await session_manager.logout(force_hosted=query_flag(request, "hosted"))
