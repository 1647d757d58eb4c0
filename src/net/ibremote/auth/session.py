"""
Login-State Orchestration

``SessionManager`` ties the OAuth flow, the session store and the page together. It is
created once per page load and decides, via ``probe_login_state``, whether the visitor is
logged in, has to be redirected to the authorization server, or should be offered a login
control. It also owns the two ways a session ends: an explicit logout and invalidation
after the API rejected the token.
"""

import asyncio
import logging
from typing import Final, NoReturn, Optional

from aiohttp import ClientError, ClientSession, hdrs, web

from net.ibremote.app.config import Settings
from net.ibremote.app.metrics import MetricsClient
from net.ibremote.auth.exceptions import TokenExchangeException
from net.ibremote.auth.navigation import Navigator
from net.ibremote.auth.oauth import CallbackOutcome, begin_login, consume_callback
from net.ibremote.auth.state import LoginState, LoginStateMachine
from net.ibremote.auth.store import (
    ACCESS_TOKEN_KEY,
    NEXT_KEY,
    RETURN_TO_HOSTED_KEY,
    SessionStore,
)

logger = logging.getLogger(__name__)

SESSION_DESTROY_PATH = "session/destroy"


def join_root(root: str, path: str) -> str:
    """Append a relative path to a root URL with exactly one slash between them."""
    if not path:
        return root
    return root.rstrip("/") + "/" + path.lstrip("/")


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        store: SessionStore,
        navigator: Navigator,
    ) -> None:
        self.settings = settings
        self.http_session = http_session
        self.metrics_client = metrics_client
        self.store = store
        self.navigator = navigator
        self._machine = LoginStateMachine()

    @property
    def state(self) -> LoginState:
        return self._machine.state

    async def access_token(self) -> Optional[str]:
        return await self.store.get(ACCESS_TOKEN_KEY)

    async def begin_login(self, next_target: Optional[str] = None) -> NoReturn:
        self._machine.transition(LoginState.REDIRECTING)
        await begin_login(self.settings, self.store, self.navigator, next_target)

    async def probe_login_state(
        self, force_login: bool = False, next_target: Optional[str] = None
    ) -> Optional[str]:
        """
        Decide the login state of this page load. Run exactly once, at start.

        The steps, in priority order:
        1. A pending authorization callback is consumed; a resulting token is stored,
           the deferred navigation target (or the app root) replaces the URL and the
           token is returned
        2. A stored token is returned
        3. Entry from the hosted site marks the return-to-hosted flag and starts a login
        4. ``force_login`` starts a login, remembering ``next_target``
        5. Otherwise the visitor is not logged in and None is returned

        Steps 3 and 4 do not return; they raise ``Navigation``.

        Raises:
            TokenExchangeException: If a callback code could not be exchanged
        """
        query = self.navigator.query

        if query.get("state"):
            self._machine.transition(LoginState.CALLBACK_PENDING)

        try:
            result = await consume_callback(
                self.settings,
                self.http_session,
                self.metrics_client,
                self.store,
                self.navigator,
            )
        except TokenExchangeException:
            self._machine.transition(LoginState.UNAUTHENTICATED)
            raise

        if result.outcome == CallbackOutcome.TOKEN and result.access_token:
            await self.store.set(ACCESS_TOKEN_KEY, result.access_token)

            next_target_stored = await self.store.get(NEXT_KEY)
            if next_target_stored:
                await self.store.remove(NEXT_KEY)
                self.navigator.replace_url(
                    join_root(self.settings.app_root, next_target_stored)
                )
            else:
                self.navigator.replace_url(self.settings.app_root)

            self._machine.transition(LoginState.AUTHENTICATED)
            logger.info("Login completed")
            return result.access_token

        self._machine.transition(LoginState.UNAUTHENTICATED)

        access_token = await self.store.get(ACCESS_TOKEN_KEY)
        if access_token:
            self._machine.transition(LoginState.AUTHENTICATED)
            return access_token

        if query.get("source") == self.settings.hosted_source_marker:
            await self.store.set(RETURN_TO_HOSTED_KEY, "1")
            await self.begin_login()

        if force_login:
            await self.begin_login(next_target)

        return None

    async def destroy_session(self) -> None:
        """
        Tell the API to destroy the session, then forget the access token.

        The server call is best effort; removing the local token is what ends the
        session, so it happens regardless of the outcome.
        """
        access_token = await self.store.get(ACCESS_TOKEN_KEY)
        if access_token:
            logger.info("Destroying session")
            try:
                async with self.http_session.post(
                    join_root(self.settings.api_root, SESSION_DESTROY_PATH),
                    headers={hdrs.AUTHORIZATION: f"Bearer {access_token}"},
                ) as resp:
                    if resp.status >= 400:
                        logger.info(f"Session destroy returned status {resp.status}")
            except (ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Cannot destroy session: {type(e).__name__}: {e}")

        await self.store.remove(ACCESS_TOKEN_KEY)

    async def invalidate(self) -> NoReturn:
        """End a session the API rejected and send the visitor to the app root."""
        self._machine.transition(LoginState.INVALIDATED)
        await self.destroy_session()
        self.navigator.navigate(self.settings.app_root)

    async def logout(self, force_hosted: bool = False) -> NoReturn:
        """
        Log out and leave the page.

        Visitors who entered from the hosted site (or ``force_hosted``) go to the hosted
        web root and the return-to-hosted flag is cleared; everyone else goes to the
        app root.
        """
        self._machine.transition(LoginState.INVALIDATED)

        return_to_hosted = await self.store.get(RETURN_TO_HOSTED_KEY) is not None
        if return_to_hosted or force_hosted:
            await self.store.remove(RETURN_TO_HOSTED_KEY)
            await self.destroy_session()
            self.navigator.navigate(self.settings.web_root)

        await self.destroy_session()
        self.navigator.navigate(self.settings.app_root)


SessionManagerRequestKey: Final = web.RequestKey("session_manager", SessionManager)
"""RequestKey for the SessionManager of the current page load"""
