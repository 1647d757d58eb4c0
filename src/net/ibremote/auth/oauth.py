"""
OAuth Client Implementation

This module implements the two halves of the OAuth 2.0 Authorization Code flow with PKCE
for a single, statically configured authorization server.

The implementation follows these standards:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)

The flow is implemented in two stages:
1. Redirect (`begin_login`): store a state nonce and PKCE verifier, then leave the page
   for the authorization endpoint
2. Callback (`consume_callback`): validate the returned state against the stored one,
   remove the handshake material, and exchange the authorization code for an access
   token (`exchange_code`)

The state nonce and verifier are single use: they are removed as soon as a callback is
processed, whatever its outcome.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import NoReturn, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientError, ClientSession, FormData

from net.ibremote.api.chain import ChainMiddlewareClient, StatsdMiddleware
from net.ibremote.app.config import Settings
from net.ibremote.app.metrics import MetricsClient
from net.ibremote.auth.exceptions import TokenExchangeException
from net.ibremote.auth.navigation import Navigator
from net.ibremote.auth.pkce import derive_challenge, random_token
from net.ibremote.auth.store import (
    NEXT_KEY,
    PKCE_VERIFIER_KEY,
    STATE_KEY,
    SessionStore,
)

logger = logging.getLogger(__name__)


class CallbackOutcome(str, Enum):
    NO_CALLBACK = "no_callback"
    """The URL carries no callback, or its handshake was already consumed"""

    STATE_MISMATCH = "state_mismatch"
    """The returned state does not match the stored one; nothing was exchanged"""

    NO_TOKEN = "no_token"
    """The state matched but the callback carried neither a code nor an error"""

    TOKEN = "token"
    """The code was exchanged for an access token"""


@dataclass(frozen=True)
class CallbackResult:
    outcome: CallbackOutcome
    access_token: Optional[str] = None


def build_authorization_url(
    settings: Settings, state: str, code_challenge: str
) -> str:
    """
    Build the authorization request URL.

    Query parameters already present on the configured authorization endpoint are kept.
    """
    parsed_authorization_endpoint = urlparse(settings.authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update(
        {
            "response_type": "code",
            "client_id": settings.client_id,
            "state": state,
            "scope": settings.requested_scopes,
            "redirect_uri": settings.redirect_uri,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
    )
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


async def begin_login(
    settings: Settings,
    store: SessionStore,
    navigator: Navigator,
    next_target: Optional[str] = None,
) -> NoReturn:
    """
    Start the OAuth flow by redirecting to the authorization server.

    This function:
    1. Generates and stores the state nonce and PKCE verifier
    2. Stores the deferred navigation target, if any
    3. Derives the S256 challenge from the verifier
    4. Navigates to the authorization endpoint

    It never returns; the navigation unwinds the caller.

    Args:
        settings: Application settings
        store: Session store of the current browser
        navigator: Navigator of the current page
        next_target: Path, relative to the app root, to land on after login
    """
    state = random_token()
    pkce_verifier = random_token()

    # An abandoned flow expires on its own.
    await store.set(STATE_KEY, state, settings.handshake_ttl)
    await store.set(PKCE_VERIFIER_KEY, pkce_verifier, settings.handshake_ttl)
    if next_target:
        await store.set(NEXT_KEY, next_target, settings.handshake_ttl)

    redirect_destination = build_authorization_url(
        settings, state, derive_challenge(pkce_verifier)
    )
    logger.info("Redirecting to authorization server")
    navigator.navigate(redirect_destination)


async def consume_callback(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    store: SessionStore,
    navigator: Navigator,
) -> CallbackResult:
    """
    Consume an authorization server callback carried by the current URL.

    Ordinary page loads carry no ``state`` parameter and return NO_CALLBACK
    immediately. Otherwise the stored state and verifier are read and removed before
    anything else happens, so a handshake can only ever be used once.

    Returns:
        CallbackResult: the outcome and, for TOKEN, the access token

    Raises:
        TokenExchangeException: If the code could not be exchanged
        Navigation: If the authorization server reported an error
    """
    query = navigator.query
    returned_state = query.get("state")
    if not returned_state:
        return CallbackResult(CallbackOutcome.NO_CALLBACK)

    stored_state = await store.get(STATE_KEY)
    pkce_verifier = await store.get(PKCE_VERIFIER_KEY)
    await store.remove(STATE_KEY)
    await store.remove(PKCE_VERIFIER_KEY)

    if stored_state is None:
        # Already consumed, e.g. the callback URL was reloaded.
        logger.debug("Callback parameters present but no login flow in progress")
        return CallbackResult(CallbackOutcome.NO_CALLBACK)

    if stored_state != returned_state:
        logger.warning("Invalid state in authorization callback, aborting login flow")
        metrics_client.increment("ibremote.oauth.state_mismatch", 1)
        return CallbackResult(CallbackOutcome.STATE_MISMATCH)

    if query.get("error"):
        logger.info("Authorization server returned error %s", query.get("error"))
        navigator.alert(query.get("error_description") or query["error"])
        navigator.navigate(settings.web_root)

    code = query.get("code")
    if not code:
        return CallbackResult(CallbackOutcome.NO_TOKEN)

    access_token = await exchange_code(
        settings, http_session, metrics_client, code, pkce_verifier or ""
    )
    return CallbackResult(CallbackOutcome.TOKEN, access_token)


async def exchange_code(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    code: str,
    pkce_verifier: str,
) -> str:
    """
    Exchange an authorization code for an access token at the token endpoint.

    Authorization codes are single use, so a failed exchange is not retried.

    Raises:
        TokenExchangeException: On transport failure, error status or invalid body
    """
    data = FormData(
        {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": settings.client_id,
            "redirect_uri": settings.redirect_uri,
            "code_verifier": pkce_verifier,
        }
    )

    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        middleware=[StatsdMiddleware(metrics_client)],
    )

    try:
        async with chain_client.post(settings.token_endpoint, data=data) as (
            client_response,
            chain_response,
        ):
            status = client_response.status
    except (ClientError, asyncio.TimeoutError) as e:
        metrics_client.increment(
            "ibremote.oauth.token_exchange", 1, tag_dict={"outcome": "transport"}
        )
        raise TokenExchangeException.transport_failed(type(e).__name__) from e

    if status < 200 or status >= 300:
        metrics_client.increment(
            "ibremote.oauth.token_exchange", 1, tag_dict={"outcome": "status"}
        )
        raise TokenExchangeException.invalid_status(status)

    try:
        body = chain_response.json_body()
    except ValueError as e:
        metrics_client.increment(
            "ibremote.oauth.token_exchange", 1, tag_dict={"outcome": "decode"}
        )
        raise TokenExchangeException.invalid_body() from e

    if not isinstance(body, dict):
        raise TokenExchangeException.invalid_body()

    access_token = body.get("access_token", None)
    if not access_token:
        raise TokenExchangeException.access_token_missing()

    metrics_client.increment(
        "ibremote.oauth.token_exchange", 1, tag_dict={"outcome": "success"}
    )
    return str(access_token)
