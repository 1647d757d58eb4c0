"""
Resilient API Client

Issues authenticated calls against the resource API. Every call goes through the middleware
chain in ``net.ibremote.api.chain``:

    StatsdMiddleware -> RetryAfterMiddleware -> BearerTokenMiddleware
        -> MultipartFormMiddleware -> aiohttp

so a rate limited call is retried with the token read again and the form body rebuilt.
Responses are then handled by status:

- 401: the session is invalidated and the visitor sent to the app root (does not return)
- 403: an access denied notice is shown and None is returned
- anything else: the JSON body is returned
"""

import asyncio
import logging
from typing import Any, Final, Mapping, Optional

from aiohttp import web

from net.ibremote.api.chain import (
    FORM_FIELDS_KWARG,
    BearerTokenMiddleware,
    ChainMiddlewareClient,
    MultipartFormMiddleware,
    RetryAfterMiddleware,
    SleepFunc,
    StatsdMiddleware,
)
from net.ibremote.auth.session import SessionManager, join_root

logger = logging.getLogger(__name__)


class ApiResponseException(Exception):
    """
    Exception raised when a resource API response cannot be used.
    """

    @staticmethod
    def invalid_json(method: str, path: str, status: int) -> "ApiResponseException":
        return ApiResponseException(
            f"error-api-1000 {method} {path} returned status {status} without a JSON body"
        )


class ApiClient:
    def __init__(
        self,
        session_manager: SessionManager,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        settings = session_manager.settings
        self._session_manager = session_manager
        self._api_root = settings.api_root
        self._chain_client = ChainMiddlewareClient(
            client_session=session_manager.http_session,
            attempt_max=settings.api_retry_max_attempts,
            middleware=[
                StatsdMiddleware(session_manager.metrics_client),
                RetryAfterMiddleware(
                    session_manager.metrics_client,
                    default_delay=settings.retry_after_default,
                    jitter=settings.api_retry_jitter,
                    sleep=sleep,
                ),
                BearerTokenMiddleware(session_manager.store),
                MultipartFormMiddleware(),
            ],
        )

    async def request(
        self, method: str, path: str, body: Optional[Mapping[str, Any]] = None
    ) -> Optional[Any]:
        """
        Call ``api_root + path``.

        Args:
            method: HTTP method
            path: Path relative to the API root, may include a query string
            body: Flat mapping sent as multipart form fields

        Returns:
            The decoded JSON body, or None if access was denied

        Raises:
            Navigation: On 401, after the session was invalidated
            ApiResponseException: If the response body is not JSON
            ChainAttemptsExhausted: If a retry cap is configured and was reached
        """
        kwargs: dict[str, Any] = {}
        if body:
            kwargs[FORM_FIELDS_KWARG] = dict(body)

        async with self._chain_client.request(
            method, join_root(self._api_root, path), **kwargs
        ) as (client_response, chain_response):
            status = chain_response.status

        if status == 401:
            logger.info(f"{method} {path} rejected the session")
            await self._session_manager.invalidate()

        if status == 403:
            self._session_manager.navigator.alert(f"Access to {path} denied")
            return None

        try:
            return chain_response.json_body()
        except ValueError as e:
            raise ApiResponseException.invalid_json(method, path, status) from e


ApiClientRequestKey: Final = web.RequestKey("api_client", ApiClient)
"""RequestKey for the ApiClient of the current page load"""
