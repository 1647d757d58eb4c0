"""
Middleware Chain HTTP Client

An aiohttp client where every request passes through a chain of middleware before the
final network call. A middleware may rewrite the request, inspect the response, or ask
for the request to be sent again by returning a third element, the request to retry.

Middleware used by this package:
- StatsdMiddleware: request count and timing metrics
- RetryAfterMiddleware: waits out 429 responses and retries
- BearerTokenMiddleware: attaches the stored access token
- MultipartFormMiddleware: encodes flat form fields as multipart/form-data
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import json
import logging
import random
import re
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Sequence,
    Tuple,
)
from aiohttp import ClientResponse, ClientSession, MultipartWriter, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy

from net.ibremote.app.metrics import MetricsClient
from net.ibremote.auth.store import ACCESS_TOKEN_KEY, SessionStore

RequestFunc = Callable[..., Awaitable[ClientResponse]]
SleepFunc = Callable[[float], Awaitable[Any]]

logger = logging.getLogger(__name__)

FORM_FIELDS_KWARG = "form_fields"
"""Request keyword holding a flat mapping of multipart form fields"""


class ChainAttemptsExhausted(Exception):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"error-chain-1000 Max attempts reached ({attempts})")
        self.attempts = attempts


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=dict(request.kwargs) if request.kwargs is not None else None,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | list[Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            text = await response.text()
            try:
                decoded = json.loads(text)
            except ValueError:
                # Declared JSON but isn't; json_body() reports it to the caller.
                return ChainResponse(status=status, headers=headers, body=text)
            if decoded is None or isinstance(decoded, (dict, list)):
                return ChainResponse(status=status, headers=headers, body=decoded)
            return ChainResponse(status=status, headers=headers, body=text)
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    def json_body(self) -> Any:
        """
        The body decoded as JSON, whatever content type the server declared.

        Raises:
            ValueError: If the body is not valid JSON
        """
        if self.body is None or isinstance(self.body, (dict, list)):
            return self.body
        return json.loads(self.body)


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        status = 0
        try:
            response = await next(request)
            status = response[1].status
            return response
        finally:
            self._metrics_client.timer(
                "ibremote.client.request.time",
                time() - start_time,
                tag_dict={"method": request.method},
            )
            self._metrics_client.increment(
                "ibremote.client.request.count",
                1,
                tag_dict={"method": request.method, "status": status},
            )


def parse_retry_after(value: Optional[str], default: int) -> int:
    """
    Parse a Retry-After header given in seconds.

    Leading digits are used, so "2" and "2.5" both mean two seconds. Anything else,
    including the HTTP-date form, falls back to ``default``.
    """
    if value is None:
        return default
    match = re.match(r"\s*(\d+)", value)
    if match is None:
        return default
    return int(match.group(1))


class RetryAfterMiddleware(RequestMiddlewareBase):
    """
    Retries rate limited requests.

    On a 429 response the middleware sleeps for the Retry-After delay (plus optional
    jitter) and returns a copy of the request to be sent again. How many times that may
    happen is bounded by the chain context, not here.
    """

    def __init__(
        self,
        metrics_client: MetricsClient,
        default_delay: int = 5,
        jitter: float = 0.0,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._default_delay = default_delay
        self._jitter = jitter
        self._sleep = sleep

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        response = await next(request)
        client_response = response[0]
        chain_response = response[1]

        if chain_response.status != 429:
            return response

        delay: float = parse_retry_after(
            chain_response.headers.get(hdrs.RETRY_AFTER), self._default_delay
        )
        if self._jitter > 0:
            delay += random.uniform(0, self._jitter)

        logger.info(f"Rate limited on {request.method} {request.url}, retrying in {delay}s")
        self._metrics_client.increment(
            "ibremote.client.retry_after", 1, tag_dict={"method": request.method}
        )
        await self._sleep(delay)

        return client_response, chain_response, ChainRequest.from_chain_request(request)


class BearerTokenMiddleware(RequestMiddlewareBase):
    """Attaches the stored access token, read fresh on every attempt."""

    def __init__(self, store: SessionStore) -> None:
        super().__init__()
        self._store = store

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        access_token = await self._store.get(ACCESS_TOKEN_KEY)
        if access_token:
            headers = dict(request.headers or {})
            headers[hdrs.AUTHORIZATION] = f"Bearer {access_token}"
            request = ChainRequest(
                method=request.method,
                url=request.url,
                headers=headers,
                trace_request_ctx=request.trace_request_ctx,
                kwargs=request.kwargs,
            )
        return await next(request)


class MultipartFormMiddleware(RequestMiddlewareBase):
    """
    Encodes ``form_fields`` as a multipart/form-data body.

    A multipart body can only be sent once, so it is built again for every attempt
    from the flat field mapping carried in the request.
    """

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.kwargs is None or FORM_FIELDS_KWARG not in request.kwargs:
            return await next(request)

        kwargs = dict(request.kwargs)
        fields: Dict[str, Any] = kwargs.pop(FORM_FIELDS_KWARG) or {}

        writer = MultipartWriter("form-data")
        for name, value in fields.items():
            part = writer.append(str(value))
            part.set_content_disposition("form-data", name=name)
        kwargs["data"] = writer

        return await next(
            ChainRequest(
                method=request.method,
                url=request.url,
                headers=request.headers,
                trace_request_ctx=request.trace_request_ctx,
                kwargs=kwargs,
            )
        )


class EndOfLineChainMiddleware:
    def __init__(self, request_func: RequestFunc, logger: logging.Logger) -> None:
        super().__init__()
        self._request_func = request_func
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        self._logger.debug(f"Making request: {request.method} {request.url}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx={
                **(request.trace_request_ctx or {}),
            },
            **(request.kwargs or {}),
        )

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: logging.Logger,
        attempt_max: Optional[int] = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            # attempt_max of None retries for as long as a middleware asks for it.
            if self._attempt_max is not None and current_attempt > self._attempt_max:
                raise ChainAttemptsExhausted(self._attempt_max)

            self._logger.debug(f"Attempt {current_attempt} of {self._attempt_max or 'unbounded'}")

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            chain_request = new_request

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """
    Sends requests through ``middleware`` over a shared ClientSession.

    The session is owned by the application; the client never closes it. ``attempt_max``
    bounds how many times a request may be sent when middleware asks for retries, None
    meaning no bound.
    """

    def __init__(
        self,
        client_session: ClientSession,
        logger: logging.Logger | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        attempt_max: Optional[int] = 3,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._logger: logging.Logger = logger or logging.getLogger("aiohttp_chain")
        self._attempt_max = attempt_max

    def request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(method=method, url=url, **kwargs)

    def post(
        self,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_POST, url=url, **kwargs)

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            attempt_max=self._attempt_max,
        )
