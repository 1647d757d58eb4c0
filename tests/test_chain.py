from unittest.mock import AsyncMock, Mock, patch

import pytest
from aiohttp import MultipartWriter
from multidict import CIMultiDict, CIMultiDictProxy

from net.ibremote.api.chain import (
    FORM_FIELDS_KWARG,
    BearerTokenMiddleware,
    ChainAttemptsExhausted,
    ChainMiddlewareClient,
    ChainMiddlewareContext,
    ChainRequest,
    ChainResponse,
    MultipartFormMiddleware,
    RetryAfterMiddleware,
    StatsdMiddleware,
    parse_retry_after,
)
from net.ibremote.auth.store import ACCESS_TOKEN_KEY, MemorySessionStore


def chain_response(status=200, headers=None, body=None) -> ChainResponse:
    return ChainResponse(
        status=status,
        headers=CIMultiDictProxy(CIMultiDict(headers or {})),
        body=body,
    )


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2", 2),
        (" 7", 7),
        ("2.5", 2),
        ("0", 0),
        (None, 5),
        ("", 5),
        ("soon", 5),
        ("Wed, 21 Oct 2015 07:28:00 GMT", 5),
    ],
)
def test_parse_retry_after(value, expected):
    assert parse_retry_after(value, 5) == expected


class TestChainResponse:
    def test_json_body_passes_decoded_values_through(self):
        assert chain_response(body={"a": 1}).json_body() == {"a": 1}
        assert chain_response(body=[1, 2]).json_body() == [1, 2]
        assert chain_response(body=None).json_body() is None

    def test_json_body_decodes_text(self):
        assert chain_response(body='{"ok": true}').json_body() == {"ok": True}
        assert chain_response(body=b'{"ok": true}').json_body() == {"ok": True}

    def test_json_body_rejects_non_json(self):
        with pytest.raises(ValueError):
            chain_response(body="<html></html>").json_body()

    def test_copied_request_does_not_share_headers(self):
        request = ChainRequest(
            method="GET", url="http://x", headers={"a": "1"}, kwargs={"b": 2}
        )
        copy = ChainRequest.from_chain_request(request)
        copy.headers["a"] = "2"
        copy.kwargs["b"] = 3
        assert request.headers == {"a": "1"}
        assert request.kwargs == {"b": 2}


class TestRetryAfterMiddleware:
    @pytest.mark.asyncio
    async def test_passes_through_non_429(self):
        sleep = AsyncMock()
        client_response = Mock()
        next_call = AsyncMock(return_value=(client_response, chain_response(200)))
        middleware = RetryAfterMiddleware(Mock(), sleep=sleep)

        response = await middleware.handle(next_call, ChainRequest("GET", "http://x"))

        assert len(response) == 2
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_waits_retry_after_and_asks_for_retry(self):
        sleep = AsyncMock()
        metrics_client = Mock()
        next_call = AsyncMock(
            return_value=(Mock(), chain_response(429, {"Retry-After": "2"}))
        )
        middleware = RetryAfterMiddleware(metrics_client, sleep=sleep)
        request = ChainRequest("GET", "http://x", headers={"X": "1"})

        response = await middleware.handle(next_call, request)

        assert len(response) == 3
        assert response[2] is not request
        assert response[2].headers == {"X": "1"}
        sleep.assert_awaited_once_with(2)
        metrics_client.increment.assert_called_once_with(
            "ibremote.client.retry_after", 1, tag_dict={"method": "GET"}
        )

    @pytest.mark.asyncio
    async def test_default_delay_without_header(self):
        sleep = AsyncMock()
        next_call = AsyncMock(return_value=(Mock(), chain_response(429)))
        middleware = RetryAfterMiddleware(Mock(), default_delay=5, sleep=sleep)

        await middleware.handle(next_call, ChainRequest("GET", "http://x"))

        sleep.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_jitter_is_added(self):
        sleep = AsyncMock()
        next_call = AsyncMock(
            return_value=(Mock(), chain_response(429, {"Retry-After": "2"}))
        )
        middleware = RetryAfterMiddleware(Mock(), jitter=1.0, sleep=sleep)

        with patch("net.ibremote.api.chain.random.uniform", return_value=0.25) as uniform:
            await middleware.handle(next_call, ChainRequest("GET", "http://x"))

        uniform.assert_called_once_with(0, 1.0)
        sleep.assert_awaited_once_with(2.25)


class TestBearerTokenMiddleware:
    @pytest.mark.asyncio
    async def test_adds_authorization_header(self):
        store = MemorySessionStore({ACCESS_TOKEN_KEY: "T1"})
        next_call = AsyncMock(return_value=(Mock(), chain_response()))
        request = ChainRequest("GET", "http://x", headers={"Accept": "application/json"})

        await BearerTokenMiddleware(store).handle(next_call, request)

        sent = next_call.await_args.args[0]
        assert sent.headers == {
            "Accept": "application/json",
            "Authorization": "Bearer T1",
        }
        assert request.headers == {"Accept": "application/json"}

    @pytest.mark.asyncio
    async def test_no_token_no_header(self):
        next_call = AsyncMock(return_value=(Mock(), chain_response()))
        request = ChainRequest("GET", "http://x", headers={})

        await BearerTokenMiddleware(MemorySessionStore()).handle(next_call, request)

        sent = next_call.await_args.args[0]
        assert "Authorization" not in (sent.headers or {})


class TestMultipartFormMiddleware:
    @pytest.mark.asyncio
    async def test_builds_multipart_body(self):
        next_call = AsyncMock(return_value=(Mock(), chain_response()))
        request = ChainRequest(
            "POST",
            "http://x",
            kwargs={FORM_FIELDS_KWARG: {"data": '{"key": "up"}'}},
        )

        await MultipartFormMiddleware().handle(next_call, request)

        sent = next_call.await_args.args[0]
        assert FORM_FIELDS_KWARG not in sent.kwargs
        writer = sent.kwargs["data"]
        assert isinstance(writer, MultipartWriter)
        assert writer.headers["Content-Type"].startswith("multipart/form-data")
        # The original request keeps its fields for a retry.
        assert FORM_FIELDS_KWARG in request.kwargs

    @pytest.mark.asyncio
    async def test_new_writer_per_attempt(self):
        next_call = AsyncMock(return_value=(Mock(), chain_response()))
        request = ChainRequest(
            "POST", "http://x", kwargs={FORM_FIELDS_KWARG: {"a": "1"}}
        )
        middleware = MultipartFormMiddleware()

        await middleware.handle(next_call, request)
        await middleware.handle(next_call, request)

        first = next_call.await_args_list[0].args[0].kwargs["data"]
        second = next_call.await_args_list[1].args[0].kwargs["data"]
        assert first is not second

    @pytest.mark.asyncio
    async def test_requests_without_fields_untouched(self):
        next_call = AsyncMock(return_value=(Mock(), chain_response()))
        request = ChainRequest("GET", "http://x", kwargs={})

        await MultipartFormMiddleware().handle(next_call, request)

        assert next_call.await_args.args[0] is request


class TestStatsdMiddleware:
    @pytest.mark.asyncio
    async def test_records_count_and_time(self):
        metrics_client = Mock()
        next_call = AsyncMock(return_value=(Mock(), chain_response(201)))

        await StatsdMiddleware(metrics_client).handle(
            next_call, ChainRequest("POST", "http://x")
        )

        metrics_client.increment.assert_called_once_with(
            "ibremote.client.request.count",
            1,
            tag_dict={"method": "POST", "status": 201},
        )
        assert metrics_client.timer.call_args.args[0] == "ibremote.client.request.time"


class TestChainMiddlewareContext:
    @pytest.mark.asyncio
    async def test_retries_until_final_response(self):
        request = ChainRequest("GET", "http://x")
        final = (Mock(), chain_response(200))
        chain_callback = AsyncMock(
            side_effect=[
                (Mock(), chain_response(429), request),
                (Mock(), chain_response(429), request),
                final,
            ]
        )
        context = ChainMiddlewareContext(
            chain_callback, request, Mock(), attempt_max=None
        )

        response = await context._do_request()

        assert response == final
        assert chain_callback.await_count == 3

    @pytest.mark.asyncio
    async def test_attempt_cap(self):
        request = ChainRequest("GET", "http://x")
        chain_callback = AsyncMock(
            return_value=(Mock(), chain_response(429), request)
        )
        context = ChainMiddlewareContext(chain_callback, request, Mock(), attempt_max=2)

        with pytest.raises(ChainAttemptsExhausted) as exc_info:
            await context._do_request()

        assert exc_info.value.attempts == 2
        assert chain_callback.await_count == 2


class TestChainMiddlewareClient:
    def test_session_is_required(self):
        with pytest.raises(TypeError):
            ChainMiddlewareClient()

    @pytest.mark.asyncio
    async def test_runs_over_shared_session(self, http_session, upstream):
        metrics_client = Mock()
        chain_client = ChainMiddlewareClient(
            client_session=http_session,
            middleware=[StatsdMiddleware(metrics_client)],
        )

        async with chain_client.request("GET", upstream.url("api/v1/device/list")) as (
            client_response,
            response,
        ):
            assert response.status == 200
            assert response.json_body() == {}

        assert client_response.closed
        assert not http_session.closed
        metrics_client.increment.assert_called_once_with(
            "ibremote.client.request.count",
            1,
            tag_dict={"method": "GET", "status": 200},
        )
