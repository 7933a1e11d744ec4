"""
Tests for the integration HTTP client and retry episodes.

Every test is served by ``httpx.MockTransport`` so no network is touched.
"""

import json

import httpx
import pytest

from integration_gateway.types import ErrorType, HttpRequest, RetryConfig
from integration_gateway.utils.http_client import execute_http_request

NO_BACKOFF = RetryConfig(max_attempts=3, backoff_ms=0)


def get_request(**overrides) -> HttpRequest:
    data = {"url": "https://api.test/items", "method": "GET", "headers": {"Accept": "application/json"}}
    data.update(overrides)
    return HttpRequest(**data)


class CallCounter:
    """
    Handler that records every request it serves.

    Each script item is either an exception to raise or a
    ``(status, kwargs)`` pair; the last item repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        status, kwargs = step
        return httpx.Response(status, **kwargs)


class TestSend:
    @pytest.mark.asyncio
    async def test_json_response_is_decoded(self, make_http_client):
        client = make_http_client(lambda r: httpx.Response(200, json={"items": [1, 2]}))

        async with client:
            response = await client.send(get_request(), timeout_seconds=5)

        assert response.status == 200
        assert response.body == {"items": [1, 2]}
        assert response.is_success

    @pytest.mark.asyncio
    async def test_text_response_stays_text(self, make_http_client):
        client = make_http_client(lambda r: httpx.Response(200, text="plain"))

        async with client:
            response = await client.send(get_request(), timeout_seconds=5)

        assert response.body == "plain"

    @pytest.mark.asyncio
    async def test_request_is_sent_as_built(self, make_http_client):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"ok": True})

        client = make_http_client(handler)
        request = get_request(
            method="POST",
            url="https://api.test/items?x=1",
            headers={"Authorization": "Bearer abc", "Content-Type": "application/json"},
            body='{"name":"a"}',
        )

        async with client:
            response = await client.send(request, timeout_seconds=5)

        assert response.status == 201
        assert seen == {
            "method": "POST",
            "url": "https://api.test/items?x=1",
            "auth": "Bearer abc",
            "body": {"name": "a"},
        }

    @pytest.mark.asyncio
    async def test_multipart_body(self, make_http_client):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["content_type"] = request.headers["content-type"]
            seen["content"] = request.content
            return httpx.Response(200, json={})

        client = make_http_client(handler)

        async with client:
            await client.send(
                get_request(method="POST", multipart={"title": "hello", "draft": True}),
                timeout_seconds=5,
            )

        assert seen["content_type"].startswith("multipart/form-data")
        assert b'name="title"' in seen["content"]
        assert b"hello" in seen["content"]


class TestExecuteHttpRequest:
    @pytest.mark.asyncio
    async def test_success(self, make_http_client):
        client = make_http_client(lambda r: httpx.Response(200, json={"id": 1}))

        async with client:
            outcome = await execute_http_request(client, get_request(), timeout_seconds=5)

        assert outcome.success is True
        assert outcome.status == 200
        assert outcome.response.body == {"id": 1}
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_non_retryable_status_fails_immediately(self, make_http_client):
        handler = CallCounter((404, {"json": {"message": "Not Found"}}))
        client = make_http_client(handler)

        async with client:
            outcome = await execute_http_request(
                client, get_request(), timeout_seconds=5, retry=NO_BACKOFF
            )

        assert outcome.success is False
        assert outcome.error_type == ErrorType.HTTP
        assert outcome.status == 404
        assert outcome.error == "HTTP 404: Not Found"
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_retryable_status_then_success(self, make_http_client):
        handler = CallCounter(
            (503, {"text": "busy"}),
            (503, {"text": "busy"}),
            (200, {"json": {"ok": True}}),
        )
        client = make_http_client(handler)

        async with client:
            outcome = await execute_http_request(
                client, get_request(), timeout_seconds=5, retry=NO_BACKOFF
            )

        assert outcome.success is True
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_returns_last_status(self, make_http_client):
        handler = CallCounter((429, {"json": {"message": "slow down"}}))
        client = make_http_client(handler)

        async with client:
            outcome = await execute_http_request(
                client, get_request(), timeout_seconds=5, retry=NO_BACKOFF
            )

        assert outcome.success is False
        assert outcome.status == 429
        assert outcome.attempts == 3
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_default_policy_does_not_retry(self, make_http_client):
        handler = CallCounter((500, {"text": "boom"}))
        client = make_http_client(handler)

        async with client:
            outcome = await execute_http_request(client, get_request(), timeout_seconds=5)

        assert outcome.status == 500
        assert outcome.error == "HTTP 500: boom"
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self, make_http_client):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_http_client(handler)

        async with client:
            outcome = await execute_http_request(client, get_request(), timeout_seconds=2.5)

        assert outcome.success is False
        assert outcome.error_type == ErrorType.TIMEOUT
        assert "2.5s" in outcome.error
        assert outcome.response is None

    @pytest.mark.asyncio
    async def test_network_error_is_classified_and_retried(self, make_http_client):
        handler = CallCounter(httpx.ConnectError("connection refused"))
        client = make_http_client(handler)

        async with client:
            outcome = await execute_http_request(
                client, get_request(), timeout_seconds=5, retry=NO_BACKOFF
            )

        assert outcome.error_type == ErrorType.NETWORK
        assert outcome.error.startswith("Network error")
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_malformed_json(self, make_http_client):
        client = make_http_client(
            lambda r: httpx.Response(
                200, content=b"{not json", headers={"content-type": "application/json"}
            )
        )

        async with client:
            outcome = await execute_http_request(client, get_request(), timeout_seconds=5)

        assert outcome.success is False
        assert outcome.error_type == ErrorType.HTTP
        assert "Malformed JSON" in outcome.error
        assert outcome.status == 200

    @pytest.mark.asyncio
    async def test_oversized_body_rejected(self, make_http_client):
        client = make_http_client(
            lambda r: httpx.Response(200, content=b"x" * 4096), max_response_bytes=1024
        )

        async with client:
            outcome = await execute_http_request(client, get_request(), timeout_seconds=5)

        assert outcome.success is False
        assert outcome.error_type == ErrorType.HTTP
        assert "exceeds 1024 bytes" in outcome.error
