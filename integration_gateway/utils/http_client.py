"""
Outbound HTTP execution for integration tool calls.

This module provides the hardened HTTP client used by the execution saga and
the retry episode wrapped around it. One episode is one logical tool call:
every attempt shares the same per-attempt timeout, and the caller only sees
the final outcome.

Key features:
- Connection pooling, no redirect following and a response size cap
- JSON decoding with malformed-body detection
- Fixed-backoff retries with tenacity for transport errors and retryable statuses
- Failure classification into http / timeout / network
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ..config import Settings, get_settings
from ..types import ErrorType, HttpRequest, HttpResponse, RetryConfig
from .logging import get_logger

logger = get_logger(__name__)


class MalformedResponseError(Exception):
    """Raised when a response body cannot be accepted (bad JSON, too large)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RetryableStatusError(Exception):
    """Internal signal that a response status should be retried."""

    def __init__(self, response: HttpResponse):
        super().__init__(f"HTTP {response.status}")
        self.response = response


@dataclass
class HttpExecutionOutcome:
    """Final result of one retry episode."""

    success: bool
    response: Optional[HttpResponse] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    attempts: int = 0

    @property
    def status(self) -> Optional[int]:
        return self.response.status if self.response is not None else None


class IntegrationHTTPClient:
    """
    HTTP client for integration calls.

    Wraps a single pooled ``httpx.AsyncClient``. Timeouts are supplied per
    call because each tool declares its own.
    """

    def __init__(
        self,
        max_response_bytes: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the client.

        Args:
            max_response_bytes: Maximum accepted body size
            transport: Custom transport (``httpx.MockTransport`` in tests)
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.max_response_bytes = (
            max_response_bytes or self.settings.http_max_response_bytes
        )

        # Connection pool limits for resource management
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0,
        )

        self.client = httpx.AsyncClient(
            timeout=self.settings.http_default_timeout_ms / 1000.0,
            limits=limits,
            follow_redirects=False,
            transport=transport,
        )

        logger.debug(
            "Integration HTTP client initialized",
            max_response_bytes=self.max_response_bytes,
        )

    async def close(self):
        """Close the HTTP client and clean up resources."""
        await self.client.aclose()
        logger.debug("Integration HTTP client closed")

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    @staticmethod
    def _multipart_files(parts: Dict[str, Any]) -> Dict[str, Tuple[Any, Any]]:
        """Encode every part as multipart; plain values become filename-less fields."""
        files: Dict[str, Tuple[Any, Any]] = {}
        for name, value in parts.items():
            if isinstance(value, tuple):
                files[name] = value
            elif isinstance(value, bytes):
                files[name] = (name, value)
            elif isinstance(value, bool):
                files[name] = (None, "true" if value else "false")
            elif isinstance(value, (dict, list)):
                files[name] = (None, json.dumps(value, separators=(",", ":")))
            else:
                files[name] = (None, "" if value is None else str(value))
        return files

    async def send(self, request: HttpRequest, timeout_seconds: float) -> HttpResponse:
        """
        Perform one attempt.

        Returns:
            HttpResponse for any status code

        Raises:
            httpx.TimeoutException: The attempt timed out
            httpx.TransportError: Connection-level failure
            MalformedResponseError: Oversized body or undecodable JSON
        """
        kwargs: Dict[str, Any] = {}
        if request.multipart is not None:
            kwargs["files"] = self._multipart_files(request.multipart)
        elif request.body is not None:
            kwargs["content"] = request.body.encode("utf-8")

        async with self.client.stream(
            request.method,
            request.url,
            headers=request.headers,
            timeout=timeout_seconds,
            **kwargs,
        ) as response:
            chunks = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > self.max_response_bytes:
                    raise MalformedResponseError(
                        f"Response body exceeds {self.max_response_bytes} bytes",
                        status=response.status_code,
                    )
                chunks.append(chunk)
            raw = b"".join(chunks)

            return HttpResponse(
                status=response.status_code,
                headers=dict(response.headers),
                body=self._decode_body(response, raw),
            )

    @staticmethod
    def _decode_body(response: httpx.Response, raw: bytes) -> Any:
        if not raw:
            return None

        content_type = response.headers.get("content-type", "").lower()
        if "json" in content_type:
            try:
                return json.loads(raw)
            except ValueError as e:
                raise MalformedResponseError(
                    f"Malformed JSON response: {e}", status=response.status_code
                ) from e

        return raw.decode(response.encoding or "utf-8", errors="replace")


def _describe_failure(response: HttpResponse) -> str:
    """Short error text for a non-2xx response, including the provider's message."""
    message = None
    body = response.body
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            if isinstance(body.get(key), str):
                message = body[key]
                break
    elif isinstance(body, str) and body.strip():
        message = body.strip()

    if message:
        return f"HTTP {response.status}: {message[:200]}"
    return f"HTTP {response.status}"


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying integration HTTP request",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
        error_type=type(exc).__name__ if exc else None,
    )


async def execute_http_request(
    client: IntegrationHTTPClient,
    request: HttpRequest,
    *,
    timeout_seconds: float,
    retry: Optional[RetryConfig] = None,
) -> HttpExecutionOutcome:
    """
    Run one retry episode and classify its final outcome.

    Transport errors and statuses listed in ``retry.retryable_statuses`` are
    retried up to ``retry.max_attempts`` with a fixed ``backoff_ms`` pause.
    Other non-2xx statuses fail immediately.
    """
    retry = retry or RetryConfig()
    retryable_statuses = set(retry.retryable_statuses)
    attempts = 0

    async def _attempt() -> HttpResponse:
        nonlocal attempts
        attempts += 1
        response = await client.send(request, timeout_seconds)
        if not response.is_success and response.status in retryable_statuses:
            raise RetryableStatusError(response)
        return response

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retry.max_attempts),
        wait=wait_fixed(retry.backoff_ms / 1000.0),
        retry=retry_if_exception_type((httpx.TransportError, RetryableStatusError)),
        before_sleep=_log_retry,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                response = await _attempt()
    except RetryableStatusError as e:
        response = e.response
    except httpx.TimeoutException as e:
        logger.warning(
            "Integration HTTP request timed out",
            method=request.method,
            attempts=attempts,
            timeout_seconds=timeout_seconds,
        )
        return HttpExecutionOutcome(
            success=False,
            error=f"Request timed out after {timeout_seconds:g}s ({type(e).__name__})",
            error_type=ErrorType.TIMEOUT,
            attempts=attempts,
        )
    except httpx.TransportError as e:
        logger.warning(
            "Integration HTTP request failed",
            method=request.method,
            attempts=attempts,
            error=str(e),
            error_type=type(e).__name__,
        )
        return HttpExecutionOutcome(
            success=False,
            error=f"Network error: {e or type(e).__name__}",
            error_type=ErrorType.NETWORK,
            attempts=attempts,
        )
    except MalformedResponseError as e:
        logger.warning(
            "Integration HTTP response rejected",
            method=request.method,
            status_code=e.status,
            error=str(e),
        )
        return HttpExecutionOutcome(
            success=False,
            response=HttpResponse(status=e.status) if e.status is not None else None,
            error=str(e),
            error_type=ErrorType.HTTP,
            attempts=attempts,
        )

    if not response.is_success:
        logger.info(
            "Integration HTTP request returned error status",
            method=request.method,
            status_code=response.status,
            attempts=attempts,
        )
        return HttpExecutionOutcome(
            success=False,
            response=response,
            error=_describe_failure(response),
            error_type=ErrorType.HTTP,
            attempts=attempts,
        )

    return HttpExecutionOutcome(success=True, response=response, attempts=attempts)
