"""
Tool execution saga.

Turns a ToolCallRequest into an authorized, authenticated, rate-limited HTTP
call. Each stage can end the run; every run that finds its connection
produces exactly one audit entry, whatever the outcome.

Stages:
1. Load the connection (missing connection: validation error, no audit)
2. Connection must be active
3. Resolve the tool; only HTTP tools are executable
4. Zero-trust authorization against the grant
5. Rate limiting (tool key, plus the provider key when the provider has a limit)
6. Decrypt credentials
7. Build the request against the effective base URL
8. Layer connection headers and auth onto the request
9. Execute with the tool's timeout and retry policy
10. Shape the output
11. Audit success
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import Settings, get_settings
from ..integrations.auth import AuthResult, apply_auth, auth_body_params, requires_credentials
from ..integrations.output_transform import transform_output
from ..integrations.request_builder import (
    RequestBuildError,
    append_query_params,
    build_http_request,
    merge_headers,
)
from ..integrations.validator import ToolAccessDecision, is_tool_allowed
from ..types import (
    AuditLogEntry,
    Connection,
    ErrorType,
    Grant,
    HttpExecution,
    HttpRequest,
    ToolCallRequest,
    ToolCallResult,
)
from ..utils.crypto import CredentialCodec, CredentialCodecError
from ..utils.http_client import (
    HttpExecutionOutcome,
    IntegrationHTTPClient,
    execute_http_request,
)
from ..utils.logging import (
    FALLBACK_AUDIT_LOGGER,
    bind_call_context,
    clear_call_context,
    get_logger,
)
from .audit_logger import AuditLogger, build_input_summary
from .rate_limiter import IntegrationRateLimiter, resolve_effective_rate_limit

logger = get_logger(__name__)
fallback_logger = get_logger(FALLBACK_AUDIT_LOGGER)

# Stable audit error codes
INTEGRATION_INACTIVE = "INTEGRATION_INACTIVE"
TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
UNSUPPORTED_EXECUTION = "UNSUPPORTED_EXECUTION"
TOOL_NOT_ALLOWED = "TOOL_NOT_ALLOWED"
RATE_LIMITED = "RATE_LIMITED"
CREDENTIAL_ERROR = "CREDENTIAL_ERROR"
VALIDATION_ERROR = "VALIDATION_ERROR"
HTTP_ERROR = "HTTP_ERROR"
TIMEOUT = "TIMEOUT"
NETWORK_ERROR = "NETWORK_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"

OUTCOME_AUDIT_CODES = {
    ErrorType.HTTP: HTTP_ERROR,
    ErrorType.TIMEOUT: TIMEOUT,
    ErrorType.NETWORK: NETWORK_ERROR,
}

MAX_AUDIT_ERROR_LENGTH = 1000

LoadConnection = Callable[[str], Awaitable[Optional[Connection]]]
LoadGrant = Callable[[str, str], Awaitable[Optional[Grant]]]


@dataclass
class ExecuteToolDependencies:
    """
    Everything the saga talks to.

    The pure stages default to the real implementations and can be replaced
    individually in tests.
    """

    load_connection: LoadConnection
    credential_codec: CredentialCodec
    rate_limiter: IntegrationRateLimiter
    http_client: IntegrationHTTPClient
    audit_logger: AuditLogger
    load_grant: Optional[LoadGrant] = None
    is_tool_allowed: Callable[..., ToolAccessDecision] = is_tool_allowed
    build_http_request: Callable[..., HttpRequest] = build_http_request
    apply_auth: Callable[..., AuthResult] = apply_auth
    transform_output: Callable[..., Any] = transform_output
    execute_http: Callable[..., Awaitable[HttpExecutionOutcome]] = execute_http_request
    settings: Optional[Settings] = field(default=None)


@dataclass
class _SagaRun:
    """Per-invocation state shared by the stages."""

    request: ToolCallRequest
    started_at: float
    audited: bool = False

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class ExecutionSaga:
    """
    Orchestrates one tool call from request to audited result.

    Usage:
        saga = ExecutionSaga(deps)
        result = await saga.execute(request)
    """

    def __init__(self, deps: ExecuteToolDependencies):
        self.deps = deps
        self.settings = deps.settings or get_settings()

    async def execute(self, request: ToolCallRequest) -> ToolCallResult:
        run = _SagaRun(request=request, started_at=time.monotonic())
        bind_call_context(
            connection_id=request.connection_id,
            agent_id=request.agent_id,
            tool_name=request.tool_name,
        )
        try:
            result = await self._execute(run)
            logger.info(
                "Tool call finished",
                success=result.success,
                error_type=result.error_type.value if result.error_type else None,
                status_code=result.status_code,
                duration_ms=run.elapsed_ms(),
            )
            return result
        finally:
            clear_call_context()

    async def _execute(self, run: _SagaRun) -> ToolCallResult:
        request = run.request

        try:
            connection = await self.deps.load_connection(request.connection_id)
        except Exception as e:
            logger.error(
                "Failed to load connection",
                error=str(e),
                error_type=type(e).__name__,
            )
            return ToolCallResult.fail("Failed to load connection", ErrorType.INTERNAL)

        if connection is None:
            return ToolCallResult.fail("Connection not found", ErrorType.VALIDATION)

        try:
            return await self._run_stages(run, connection)
        except asyncio.CancelledError:
            if not run.audited:
                await asyncio.shield(
                    self._audit(
                        run,
                        success=False,
                        error_code=TIMEOUT,
                        error_message="Tool call cancelled before completion",
                    )
                )
            raise
        except Exception as e:
            logger.exception(
                "Unexpected error during tool execution",
                error=str(e),
                error_type=type(e).__name__,
            )
            if not run.audited:
                await self._audit(
                    run,
                    success=False,
                    error_code=INTERNAL_ERROR,
                    error_message=f"{type(e).__name__}: {e}",
                )
            return ToolCallResult.fail(
                "Internal error while executing tool", ErrorType.INTERNAL
            )

    async def _fail(
        self,
        run: _SagaRun,
        error_code: str,
        error: str,
        error_type: ErrorType,
        *,
        retry_after: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> ToolCallResult:
        await self._audit(
            run,
            success=False,
            error_code=error_code,
            error_message=error,
            response_code=status_code,
        )
        return ToolCallResult.fail(
            error, error_type, retry_after=retry_after, status_code=status_code
        )

    async def _resolve_grant(self, request: ToolCallRequest) -> Optional[Grant]:
        if request.grant is not None:
            return request.grant
        if self.deps.load_grant is None:
            return None
        return await self.deps.load_grant(request.agent_id, request.connection_id)

    async def _run_stages(self, run: _SagaRun, connection: Connection) -> ToolCallResult:
        request = run.request
        provider = connection.provider

        if not connection.is_active:
            return await self._fail(
                run,
                INTEGRATION_INACTIVE,
                f"Integration is {connection.status.value}",
                ErrorType.VALIDATION,
            )

        tool = provider.find_tool(request.tool_name)
        if tool is None:
            return await self._fail(
                run,
                TOOL_NOT_FOUND,
                f"Tool '{request.tool_name}' not found",
                ErrorType.VALIDATION,
            )
        if not isinstance(tool.execution, HttpExecution):
            return await self._fail(
                run,
                UNSUPPORTED_EXECUTION,
                f"Tool '{request.tool_name}' uses unsupported execution type "
                f"'{tool.execution.type}'",
                ErrorType.VALIDATION,
            )

        grant = await self._resolve_grant(request)
        if grant is None and self.settings.integration_require_grant:
            return await self._fail(
                run,
                TOOL_NOT_ALLOWED,
                "No grant allows this agent to use the connection",
                ErrorType.VALIDATION,
            )

        decision = self.deps.is_tool_allowed(
            request.tool_name,
            provider_tools=provider.tools,
            grant_allowed_tools=grant.allowed_tools if grant else None,
            grant_denied_tools=grant.denied_tools if grant else None,
            grant_read_only=grant.read_only if grant else False,
        )
        if not decision.allowed:
            return await self._fail(
                run,
                TOOL_NOT_ALLOWED,
                decision.reason or "Tool not allowed",
                ErrorType.VALIDATION,
            )

        effective_limit = resolve_effective_rate_limit(
            provider, connection, grant, tool, settings=self.settings
        )
        rate = await self.deps.rate_limiter.check_integration_rate_limits(
            request.connection_id,
            request.agent_id,
            request.tool_name,
            effective_limit,
            provider.rate_limit.requests_per_minute if provider.rate_limit else None,
        )
        if not rate.allowed:
            return await self._fail(
                run,
                RATE_LIMITED,
                "Rate limit exceeded",
                ErrorType.RATE_LIMIT,
                retry_after=rate.retry_after,
            )

        credentials: Dict[str, str] = {}
        if requires_credentials(provider.auth_method) and connection.credentials:
            try:
                credentials = self.deps.credential_codec.decrypt_credentials(
                    connection.credentials
                )
            except CredentialCodecError as e:
                logger.error("Credential decryption failed", error=str(e))
                return await self._fail(
                    run,
                    CREDENTIAL_ERROR,
                    "Failed to decrypt connection credentials",
                    ErrorType.INTERNAL,
                )

        base_url = connection.base_url_override or provider.base_url
        body_params = auth_body_params(credentials, provider.auth_method)
        build_kwargs = {"body_params": body_params} if body_params else {}
        try:
            http_request = self.deps.build_http_request(
                tool.execution.config, request.input, base_url, **build_kwargs
            )
        except RequestBuildError as e:
            return await self._fail(run, VALIDATION_ERROR, str(e), ErrorType.VALIDATION)

        auth = self.deps.apply_auth(credentials, provider.auth_method)
        if connection.config_overrides is not None:
            http_request = merge_headers(http_request, connection.config_overrides.headers)
        http_request = merge_headers(http_request, auth.headers)
        if auth.query_params:
            http_request = http_request.model_copy(
                update={"url": append_query_params(http_request.url, auth.query_params)}
            )

        timeout_ms = min(
            tool.execution.config.timeout_ms or self.settings.http_default_timeout_ms,
            self.settings.http_max_timeout_ms,
        )
        outcome = await self.deps.execute_http(
            self.deps.http_client,
            http_request,
            timeout_seconds=timeout_ms / 1000.0,
            retry=tool.retry,
        )

        if not outcome.success:
            error_type = outcome.error_type or ErrorType.HTTP
            return await self._fail(
                run,
                OUTCOME_AUDIT_CODES.get(error_type, HTTP_ERROR),
                outcome.error or "HTTP request failed",
                error_type,
                status_code=outcome.status,
            )

        body = outcome.response.body
        data = (
            self.deps.transform_output(body, tool.output_transform)
            if tool.output_transform is not None
            else body
        )

        await self._audit(run, success=True, response_code=outcome.status)
        return ToolCallResult.ok(data, status_code=outcome.status)

    async def _audit(
        self,
        run: _SagaRun,
        *,
        success: bool,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        response_code: Optional[int] = None,
    ) -> None:
        """Write the run's single audit entry; failures go to the fallback log."""
        run.audited = True
        request = run.request

        entry = AuditLogEntry(
            chain_id=self.settings.audit_chain_id,
            drive_id=request.drive_id,
            agent_id=request.agent_id,
            user_id=request.user_id,
            connection_id=request.connection_id,
            tool_name=request.tool_name,
            input_summary=build_input_summary(
                request.input, self.settings.audit_input_summary_max_length
            ),
            success=success,
            response_code=response_code,
            error_type=error_code,
            error_message=error_message[:MAX_AUDIT_ERROR_LENGTH] if error_message else None,
            duration_ms=run.elapsed_ms(),
        )

        try:
            await self.deps.audit_logger.append_log(entry)
        except Exception as e:
            fallback_logger.error(
                "Audit log write failed",
                audit_entry=entry.model_dump(mode="json"),
                error=str(e),
                error_type=type(e).__name__,
            )


async def execute_tool_saga(
    request: ToolCallRequest, deps: ExecuteToolDependencies
) -> ToolCallResult:
    """Run one tool call through the saga."""
    return await ExecutionSaga(deps).execute(request)


def create_tool_executor(
    deps: ExecuteToolDependencies,
) -> Callable[[ToolCallRequest], Awaitable[ToolCallResult]]:
    """Bind dependencies once and return ``async (request) -> ToolCallResult``."""
    saga = ExecutionSaga(deps)
    return saga.execute
