"""
Tests for the tool execution saga.

The HTTP client is backed by ``httpx.MockTransport``; the request builder,
auth builder and HTTP executor are wrapped in mocks so tests can assert
that rejected calls never reach them.
"""

import asyncio
import json
from typing import Dict, Optional
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from conftest import make_connection, make_grant, make_provider, make_request, make_tool
from integration_gateway.integrations.auth import apply_auth
from integration_gateway.integrations.request_builder import build_http_request
from integration_gateway.services.audit_logger import AuditLogger
from integration_gateway.services.audit_store import AuditStoreError, InMemoryAuditStore
from integration_gateway.services.execution_saga import (
    ExecuteToolDependencies,
    create_tool_executor,
    execute_tool_saga,
)
from integration_gateway.services.hash_chain_verifier import HashChainVerifier
from integration_gateway.types import Connection, ErrorType
from integration_gateway.utils.crypto import CredentialCodec, generate_fernet_key
from integration_gateway.utils.http_client import execute_http_request


class FailingAuditStore(InMemoryAuditStore):
    async def insert(self, entry):
        raise AuditStoreError("database unavailable")


class SagaHarness:
    """Wires real saga dependencies around a scripted HTTP handler."""

    def __init__(self, codec, rate_limiter, audit_logger, audit_store, http_client):
        self.codec = codec
        self.audit_store = audit_store
        self.connections: Dict[str, Connection] = {}
        self.grants = {}
        self.build_http_request = Mock(wraps=build_http_request)
        self.apply_auth = Mock(wraps=apply_auth)
        self.execute_http = AsyncMock(wraps=execute_http_request)
        self.deps = ExecuteToolDependencies(
            load_connection=self._load_connection,
            load_grant=self._load_grant,
            credential_codec=codec,
            rate_limiter=rate_limiter,
            http_client=http_client,
            audit_logger=audit_logger,
            build_http_request=self.build_http_request,
            apply_auth=self.apply_auth,
            execute_http=self.execute_http,
            settings=audit_logger.settings,
        )

    async def _load_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    async def _load_grant(self, agent_id: str, connection_id: str):
        return self.grants.get((agent_id, connection_id))

    def add_connection(self, **kwargs) -> Connection:
        connection = make_connection(codec=self.codec, **kwargs)
        self.connections[connection.id] = connection
        return connection

    async def audit_entries(self):
        return await self.audit_store.list_entries(self.deps.settings.audit_chain_id)

    def assert_no_outbound_work(self):
        assert self.build_http_request.call_count == 0
        assert self.apply_auth.call_count == 0
        assert self.execute_http.await_count == 0


class RecordingHandler:
    def __init__(self, status=200, body=None):
        self.status = status
        self.body = [{"name": "alpha", "private": False}] if body is None else body
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest.fixture
async def harness(credential_codec, rate_limiter, audit_logger, audit_store, make_http_client, handler):
    client = make_http_client(handler)
    yield SagaHarness(credential_codec, rate_limiter, audit_logger, audit_store, client)
    await client.close()


class TestSuccessfulCalls:
    @pytest.mark.asyncio
    async def test_full_pipeline(self, harness, handler):
        tool = make_tool(
            id="list_issues",
            execution={
                "type": "http",
                "config": {
                    "method": "GET",
                    "pathTemplate": "/repos/{owner}/{repo}/issues",
                    "queryParams": {"state": {"$param": "state", "default": "open"}},
                },
            },
            outputTransform={"mapping": {"title": "title"}, "maxItems": 1},
        )
        handler.body = [{"title": "first", "id": 1}, {"title": "second", "id": 2}]
        harness.add_connection(provider=make_provider(tools=[tool]))

        result = await execute_tool_saga(
            make_request(tool_name="list_issues", input={"owner": "octo", "repo": "hello"}),
            harness.deps,
        )

        assert result.success is True
        assert result.data == [{"title": "first"}]
        assert result.status_code == 200

        sent = handler.requests[0]
        assert str(sent.url) == "https://api.github.com/repos/octo/hello/issues?state=open"
        assert sent.headers["authorization"] == "Bearer ghp_testtoken123"

        entries = await harness.audit_entries()
        assert len(entries) == 1
        assert entries[0].success is True
        assert entries[0].response_code == 200
        assert entries[0].tool_name == "list_issues"
        assert entries[0].input_summary == "owner=octo, repo=hello"
        assert entries[0].error_type is None

    @pytest.mark.asyncio
    async def test_overrides_and_query_auth(self, harness, handler):
        provider = make_provider(
            authMethod={"type": "api_key", "config": {"placement": "query", "paramName": "key"}}
        )
        harness.add_connection(
            provider=provider,
            credentials={"apiKey": "k-1"},
            base_url_override="https://github.example.com/api/v3",
            config_overrides={"headers": {"X-Tenant": "acme"}},
        )

        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.success is True
        sent = handler.requests[0]
        assert str(sent.url) == "https://github.example.com/api/v3/user/repos?key=k-1"
        assert sent.headers["x-tenant"] == "acme"
        assert "authorization" not in sent.headers

    @pytest.mark.asyncio
    async def test_grant_loaded_when_not_supplied(self, harness):
        harness.add_connection()
        harness.grants[("agent-1", "conn-123")] = make_grant()

        result = await execute_tool_saga(make_request(grant=None), harness.deps)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_tool_timeout_is_applied(self, harness):
        tool = make_tool(
            execution={
                "type": "http",
                "config": {"pathTemplate": "/user/repos", "timeoutMs": 1500},
            }
        )
        harness.add_connection(provider=make_provider(tools=[tool]))

        await execute_tool_saga(make_request(), harness.deps)

        assert harness.execute_http.await_args.kwargs["timeout_seconds"] == 1.5

    @pytest.mark.asyncio
    async def test_create_tool_executor(self, harness):
        harness.add_connection()
        executor = create_tool_executor(harness.deps)

        first = await executor(make_request())
        second = await executor(make_request())

        assert first.success and second.success
        entries = await harness.audit_entries()
        assert len(entries) == 2

        verification = await HashChainVerifier(
            harness.audit_store, settings=harness.deps.settings
        ).verify_hash_chain()
        assert verification.is_valid is True


class TestRejectedCalls:
    @pytest.mark.asyncio
    async def test_connection_not_found_writes_no_audit(self, harness):
        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.success is False
        assert result.error_type == ErrorType.VALIDATION
        assert result.error == "Connection not found"
        assert await harness.audit_entries() == []
        harness.assert_no_outbound_work()

    @pytest.mark.asyncio
    async def test_connection_loader_failure_is_internal(self, harness):
        harness.deps.load_connection = AsyncMock(side_effect=RuntimeError("db down"))

        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.error_type == ErrorType.INTERNAL
        assert await harness.audit_entries() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["expired", "revoked", "pending", "error"])
    async def test_inactive_connection(self, harness, status):
        harness.add_connection(status=status)

        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.success is False
        assert result.error_type == ErrorType.VALIDATION
        assert result.error == f"Integration is {status}"
        harness.assert_no_outbound_work()

        entries = await harness.audit_entries()
        assert len(entries) == 1
        assert entries[0].error_type == "INTEGRATION_INACTIVE"
        assert entries[0].success is False

    @pytest.mark.asyncio
    async def test_unknown_tool(self, harness):
        harness.add_connection()

        result = await execute_tool_saga(make_request(tool_name="nope"), harness.deps)

        assert result.error == "Tool 'nope' not found"
        entries = await harness.audit_entries()
        assert entries[0].error_type == "TOOL_NOT_FOUND"
        harness.assert_no_outbound_work()

    @pytest.mark.asyncio
    async def test_unsupported_execution_type(self, harness):
        tool = make_tool(id="gql", execution={"type": "graphql", "config": {"query": "{ viewer }"}})
        harness.add_connection(provider=make_provider(tools=[tool]))

        result = await execute_tool_saga(make_request(tool_name="gql"), harness.deps)

        assert result.error_type == ErrorType.VALIDATION
        assert "graphql" in result.error
        assert (await harness.audit_entries())[0].error_type == "UNSUPPORTED_EXECUTION"
        harness.assert_no_outbound_work()

    @pytest.mark.asyncio
    async def test_denied_tool_never_reaches_http(self, harness):
        harness.add_connection()

        result = await execute_tool_saga(
            make_request(grant=make_grant(denied_tools=["list_repos"])), harness.deps
        )

        assert result.success is False
        assert result.error_type == ErrorType.VALIDATION
        harness.assert_no_outbound_work()

        entries = await harness.audit_entries()
        assert len(entries) == 1
        assert entries[0].error_type == "TOOL_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_read_only_grant_blocks_write_tool(self, harness):
        tool = make_tool(id="create_issue", category="write")
        harness.add_connection(provider=make_provider(tools=[tool]))

        result = await execute_tool_saga(
            make_request(tool_name="create_issue", grant=make_grant(read_only=True)),
            harness.deps,
        )

        assert result.success is False
        assert "read-only" in result.error
        harness.assert_no_outbound_work()

    @pytest.mark.asyncio
    async def test_missing_grant_is_denied(self, harness):
        harness.add_connection()

        result = await execute_tool_saga(make_request(grant=None), harness.deps)

        assert result.success is False
        assert result.error_type == ErrorType.VALIDATION
        assert (await harness.audit_entries())[0].error_type == "TOOL_NOT_ALLOWED"
        harness.assert_no_outbound_work()

    @pytest.mark.asyncio
    async def test_rate_limited(self, harness):
        tool = make_tool(rateLimit={"requestsPerMinute": 1})
        harness.add_connection(provider=make_provider(tools=[tool]))

        first = await execute_tool_saga(make_request(), harness.deps)
        second = await execute_tool_saga(make_request(), harness.deps)

        assert first.success is True
        assert second.success is False
        assert second.error_type == ErrorType.RATE_LIMIT
        assert 1 <= second.retry_after <= 60
        assert harness.execute_http.await_count == 1

        entries = await harness.audit_entries()
        assert [e.error_type for e in entries] == [None, "RATE_LIMITED"]

    @pytest.mark.asyncio
    async def test_provider_level_limit_spans_tools(self, harness):
        tools = [make_tool(id="list_repos"), make_tool(id="list_orgs")]
        harness.add_connection(
            provider=make_provider(tools=tools, rateLimit={"requestsPerMinute": 1})
        )

        first = await execute_tool_saga(make_request(tool_name="list_repos"), harness.deps)
        second = await execute_tool_saga(make_request(tool_name="list_orgs"), harness.deps)

        assert first.success is True
        assert second.error_type == ErrorType.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_provider_rejection_leaves_tool_window_untouched(self, harness):
        tools = [make_tool(id="list_repos"), make_tool(id="list_orgs")]
        harness.add_connection(
            provider=make_provider(tools=tools, rateLimit={"requestsPerMinute": 2})
        )
        repos = make_request(tool_name="list_repos")

        assert (await execute_tool_saga(repos, harness.deps)).success is True
        assert (await execute_tool_saga(make_request(tool_name="list_orgs"), harness.deps)).success
        rejected = await execute_tool_saga(repos, harness.deps)
        assert rejected.error_type == ErrorType.RATE_LIMIT

        await harness.deps.rate_limiter.reset_integration_rate_limit(
            repos.connection_id, repos.agent_id, None
        )
        result = await execute_tool_saga(repos, harness.deps)

        assert result.success is True
        assert harness.execute_http.await_count == 3

    @pytest.mark.asyncio
    async def test_undecryptable_credentials(self, harness):
        foreign = CredentialCodec(primary_key_b64=generate_fernet_key())
        connection = make_connection(codec=foreign)
        harness.connections[connection.id] = connection

        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.error_type == ErrorType.INTERNAL
        assert "ghp_testtoken123" not in (result.error or "")
        assert (await harness.audit_entries())[0].error_type == "CREDENTIAL_ERROR"
        assert harness.execute_http.await_count == 0

    @pytest.mark.asyncio
    async def test_missing_path_parameter(self, harness):
        tool = make_tool(
            execution={"type": "http", "config": {"pathTemplate": "/repos/{owner}/{repo}"}}
        )
        harness.add_connection(provider=make_provider(tools=[tool]))

        result = await execute_tool_saga(make_request(input={"owner": "octo"}), harness.deps)

        assert result.error_type == ErrorType.VALIDATION
        assert "repo" in result.error
        assert (await harness.audit_entries())[0].error_type == "VALIDATION_ERROR"
        assert harness.execute_http.await_count == 0


class TestExecutionFailures:
    @pytest.mark.asyncio
    async def test_http_error_status(self, harness, handler):
        handler.status = 404
        handler.body = {"message": "Not Found"}
        harness.add_connection()

        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.success is False
        assert result.error_type == ErrorType.HTTP
        assert result.status_code == 404
        assert result.error == "HTTP 404: Not Found"

        entry = (await harness.audit_entries())[0]
        assert entry.error_type == "HTTP_ERROR"
        assert entry.response_code == 404

    @pytest.mark.asyncio
    async def test_retry_episode_writes_one_entry(self, harness, make_http_client):
        statuses = iter([503, 503, 200])
        client = make_http_client(lambda r: httpx.Response(next(statuses), json={"ok": True}))
        harness.deps.http_client = client
        tool = make_tool(retry={"maxAttempts": 3, "backoffMs": 0})
        harness.add_connection(provider=make_provider(tools=[tool]))

        result = await execute_tool_saga(make_request(), harness.deps)
        await client.close()

        assert result.success is True
        assert len(await harness.audit_entries()) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, harness, make_http_client):
        def timeout_handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = make_http_client(timeout_handler)
        harness.deps.http_client = client
        harness.add_connection()

        result = await execute_tool_saga(make_request(), harness.deps)
        await client.close()

        assert result.error_type == ErrorType.TIMEOUT
        assert (await harness.audit_entries())[0].error_type == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_network_error(self, harness, make_http_client):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_http_client(refused)
        harness.deps.http_client = client
        harness.add_connection()

        result = await execute_tool_saga(make_request(), harness.deps)
        await client.close()

        assert result.error_type == ErrorType.NETWORK
        assert (await harness.audit_entries())[0].error_type == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_internal_and_audited(self, harness):
        harness.deps.transform_output = Mock(side_effect=KeyError("boom"))
        tool = make_tool(outputTransform={"extract": "items"})
        harness.add_connection(provider=make_provider(tools=[tool]))

        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.error_type == ErrorType.INTERNAL
        entries = await harness.audit_entries()
        assert len(entries) == 1
        assert entries[0].error_type == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_change_result(self, harness, test_settings):
        harness.deps.audit_logger = AuditLogger(FailingAuditStore(), settings=test_settings)
        harness.add_connection()

        result = await execute_tool_saga(make_request(), harness.deps)

        assert result.success is True
        assert result.data == [{"name": "alpha", "private": False}]

    @pytest.mark.asyncio
    async def test_cancellation_is_audited(self, harness):
        entered = asyncio.Event()

        async def hanging_execute(*args, **kwargs):
            entered.set()
            await asyncio.Event().wait()

        harness.deps.execute_http = hanging_execute
        harness.add_connection()

        task = asyncio.create_task(execute_tool_saga(make_request(), harness.deps))
        await entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        entries = await harness.audit_entries()
        assert len(entries) == 1
        assert entries[0].error_type == "TIMEOUT"
        assert entries[0].success is False


class TestAuditContent:
    @pytest.mark.asyncio
    async def test_secrets_in_input_are_redacted(self, harness):
        harness.add_connection()

        await execute_tool_saga(
            make_request(
                input={
                    "api_key": "sk-live-123",
                    "token": "ghp_plain456",
                    "private_key": "-----BEGIN KEY-----",
                    "client_secret": "cs-789",
                    "query": "x",
                }
            ),
            harness.deps,
        )

        entry = (await harness.audit_entries())[0]
        for secret in ("sk-live-123", "ghp_plain456", "BEGIN KEY", "cs-789"):
            assert secret not in entry.input_summary
        assert "token=[REDACTED]" in entry.input_summary
        assert "query=x" in entry.input_summary
        assert entry.drive_id == "drive-1"
        assert entry.user_id == "user-1"
        assert json.dumps(entry.model_dump(mode="json"))
