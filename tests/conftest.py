"""
Shared test fixtures and configuration for gateway tests.

This module provides reusable fixtures for building provider catalogs,
connections and grants, plus in-memory rate limiting and audit stores and
an HTTP client backed by ``httpx.MockTransport``.
"""

import os
from typing import Any, Callable, Dict, Optional

import httpx
import pytest
from cryptography.fernet import Fernet

# Set test environment before importing the package
os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "DEBUG",
        "FERNET_KEY": os.environ.get("FERNET_KEY") or Fernet.generate_key().decode(),
        "INTEGRATION_REQUIRE_GRANT": "true",
    }
)

from dotenv import load_dotenv

load_dotenv()

from integration_gateway.config import Settings, get_settings, reset_settings
from integration_gateway.services.audit_logger import AuditLogger
from integration_gateway.services.audit_store import InMemoryAuditStore
from integration_gateway.services.rate_limiter import (
    InMemoryCounterStore,
    IntegrationRateLimiter,
)
from integration_gateway.types import (
    Connection,
    Grant,
    IntegrationProviderConfig,
    ToolCallRequest,
    ToolDefinition,
)
from integration_gateway.utils.crypto import CredentialCodec
from integration_gateway.utils.http_client import IntegrationHTTPClient


@pytest.fixture(autouse=True)
def _reset_settings_singleton():
    """Every test starts from freshly loaded settings."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    """Settings loaded from the test environment."""
    return get_settings()


class FakeClock:
    """Manually advanced monotonic clock for window tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counter_store(fake_clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(max_keys=100, cleanup_interval=60, clock=fake_clock)


@pytest.fixture
def rate_limiter(counter_store, test_settings) -> IntegrationRateLimiter:
    return IntegrationRateLimiter(store=counter_store, settings=test_settings)


@pytest.fixture
def credential_codec() -> CredentialCodec:
    return CredentialCodec(primary_key_b64=Fernet.generate_key().decode())


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit_logger(audit_store, test_settings) -> AuditLogger:
    return AuditLogger(audit_store, settings=test_settings)


# ===== Catalog builders =====


def make_tool(**overrides: Any) -> ToolDefinition:
    """Build a ``list_repos`` style HTTP tool, overriding any field."""
    data: Dict[str, Any] = {
        "id": "list_repos",
        "name": "List Repositories",
        "description": "Lists repositories for the authenticated user",
        "category": "read",
        "inputSchema": {"type": "object"},
        "execution": {
            "type": "http",
            "config": {"method": "GET", "pathTemplate": "/user/repos"},
        },
    }
    data.update(overrides)
    return ToolDefinition.model_validate(data)


def make_provider(**overrides: Any) -> IntegrationProviderConfig:
    data: Dict[str, Any] = {
        "id": "github",
        "name": "GitHub",
        "baseUrl": "https://api.github.com",
        "authMethod": {"type": "bearer_token", "config": {}},
        "tools": [make_tool()],
    }
    data.update(overrides)
    return IntegrationProviderConfig.model_validate(data)


def make_connection(
    codec: Optional[CredentialCodec] = None,
    provider: Optional[IntegrationProviderConfig] = None,
    credentials: Optional[Dict[str, str]] = None,
    **overrides: Any,
) -> Connection:
    """Build a connection whose credentials are encrypted with ``codec``."""
    plain = {"token": "ghp_testtoken123"} if credentials is None else credentials
    encrypted = codec.encrypt_credentials(plain) if codec is not None else plain
    data: Dict[str, Any] = {
        "id": "conn-123",
        "provider_id": "github",
        "name": "My GitHub",
        "status": "active",
        "credentials": encrypted,
        "provider": provider or make_provider(),
    }
    data.update(overrides)
    return Connection.model_validate(data)


def make_grant(**overrides: Any) -> Grant:
    data: Dict[str, Any] = {
        "id": "grant-123",
        "agent_id": "agent-1",
        "connection_id": "conn-123",
        "allowed_tools": None,
        "denied_tools": None,
        "read_only": False,
    }
    data.update(overrides)
    return Grant.model_validate(data)


def make_request(**overrides: Any) -> ToolCallRequest:
    data: Dict[str, Any] = {
        "user_id": "user-1",
        "agent_id": "agent-1",
        "drive_id": "drive-1",
        "connection_id": "conn-123",
        "tool_name": "list_repos",
        "input": {},
        "grant": make_grant(),
    }
    data.update(overrides)
    return ToolCallRequest.model_validate(data)


@pytest.fixture
def make_http_client(test_settings) -> Callable[..., IntegrationHTTPClient]:
    """
    Factory for HTTP clients served by a handler function.

    Usage:
        client = make_http_client(lambda request: httpx.Response(200, json={}))
    """

    def _make(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any):
        return IntegrationHTTPClient(
            transport=httpx.MockTransport(handler), settings=test_settings, **kwargs
        )

    return _make
