"""
Integration Gateway.

Executes agent tool calls against external HTTP APIs under a zero-trust
authorization model and records every call in a hash-chained audit log.

Entry points:
    execute_tool_saga(request, deps) / create_tool_executor(deps)
    HashChainVerifier(store).verify_hash_chain() / quick_integrity_check() / verify_entry(id)
"""

from .config import Settings, get_settings, reset_settings
from .integrations import (
    RequestBuildError,
    apply_auth,
    build_http_request,
    is_tool_allowed,
    transform_output,
)
from .services import (
    AuditLogger,
    ExecuteToolDependencies,
    ExecutionSaga,
    HashChainVerifier,
    InMemoryAuditStore,
    InMemoryCounterStore,
    IntegrationRateLimiter,
    create_tool_executor,
    execute_tool_saga,
)
from .types import (
    AuditLogEntry,
    Connection,
    ErrorType,
    Grant,
    IntegrationProviderConfig,
    ToolCallRequest,
    ToolCallResult,
    ToolDefinition,
)
from .utils.crypto import CredentialCodec
from .utils.http_client import IntegrationHTTPClient

__version__ = "0.1.0"

__all__ = [
    "AuditLogEntry",
    "AuditLogger",
    "Connection",
    "CredentialCodec",
    "ErrorType",
    "ExecuteToolDependencies",
    "ExecutionSaga",
    "Grant",
    "HashChainVerifier",
    "InMemoryAuditStore",
    "InMemoryCounterStore",
    "IntegrationHTTPClient",
    "IntegrationProviderConfig",
    "IntegrationRateLimiter",
    "RequestBuildError",
    "Settings",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolDefinition",
    "apply_auth",
    "build_http_request",
    "create_tool_executor",
    "execute_tool_saga",
    "get_settings",
    "is_tool_allowed",
    "reset_settings",
    "transform_output",
]
