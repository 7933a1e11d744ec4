"""
Type definitions for the Integration Gateway.

Provider catalogs, connections, grants, tool calls and audit entries are
modelled as immutable pydantic models. Tagged unions (auth methods, tool
execution kinds) are discriminated on their ``type`` field so combinations
that make no sense fail validation instead of reaching the saga.

Registry payloads use camelCase keys (``baseUrl``, ``pathTemplate``) and may
nest variant options under ``config``; both shapes are accepted.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class GatewayModel(BaseModel):
    """Base for all gateway value objects."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


class _FlattenedConfigModel(GatewayModel):
    """Accepts ``{"type": ..., "config": {...}}`` by lifting ``config`` keys."""

    @model_validator(mode="before")
    @classmethod
    def _flatten_config(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("config"), dict):
            merged = {k: v for k, v in data.items() if k != "config"}
            merged.update(data["config"])
            return merged
        return data


# ===== Auth methods =====


class BearerTokenAuth(_FlattenedConfigModel):
    type: Literal["bearer_token"] = "bearer_token"
    header_name: str = "Authorization"
    prefix: str = "Bearer "


class ApiKeyAuth(_FlattenedConfigModel):
    type: Literal["api_key"] = "api_key"
    placement: Literal["header", "query", "body"]
    param_name: str
    prefix: str = ""


class BasicAuth(_FlattenedConfigModel):
    type: Literal["basic_auth"] = "basic_auth"
    username_field: str = "username"
    password_field: str = "password"


class OAuth2Auth(_FlattenedConfigModel):
    """Only token application is supported; the URLs are informational."""

    type: Literal["oauth2"] = "oauth2"
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    token_placement: Literal["header", "query"] = "header"
    token_prefix: str = "Bearer "


class CustomHeaderEntry(GatewayModel):
    name: str
    value_from: Literal["credential", "static"] = "credential"
    credential_key: Optional[str] = None
    static_value: Optional[str] = None


class CustomHeaderAuth(_FlattenedConfigModel):
    type: Literal["custom_header"] = "custom_header"
    headers: List[CustomHeaderEntry] = Field(default_factory=list)


class NoAuth(_FlattenedConfigModel):
    type: Literal["none"] = "none"


AuthMethod = Annotated[
    Union[BearerTokenAuth, ApiKeyAuth, BasicAuth, OAuth2Auth, CustomHeaderAuth, NoAuth],
    Field(discriminator="type"),
]


# ===== HTTP execution templates =====


ParameterTransform = Literal[
    "string", "number", "integer", "boolean", "json", "lowercase", "uppercase", "trim", "csv"
]


class ParameterRef(GatewayModel):
    """Reference to a tool input value, written as ``{"$param": "name"}``."""

    param: str = Field(alias="$param")
    transform: Optional[ParameterTransform] = None
    required: bool = False
    default: Any = None


TemplateValue = Union[ParameterRef, str, int, float, bool]


class HttpExecutionConfig(GatewayModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    path_template: str
    query_params: Dict[str, TemplateValue] = Field(default_factory=dict)
    headers: Dict[str, TemplateValue] = Field(default_factory=dict)
    body_template: Any = None
    body_encoding: Literal["json", "form", "multipart"] = "json"
    timeout_ms: Optional[int] = Field(default=None, ge=1)


class HttpExecution(GatewayModel):
    type: Literal["http"] = "http"
    config: HttpExecutionConfig


class GraphQLExecution(_FlattenedConfigModel):
    type: Literal["graphql"] = "graphql"
    query: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class FunctionExecution(_FlattenedConfigModel):
    type: Literal["function"] = "function"
    handler: Optional[str] = None


class ChainExecution(_FlattenedConfigModel):
    type: Literal["chain"] = "chain"
    steps: List[Dict[str, Any]] = Field(default_factory=list)


ToolExecution = Annotated[
    Union[HttpExecution, GraphQLExecution, FunctionExecution, ChainExecution],
    Field(discriminator="type"),
]


# ===== Tools and providers =====


class ToolCategory(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"
    DANGEROUS = "dangerous"


class OutputTransformConfig(GatewayModel):
    """
    Shapes a response body before it is returned to the agent.

    Attributes:
        extract: Path selecting a sub-value, e.g. ``data.items[*]``
        mapping: Output key -> path, applied to a dict or to each list item
        max_items: Cap for list results
        max_length: Cap for string results
    """

    extract: Optional[str] = None
    mapping: Optional[Dict[str, str]] = None
    max_items: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)


class RateLimitConfig(GatewayModel):
    requests_per_minute: int = Field(ge=1)


class RetryConfig(GatewayModel):
    max_attempts: int = Field(default=1, ge=1, le=10)
    backoff_ms: int = Field(default=1000, ge=0)
    retryable_statuses: List[int] = Field(
        default_factory=lambda: [408, 429, 500, 502, 503, 504]
    )


class ToolDefinition(GatewayModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    category: ToolCategory = ToolCategory.READ
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    execution: ToolExecution
    output_transform: Optional[OutputTransformConfig] = None
    rate_limit: Optional[RateLimitConfig] = None
    retry: Optional[RetryConfig] = None


class IntegrationProviderConfig(GatewayModel):
    id: str
    name: str
    base_url: str
    auth_method: AuthMethod = Field(default_factory=NoAuth)
    tools: List[ToolDefinition] = Field(default_factory=list)
    rate_limit: Optional[RateLimitConfig] = None

    def find_tool(self, tool_name: str) -> Optional[ToolDefinition]:
        """Return the catalog entry with this id, if any."""
        for tool in self.tools:
            if tool.id == tool_name:
                return tool
        return None


# ===== Connections and grants =====


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"
    PENDING = "pending"
    REVOKED = "revoked"


class ConnectionConfigOverrides(GatewayModel):
    rate_limit: Optional[RateLimitConfig] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class Connection(GatewayModel):
    """A user's authorized credential set for a provider, with its resolved config."""

    id: str
    provider_id: str
    status: ConnectionStatus
    provider: IntegrationProviderConfig
    credentials: Optional[Dict[str, str]] = None
    base_url_override: Optional[str] = None
    config_overrides: Optional[ConnectionConfigOverrides] = None
    name: Optional[str] = None
    drive_id: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE


class Grant(GatewayModel):
    """Agent-scoped narrowing of what a connection's tools an agent may call."""

    agent_id: str
    connection_id: str
    id: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    denied_tools: Optional[List[str]] = None
    read_only: bool = False
    rate_limit_override: Optional[RateLimitConfig] = None


# ===== Tool calls =====


class ErrorType(str, Enum):
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    HTTP = "http"
    INTERNAL = "internal"
    TIMEOUT = "timeout"
    NETWORK = "network"


class ToolCallRequest(GatewayModel):
    user_id: str
    agent_id: str
    drive_id: str
    connection_id: str
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    grant: Optional[Grant] = None


class ToolCallResult(GatewayModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    retry_after: Optional[int] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, data: Any, status_code: Optional[int] = None) -> "ToolCallResult":
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(
        cls,
        error: str,
        error_type: ErrorType,
        retry_after: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> "ToolCallResult":
        return cls(
            success=False,
            error=error,
            error_type=error_type,
            retry_after=retry_after,
            status_code=status_code,
        )


# ===== HTTP wire objects =====


class HttpRequest(GatewayModel):
    url: str
    method: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    multipart: Optional[Dict[str, Any]] = None


class HttpResponse(GatewayModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300


# ===== Audit log =====


class AuditLogEntry(GatewayModel):
    """
    One append-only audit record.

    ``log_hash`` = SHA-256(canonical(entry fields) + previous hash), where the
    previous hash is the prior entry's ``log_hash`` or, for the first entry of
    a chain, the ``chain_seed`` stored on that entry.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)
    chain_id: str = "integration"
    drive_id: Optional[str] = None
    agent_id: Optional[str] = None
    user_id: Optional[str] = None
    connection_id: Optional[str] = None
    tool_name: Optional[str] = None
    input_summary: Optional[str] = None
    success: bool = False
    response_code: Optional[int] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    previous_log_hash: Optional[str] = None
    log_hash: Optional[str] = None
    chain_seed: Optional[str] = None
