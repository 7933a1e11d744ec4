"""Pure building blocks of a tool call: auth, request templating, output shaping, authorization."""

from .auth import AuthResult, apply_auth, auth_body_params, requires_credentials
from .output_transform import extract_path, transform_output
from .request_builder import (
    RequestBuildError,
    append_query_params,
    build_http_request,
    merge_headers,
)
from .validator import ToolAccessDecision, is_tool_allowed

__all__ = [
    "AuthResult",
    "RequestBuildError",
    "ToolAccessDecision",
    "append_query_params",
    "apply_auth",
    "auth_body_params",
    "build_http_request",
    "extract_path",
    "is_tool_allowed",
    "merge_headers",
    "requires_credentials",
    "transform_output",
]
