"""
Declarative HTTP request templating.

Expands a tool's ``HttpExecutionConfig`` against the caller's tool input:
path placeholders, query parameters, headers and body are resolved from
literals and ``{"$param": ...}`` references, then the body is encoded per
the configured encoding. Auth output is layered on afterwards with
``merge_headers`` and ``append_query_params``.
"""

import json
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from ..types import HttpExecutionConfig, HttpRequest, ParameterRef

PATH_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.-]*)\}")

_MISSING = object()

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


class RequestBuildError(ValueError):
    """Raised when tool input cannot satisfy the request template."""

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(message)
        self.parameter = parameter


def _as_parameter_ref(value: Any) -> Optional[ParameterRef]:
    """Recognise refs given either as models or as raw ``{"$param": ...}`` dicts."""
    if isinstance(value, ParameterRef):
        return value
    if isinstance(value, dict) and "$param" in value:
        return ParameterRef.model_validate(value)
    return None


def apply_transform(value: Any, transform: Optional[str], name: str = "") -> Any:
    """
    Coerce a resolved parameter value.

    Raises:
        RequestBuildError: If the value cannot be converted
    """
    if transform is None:
        return value

    try:
        if transform == "string":
            return _to_text(value)
        if transform == "number":
            if isinstance(value, bool):
                raise ValueError("boolean is not a number")
            number = float(value)
            return int(number) if number.is_integer() else number
        if transform == "integer":
            if isinstance(value, bool):
                raise ValueError("boolean is not an integer")
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("value has a fractional part")
            return int(value)
        if transform == "boolean":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
            raise ValueError(f"'{value}' is not a boolean")
        if transform == "json":
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        if transform == "lowercase":
            return _to_text(value).lower()
        if transform == "uppercase":
            return _to_text(value).upper()
        if transform == "trim":
            return _to_text(value).strip()
        if transform == "csv":
            if isinstance(value, (list, tuple)):
                return ",".join(_to_text(item) for item in value)
            return _to_text(value)
    except (TypeError, ValueError) as e:
        raise RequestBuildError(
            f"Parameter '{name}' could not be converted with '{transform}': {e}",
            parameter=name,
        ) from e

    raise RequestBuildError(f"Unknown transform '{transform}'", parameter=name)


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def resolve_value(template: Any, tool_input: Mapping[str, Any]) -> Any:
    """
    Resolve one template value against tool input.

    Returns ``_MISSING`` for an optional reference with no input and no default
    so callers can omit the entry.
    """
    ref = _as_parameter_ref(template)
    if ref is None:
        return template

    value = tool_input.get(ref.param, _MISSING)
    if value is _MISSING or value is None:
        if ref.default is not None:
            value = ref.default
        elif ref.required:
            raise RequestBuildError(
                f"Missing required parameter: {ref.param}", parameter=ref.param
            )
        else:
            return _MISSING

    return apply_transform(value, ref.transform, ref.param)


def render_template(template: Any, tool_input: Mapping[str, Any]) -> Any:
    """Recursively render a body template; absent optional refs are dropped."""
    if _as_parameter_ref(template) is not None:
        return resolve_value(template, tool_input)
    if isinstance(template, dict):
        rendered = {}
        for key, value in template.items():
            resolved = render_template(value, tool_input)
            if resolved is not _MISSING:
                rendered[key] = resolved
        return rendered
    if isinstance(template, list):
        items = [render_template(item, tool_input) for item in template]
        return [item for item in items if item is not _MISSING]
    return template


def expand_path(path_template: str, tool_input: Mapping[str, Any]) -> str:
    """Substitute ``{name}`` placeholders; every placeholder is required."""

    def _substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        value = tool_input.get(name)
        if value is None or value == "":
            raise RequestBuildError(f"Missing required path parameter: {name}", parameter=name)
        return quote(_to_text(value), safe="")

    return PATH_PLACEHOLDER.sub(_substitute, path_template)


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and an expanded path without doubling slashes."""
    if path.startswith(("http://", "https://")):
        return path
    if not path:
        return base_url
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _query_pairs(params: Mapping[str, Any]) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            pairs.extend((key, _to_text(item)) for item in value)
        else:
            pairs.append((key, _to_text(value)))
    return pairs


def append_query_params(url: str, params: Mapping[str, Any]) -> str:
    """Append params to a URL, keeping any query string it already has."""
    if not params:
        return url
    parts = urlsplit(url)
    existing = parse_qsl(parts.query, keep_blank_values=True)
    query = urlencode(existing + _query_pairs(params))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def merge_headers(request: HttpRequest, headers: Mapping[str, str]) -> HttpRequest:
    """Return a copy of ``request`` with ``headers`` layered on top."""
    if not headers:
        return request
    return request.model_copy(update={"headers": {**request.headers, **headers}})


def _encode_body(
    body: Any, encoding: str, headers: Dict[str, str]
) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
    if encoding == "json":
        headers.setdefault("Content-Type", "application/json")
        return json.dumps(body, separators=(",", ":"), ensure_ascii=False), None
    if encoding == "form":
        if not isinstance(body, dict):
            raise RequestBuildError("Form-encoded bodies must be objects")
        headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
        return urlencode(_query_pairs(body)), None
    if encoding == "multipart":
        if not isinstance(body, dict):
            raise RequestBuildError("Multipart bodies must be objects")
        # httpx sets the boundary header itself
        return None, body
    raise RequestBuildError(f"Unsupported body encoding: {encoding}")


def build_http_request(
    config: HttpExecutionConfig,
    tool_input: Mapping[str, Any],
    base_url: str,
    *,
    body_params: Optional[Mapping[str, Any]] = None,
) -> HttpRequest:
    """
    Build a concrete request from a tool's HTTP template.

    Args:
        config: The tool's HTTP execution config
        tool_input: Caller-supplied tool input
        base_url: Provider base URL (or the connection's override)
        body_params: Extra body fields, e.g. an api key placed in the body

    Raises:
        RequestBuildError: On a missing required parameter or failed transform
    """
    tool_input = tool_input or {}

    url = join_url(base_url, expand_path(config.path_template, tool_input))

    query: Dict[str, Any] = {}
    for key, template in config.query_params.items():
        value = resolve_value(template, tool_input)
        if value is not _MISSING and value is not None:
            query[key] = value
    url = append_query_params(url, query)

    headers: Dict[str, str] = {}
    for key, template in config.headers.items():
        value = resolve_value(template, tool_input)
        if value is not _MISSING and value is not None:
            headers[key] = _to_text(value)

    body: Optional[str] = None
    multipart: Optional[Dict[str, Any]] = None
    if config.body_template is not None or body_params:
        rendered = (
            render_template(config.body_template, tool_input)
            if config.body_template is not None
            else {}
        )
        if body_params:
            if not isinstance(rendered, dict):
                raise RequestBuildError("Auth body parameters require an object body")
            rendered = {**rendered, **body_params}
        body, multipart = _encode_body(rendered, config.body_encoding, headers)

    return HttpRequest(
        url=url,
        method=config.method,
        headers=headers,
        body=body,
        multipart=multipart,
    )
