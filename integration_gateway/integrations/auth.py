"""
Authentication builder for integration requests.

Maps decrypted credentials and a provider's auth method to the headers and
query parameters that must be layered onto an outbound request. These
functions are pure and total: a missing credential key simply produces no
header or parameter, it never raises.
"""

import base64
from typing import Dict, Mapping, NamedTuple

from ..types import (
    ApiKeyAuth,
    AuthMethod,
    BasicAuth,
    BearerTokenAuth,
    CustomHeaderAuth,
    NoAuth,
    OAuth2Auth,
)

# Credential map keys read by each scheme
TOKEN_KEY = "token"
API_KEY_KEY = "apiKey"
ACCESS_TOKEN_KEY = "accessToken"


class AuthResult(NamedTuple):
    """Headers and query parameters contributed by authentication."""

    headers: Dict[str, str]
    query_params: Dict[str, str]


def _empty() -> AuthResult:
    return AuthResult(headers={}, query_params={})


def apply_auth(credentials: Mapping[str, str], method: AuthMethod) -> AuthResult:
    """
    Build auth headers and query params for a request.

    Args:
        credentials: Decrypted credential map (e.g. ``{"token": "..."}``)
        method: Provider auth method

    Returns:
        AuthResult with fresh dicts (safe for the caller to mutate)
    """
    credentials = credentials or {}
    result = _empty()

    if isinstance(method, BearerTokenAuth):
        token = credentials.get(TOKEN_KEY)
        if token:
            result.headers[method.header_name] = f"{method.prefix}{token}"

    elif isinstance(method, ApiKeyAuth):
        api_key = credentials.get(API_KEY_KEY)
        if api_key:
            value = f"{method.prefix}{api_key}"
            if method.placement == "header":
                result.headers[method.param_name] = value
            elif method.placement == "query":
                result.query_params[method.param_name] = value
            # body placement is merged by the request builder

    elif isinstance(method, BasicAuth):
        username = credentials.get(method.username_field)
        password = credentials.get(method.password_field)
        if username is not None and password is not None:
            raw = f"{username}:{password}".encode("utf-8")
            result.headers["Authorization"] = (
                "Basic " + base64.b64encode(raw).decode("ascii")
            )

    elif isinstance(method, OAuth2Auth):
        access_token = credentials.get(ACCESS_TOKEN_KEY)
        if access_token:
            if method.token_placement == "header":
                result.headers["Authorization"] = f"{method.token_prefix}{access_token}"
            else:
                result.query_params["access_token"] = access_token

    elif isinstance(method, CustomHeaderAuth):
        for entry in method.headers:
            value = None
            if entry.value_from == "credential" and entry.credential_key:
                value = credentials.get(entry.credential_key)
            if value is None:
                value = entry.static_value
            if value is not None:
                result.headers[entry.name] = value

    elif isinstance(method, NoAuth):
        pass

    return result


def auth_body_params(credentials: Mapping[str, str], method: AuthMethod) -> Dict[str, str]:
    """
    Return body fields contributed by an ``api_key`` method with body placement.

    Every other method contributes nothing to the body.
    """
    if isinstance(method, ApiKeyAuth) and method.placement == "body":
        api_key = (credentials or {}).get(API_KEY_KEY)
        if api_key:
            return {method.param_name: f"{method.prefix}{api_key}"}
    return {}


def requires_credentials(method: AuthMethod) -> bool:
    """True unless the provider is unauthenticated."""
    return not isinstance(method, NoAuth)
