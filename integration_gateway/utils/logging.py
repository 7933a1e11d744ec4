"""
Structured logging configuration for the Integration Gateway.

This module provides centralized logging configuration using structlog,
with support for per-call context tracking, credential redaction, and
environment-specific formatting.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for call-scoped data (connection_id, agent_id, tool_name...)
call_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "call_context", default=None
)

SENSITIVE_KEYS = [
    "password",
    "api_key",
    "apikey",
    "secret",
    "authorization",
    "token",
    "private_key",
    "credential",
    "fernet_key",
    "ciphertext",
]

FALLBACK_AUDIT_LOGGER = "integration_gateway.audit.fallback"


class CallContextProcessor:
    """
    Add tool-call context to all log entries.

    Every log line emitted while a saga is running carries the connection,
    agent and tool it belongs to without each call site repeating them.
    """

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        """Add call context to the event dict."""
        ctx = call_context.get()
        if ctx is not None:
            for key, value in ctx.items():
                event_dict.setdefault(key, value)
        return event_dict


class EnvironmentProcessor:
    """Add deployment context (environment and version) to log entries."""

    def __init__(self, app_env: str, app_version: str):
        """Initialize with environment settings."""
        self.app_env = app_env
        self.app_version = app_version

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        """Add environment context to the event dict."""
        event_dict["env"] = self.app_env
        event_dict["version"] = self.app_version
        return event_dict


def is_sensitive_key(key: str) -> bool:
    """Return True when a field name looks like it carries secret material."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in SENSITIVE_KEYS)


def filter_sensitive_data(
    logger: Any, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Filter sensitive data from log entries.

    Credential values must never reach a log sink, so values under
    secret-looking keys are masked. Nested dicts (e.g. request headers) are
    masked as well.
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if is_sensitive_key(key):
            if isinstance(value, str) and len(value) > 8:
                event_dict[key] = f"{value[:4]}...{value[-4:]}"
            else:
                event_dict[key] = "***REDACTED***"
        elif isinstance(value, dict):
            event_dict[key] = {
                k: ("***REDACTED***" if is_sensitive_key(str(k)) else v)
                for k, v in value.items()
            }

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    app_env: str = "development",
    app_version: str = "0.1.0",
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structured logging for the gateway.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        app_env: Application environment (development, staging, production)
        app_version: Application version for tracking
        json_format: Force JSON output (None = auto-detect based on environment)

    Development gets human-readable console output; staging and production
    get JSON for log aggregation.
    """
    if json_format is None:
        json_format = app_env in ["staging", "production"]

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ]
        ),
        CallContextProcessor(),
        EnvironmentProcessor(app_env, app_version),
        filter_sensitive_data,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (usually __name__ from the calling module)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)


def bind_call_context(**kwargs: Any) -> None:
    """
    Set call-scoped context that will be included in all logs.

    Example:
        bind_call_context(connection_id="conn-1", agent_id="agent-1", tool_name="list_repos")
    """
    ctx = call_context.get()
    ctx = dict(ctx) if ctx else {}
    ctx.update(kwargs)
    call_context.set(ctx)


def clear_call_context() -> None:
    """Clear the call context (called when a saga run finishes)."""
    call_context.set(None)
