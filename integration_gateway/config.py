"""
Environment configuration loader using Pydantic BaseSettings.

This module centralizes all environment configuration for the Integration
Gateway. It provides type safety, validation, and automatic loading from
environment variables and .env files. All settings are validated at startup
to fail fast with clear errors.
"""

import json
from typing import Annotated, Any, List, Optional

import structlog
from pydantic import BeforeValidator, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = structlog.get_logger(__name__)


def parse_string_list(v: Any) -> List[str]:
    """
    Parse string lists from various input formats.

    Supports:
    - Native Python list (from code/tests)
    - JSON array string: '["key1", "key2"]'
    - Comma-separated string: 'key1,key2'
    - Empty string or None: returns empty list
    """
    if v is None:
        return []
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        # Handle JSON array format
        if s.startswith("["):
            return json.loads(s)
        # Parse comma-separated values
        return [item.strip() for item in s.split(",") if item.strip()]
    return v


# NoDecode prevents automatic JSON parsing, BeforeValidator applies our custom parser
StringList = Annotated[List[str], NoDecode, BeforeValidator(parse_string_list)]


class Settings(BaseSettings):
    """
    Gateway settings loaded from environment variables.

    Priority order for loading values:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values defined here
    """

    # ===== Application Settings =====
    app_env: str = Field(
        default="development",
        description="Application environment (development/staging/production/test)",
    )

    app_name: str = Field(
        default="Integration Gateway",
        description="Application name for logging and identification",
    )

    app_version: str = Field(default="0.1.0", description="Application version")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    # ===== Credential Encryption =====
    fernet_key: Optional[str] = Field(
        default=None,
        description="Fernet key for credential encryption (auto-generated if not provided)",
    )

    fernet_keys: StringList = Field(
        default_factory=list,
        description="Older Fernet keys kept for decryption during rotation",
    )

    # ===== Rate Limiting =====
    integration_default_rpm: int = Field(
        default=30,
        description="Requests per minute applied when no limit is configured",
        ge=1,
    )

    integration_min_rpm: int = Field(
        default=1, description="Lower clamp for effective limits", ge=1
    )

    integration_max_rpm: int = Field(
        default=1000, description="Upper clamp for effective limits", ge=1
    )

    rate_limit_window_seconds: int = Field(
        default=60, description="Sliding window length for integration limits", ge=1
    )

    rate_limit_max_keys: int = Field(
        default=10000,
        description="Maximum tracked rate limit windows before LRU eviction",
        ge=100,
    )

    rate_limit_cleanup_interval: int = Field(
        default=300, description="Seconds between idle window cleanups", ge=10
    )

    # ===== Outbound HTTP =====
    http_default_timeout_ms: int = Field(
        default=30000,
        description="Per-attempt timeout when a tool does not declare one",
        ge=100,
        le=120000,
    )

    http_max_timeout_ms: int = Field(
        default=120000,
        description="Ceiling applied to tool-declared timeouts",
        ge=100,
    )

    http_max_response_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum accepted response body size",
        ge=1024,
    )

    # ===== Authorization =====
    integration_require_grant: bool = Field(
        default=True,
        description="Reject tool calls when no grant exists for the agent and connection",
    )

    # ===== Audit Log =====
    audit_chain_id: str = Field(
        default="integration",
        description="Logical hash chain that integration audit entries are appended to",
        min_length=1,
    )

    audit_input_summary_max_length: int = Field(
        default=500, description="Maximum stored length of input summaries", ge=16
    )

    audit_verify_batch_size: int = Field(
        default=1000, description="Entries fetched per batch during verification", ge=1
    )

    audit_quick_check_sample_size: int = Field(
        default=10, description="Entries recomputed by the quick integrity check", ge=0
    )

    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy async URL for the audit store (e.g. postgresql+psycopg://...)",
    )

    # ===== Validators =====

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Ensure app environment is valid."""
        valid_envs = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid app_env: {v}. Must be one of {valid_envs}")
        return v_lower

    @field_validator("fernet_key", mode="before")
    @classmethod
    def generate_fernet_key_if_needed(cls, v: Optional[str]) -> str:
        """Generate Fernet key if not provided."""
        if v is None or v == "":
            from cryptography.fernet import Fernet

            key = Fernet.generate_key().decode()
            logger.warning(
                "Generated new Fernet key - credentials encrypted with it will not "
                "survive a restart unless FERNET_KEY is set"
            )
            return key
        return v

    @model_validator(mode="after")
    def validate_rpm_bounds(self) -> "Settings":
        """Default limit must sit inside the clamp range."""
        if self.integration_min_rpm > self.integration_max_rpm:
            raise ValueError("integration_min_rpm must not exceed integration_max_rpm")
        if not (
            self.integration_min_rpm
            <= self.integration_default_rpm
            <= self.integration_max_rpm
        ):
            raise ValueError(
                "integration_default_rpm must be between integration_min_rpm "
                "and integration_max_rpm"
            )
        return self

    # ===== Pydantic Config =====

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def log_config(self) -> None:
        """Log configuration (with secrets masked)."""
        config_dict = self.model_dump()

        sensitive_fields = ["fernet_key", "fernet_keys", "database_url"]

        for field in sensitive_fields:
            if field in config_dict and config_dict[field]:
                value = str(config_dict[field])
                if len(value) > 8:
                    config_dict[field] = f"{value[:4]}...{value[-4:]}"
                else:
                    config_dict[field] = "***"

        logger.info("Configuration loaded", **config_dict)

    def validate_required_for_production(self) -> None:
        """Additional validation for production environment."""
        if self.app_env == "production":
            errors = []

            if not self.integration_require_grant:
                errors.append(
                    "INTEGRATION_REQUIRE_GRANT must stay enabled in production"
                )

            if self.log_level == "DEBUG":
                logger.warning(
                    "DEBUG log level in production - consider using INFO or higher"
                )

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )


# ===== Global Settings Instance =====

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    Settings are loaded and validated once; hosting code that needs different
    values should construct ``Settings`` directly and pass it down.
    """
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
            _settings.log_config()
            _settings.validate_required_for_production()
            logger.info(
                "Settings loaded successfully",
                app_env=_settings.app_env,
                app_version=_settings.app_version,
            )
        except ValidationError as e:
            logger.error("Failed to load settings", errors=e.errors())
            raise
        except Exception as e:
            logger.error("Unexpected error loading settings", error=str(e))
            raise

    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
