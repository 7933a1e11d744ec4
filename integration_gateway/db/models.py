"""
Database models for the Integration Gateway.

This module defines the SQLAlchemy model for the hash-chained integration
audit log. Column types are portable (no dialect-specific types) so the same
schema runs on PostgreSQL in production and SQLite in tests. Migrations are
owned by the hosting application.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IntegrationAuditLog(Base):
    """
    One append-only audit record of an integration tool call.

    Rows are never updated. ``log_hash`` covers every descriptive column plus
    the previous row's hash, so any later modification is detectable.

    Attributes:
        id: Entry identifier (UUID string)
        timestamp: Strictly increasing within a chain
        chain_id: Logical hash chain the entry belongs to
        drive_id/agent_id/user_id/connection_id/tool_name: Call attribution
        input_summary: Redacted, truncated summary of the tool input
        success: Final outcome of the call
        response_code: HTTP status, when one was received
        error_type: Stable audit error code (e.g. RATE_LIMITED)
        error_message: Failure description
        duration_ms: Total saga duration
        previous_log_hash: Hash this entry was chained to
        log_hash: SHA-256 over the entry and previous_log_hash
        chain_seed: Random seed, only on the first entry of a chain
    """

    __tablename__ = "integration_audit_log"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, doc="Entry identifier"
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, doc="Entry timestamp (UTC)"
    )

    chain_id: Mapped[str] = mapped_column(
        String(64), nullable=False, default="integration", doc="Logical hash chain"
    )

    # Attribution
    drive_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    agent_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    connection_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    tool_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    input_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Outcome
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    response_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Hash chain
    previous_log_hash: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, doc="Hash this entry was chained to"
    )
    log_hash: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, doc="SHA-256 of this entry"
    )
    chain_seed: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, doc="Seed of the chain (first entry only)"
    )

    # Ordered reads within a chain; one successor per hash and one seed per chain
    __table_args__ = (
        Index("idx_integration_audit_chain_ts", "chain_id", "timestamp"),
        UniqueConstraint(
            "chain_id", "previous_log_hash", name="uq_integration_audit_chain_link"
        ),
        Index(
            "uq_integration_audit_chain_seed",
            "chain_id",
            unique=True,
            postgresql_where=text("chain_seed IS NOT NULL"),
            sqlite_where=text("chain_seed IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<IntegrationAuditLog(id={self.id}, tool={self.tool_name}, "
            f"success={self.success}, timestamp={self.timestamp})>"
        )
