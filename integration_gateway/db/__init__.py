"""
Database module for the Integration Gateway.

Single import point for the SQL audit store. All other modules should import
from here, not from individual files.
"""

from .database import (
    create_tables,
    dispose_engine,
    drop_tables,
    get_database_url,
    get_engine,
    get_session_factory,
)
from .models import Base, IntegrationAuditLog
from .repositories import SqlAlchemyAuditStore, create_audit_store

__all__ = [
    # Engine and factory
    "get_database_url",
    "get_engine",
    "get_session_factory",
    "dispose_engine",
    # Testing
    "create_tables",
    "drop_tables",
    # Models
    "Base",
    "IntegrationAuditLog",
    # Repositories
    "SqlAlchemyAuditStore",
    "create_audit_store",
]
