"""
Repository layer for the integration audit log.

``SqlAlchemyAuditStore`` implements the ``AuditStore`` protocol on top of an
``async_sessionmaker``. Each operation runs in its own short session.
Appends read the chain head and insert its successor in one transaction, and
the schema's unique link constraint makes a forked append fail instead of
committing. Rows are never updated or deleted through this layer.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..services.audit_store import (
    AuditChainConflictError,
    AuditStoreError,
    ChainLinker,
    as_utc,
)
from ..types import AuditLogEntry
from .models import IntegrationAuditLog

_ENTRY_COLUMNS = (
    "id",
    "chain_id",
    "drive_id",
    "agent_id",
    "user_id",
    "connection_id",
    "tool_name",
    "input_summary",
    "success",
    "response_code",
    "error_type",
    "error_message",
    "duration_ms",
    "previous_log_hash",
    "log_hash",
    "chain_seed",
)


def _to_entry(row: IntegrationAuditLog) -> AuditLogEntry:
    """Map a row to the domain model; timestamps come back as UTC."""
    fields = {name: getattr(row, name) for name in _ENTRY_COLUMNS}
    fields["timestamp"] = as_utc(row.timestamp)
    return AuditLogEntry(**fields)


def _to_row(entry: AuditLogEntry) -> IntegrationAuditLog:
    fields = {name: getattr(entry, name) for name in _ENTRY_COLUMNS}
    fields["timestamp"] = as_utc(entry.timestamp)
    return IntegrationAuditLog(**fields)


class SqlAlchemyAuditStore:
    """
    SQL-backed audit store.

    Usage:
        store = SqlAlchemyAuditStore(get_session_factory())
        audit = AuditLogger(store)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the store.

        Args:
            session_factory: Factory producing AsyncSession instances
        """
        self.session_factory = session_factory

    @staticmethod
    def _range_filters(
        chain_id: str,
        from_timestamp: Optional[datetime],
        to_timestamp: Optional[datetime],
    ) -> list:
        conditions = [IntegrationAuditLog.chain_id == chain_id]
        if from_timestamp is not None:
            conditions.append(IntegrationAuditLog.timestamp >= as_utc(from_timestamp))
        if to_timestamp is not None:
            conditions.append(IntegrationAuditLog.timestamp <= as_utc(to_timestamp))
        return conditions

    async def insert(self, entry: AuditLogEntry) -> None:
        """
        Persist one entry.

        Raises:
            AuditChainConflictError: When the entry's link or seed is taken
            AuditStoreError: On duplicate ids or database failure
        """
        async with self.session_factory() as session:
            try:
                session.add(_to_row(entry))
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if await session.get(IntegrationAuditLog, entry.id) is not None:
                    raise AuditStoreError(f"Audit entry {entry.id} already exists") from e
                raise AuditChainConflictError(
                    f"Chain '{entry.chain_id}' already extends this head"
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise AuditStoreError(f"Database error writing audit entry: {e}") from e

    @staticmethod
    def _head_statement(chain_id: str):
        return (
            select(IntegrationAuditLog)
            .where(
                IntegrationAuditLog.chain_id == chain_id,
                IntegrationAuditLog.log_hash.is_not(None),
            )
            .order_by(IntegrationAuditLog.timestamp.desc(), IntegrationAuditLog.id.desc())
            .limit(1)
        )

    @staticmethod
    async def _lock_chain(session: AsyncSession, chain_id: str) -> None:
        """Transaction-scoped advisory lock on PostgreSQL; a no-op elsewhere."""
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(
                select(func.pg_advisory_xact_lock(func.hashtext(chain_id)))
            )

    async def append(self, chain_id: str, link: ChainLinker) -> AuditLogEntry:
        """
        Read the head and insert its successor in one transaction.

        PostgreSQL appenders queue on the chain's advisory lock. On other
        databases the unique link constraint rejects the slower of two racing
        appenders with AuditChainConflictError.
        """
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    await self._lock_chain(session, chain_id)
                    result = await session.execute(self._head_statement(chain_id))
                    head = result.scalars().first()
                    entry = link(_to_entry(head) if head is not None else None)
                    session.add(_to_row(entry))
            except IntegrityError as e:
                raise AuditChainConflictError(
                    f"Chain '{chain_id}' was extended concurrently"
                ) from e
            except SQLAlchemyError as e:
                raise AuditStoreError(f"Database error appending audit entry: {e}") from e
        return entry

    async def _scalar_entry(self, statement) -> Optional[AuditLogEntry]:
        async with self.session_factory() as session:
            try:
                result = await session.execute(statement)
                row = result.scalars().first()
            except SQLAlchemyError as e:
                raise AuditStoreError(f"Database error reading audit log: {e}") from e
        return _to_entry(row) if row is not None else None

    async def _entries(self, statement) -> List[AuditLogEntry]:
        async with self.session_factory() as session:
            try:
                result = await session.execute(statement)
                rows = result.scalars().all()
            except SQLAlchemyError as e:
                raise AuditStoreError(f"Database error reading audit log: {e}") from e
        return [_to_entry(row) for row in rows]

    async def get_chain_head(self, chain_id: str) -> Optional[AuditLogEntry]:
        return await self._scalar_entry(self._head_statement(chain_id))

    async def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        statement = select(IntegrationAuditLog).where(IntegrationAuditLog.id == entry_id)
        return await self._scalar_entry(statement)

    async def get_previous_hashed_entry(
        self, entry: AuditLogEntry
    ) -> Optional[AuditLogEntry]:
        timestamp = as_utc(entry.timestamp)
        statement = (
            select(IntegrationAuditLog)
            .where(
                IntegrationAuditLog.chain_id == entry.chain_id,
                IntegrationAuditLog.log_hash.is_not(None),
                or_(
                    IntegrationAuditLog.timestamp < timestamp,
                    and_(
                        IntegrationAuditLog.timestamp == timestamp,
                        IntegrationAuditLog.id < entry.id,
                    ),
                ),
            )
            .order_by(IntegrationAuditLog.timestamp.desc(), IntegrationAuditLog.id.desc())
            .limit(1)
        )
        return await self._scalar_entry(statement)

    async def get_first_hashed_entry(self, chain_id: str) -> Optional[AuditLogEntry]:
        statement = (
            select(IntegrationAuditLog)
            .where(
                IntegrationAuditLog.chain_id == chain_id,
                IntegrationAuditLog.log_hash.is_not(None),
            )
            .order_by(IntegrationAuditLog.timestamp.asc(), IntegrationAuditLog.id.asc())
            .limit(1)
        )
        return await self._scalar_entry(statement)

    async def count_entries(
        self,
        chain_id: str,
        *,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
        hashed: Optional[bool] = None,
    ) -> int:
        conditions = self._range_filters(chain_id, from_timestamp, to_timestamp)
        if hashed is True:
            conditions.append(IntegrationAuditLog.log_hash.is_not(None))
        elif hashed is False:
            conditions.append(IntegrationAuditLog.log_hash.is_(None))

        statement = select(func.count()).select_from(IntegrationAuditLog).where(*conditions)
        async with self.session_factory() as session:
            try:
                result = await session.execute(statement)
                return int(result.scalar_one())
            except SQLAlchemyError as e:
                raise AuditStoreError(f"Database error counting audit entries: {e}") from e

    async def list_entries(
        self,
        chain_id: str,
        *,
        offset: int = 0,
        limit: Optional[int] = None,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        statement = (
            select(IntegrationAuditLog)
            .where(*self._range_filters(chain_id, from_timestamp, to_timestamp))
            .order_by(IntegrationAuditLog.timestamp.asc(), IntegrationAuditLog.id.asc())
            .offset(offset)
        )
        if limit is not None:
            statement = statement.limit(limit)
        return await self._entries(statement)

    async def list_recent_entries(
        self, chain_id: str, limit: int, *, hashed_only: bool = True
    ) -> List[AuditLogEntry]:
        if limit <= 0:
            return []
        conditions = [IntegrationAuditLog.chain_id == chain_id]
        if hashed_only:
            conditions.append(IntegrationAuditLog.log_hash.is_not(None))
        statement = (
            select(IntegrationAuditLog)
            .where(*conditions)
            .order_by(IntegrationAuditLog.timestamp.desc(), IntegrationAuditLog.id.desc())
            .limit(limit)
        )
        entries = await self._entries(statement)
        entries.reverse()
        return entries


def create_audit_store(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> SqlAlchemyAuditStore:
    """Create a SQL audit store on the global session factory by default."""
    if session_factory is None:
        from .database import get_session_factory

        session_factory = get_session_factory()
    return SqlAlchemyAuditStore(session_factory)
