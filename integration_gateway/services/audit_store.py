"""
Audit log storage interface and in-memory implementation.

The audit logger and the hash chain verifier only depend on the
``AuditStore`` protocol: ordered reads by timestamp and inserts. The SQL
implementation lives in ``integration_gateway.db.repositories``.
"""

import itertools
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from ..types import AuditLogEntry

# Builds the entry to append from the current chain head (None for an empty chain)
ChainLinker = Callable[[Optional[AuditLogEntry]], AuditLogEntry]


class AuditStoreError(Exception):
    """Base exception for audit store operations."""

    pass


class AuditChainConflictError(AuditStoreError):
    """Another writer extended the chain from the same head first."""

    pass


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuditStore(Protocol):
    """
    Append-only store ordered by ``timestamp`` within a chain.

    Within a chain no two entries may share a ``previous_log_hash`` and only
    one entry may carry a ``chain_seed``. Inserts breaking either rule raise
    ``AuditChainConflictError``.
    """

    async def insert(self, entry: AuditLogEntry) -> None: ...

    async def append(self, chain_id: str, link: ChainLinker) -> AuditLogEntry:
        """Read the chain head, build ``link(head)`` and insert it as one step."""
        ...

    async def get_chain_head(self, chain_id: str) -> Optional[AuditLogEntry]:
        """Most recent entry of the chain that carries a ``log_hash``."""
        ...

    async def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]: ...

    async def get_previous_hashed_entry(
        self, entry: AuditLogEntry
    ) -> Optional[AuditLogEntry]:
        """Nearest hashed entry of the same chain ordered before ``entry``."""
        ...

    async def get_first_hashed_entry(self, chain_id: str) -> Optional[AuditLogEntry]: ...

    async def count_entries(
        self,
        chain_id: str,
        *,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
        hashed: Optional[bool] = None,
    ) -> int: ...

    async def list_entries(
        self,
        chain_id: str,
        *,
        offset: int = 0,
        limit: Optional[int] = None,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        """Entries oldest first, timestamp bounds inclusive."""
        ...

    async def list_recent_entries(
        self, chain_id: str, limit: int, *, hashed_only: bool = True
    ) -> List[AuditLogEntry]:
        """The newest ``limit`` entries, returned oldest first."""
        ...


class InMemoryAuditStore:
    """
    Process-local audit store.

    Suitable for tests and single-process deployments that export the chain
    elsewhere. Ties on ``timestamp`` are broken by insertion order.
    """

    def __init__(self):
        self._entries: Dict[str, AuditLogEntry] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()

    def _sort_key(self, entry: AuditLogEntry) -> Tuple[datetime, int]:
        return as_utc(entry.timestamp), self._sequence[entry.id]

    def _ordered(
        self,
        chain_id: str,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        entries = [e for e in self._entries.values() if e.chain_id == chain_id]
        if from_timestamp is not None:
            lower = as_utc(from_timestamp)
            entries = [e for e in entries if as_utc(e.timestamp) >= lower]
        if to_timestamp is not None:
            upper = as_utc(to_timestamp)
            entries = [e for e in entries if as_utc(e.timestamp) <= upper]
        return sorted(entries, key=self._sort_key)

    async def insert(self, entry: AuditLogEntry) -> None:
        if entry.id in self._entries:
            raise AuditStoreError(f"Audit entry {entry.id} already exists")
        for existing in self._entries.values():
            if existing.chain_id != entry.chain_id:
                continue
            if entry.previous_log_hash and existing.previous_log_hash == entry.previous_log_hash:
                raise AuditChainConflictError(
                    f"Chain '{entry.chain_id}' already links to {entry.previous_log_hash}"
                )
            if entry.chain_seed and existing.chain_seed:
                raise AuditChainConflictError(f"Chain '{entry.chain_id}' already has a seed")
        self._entries[entry.id] = entry
        self._sequence[entry.id] = next(self._counter)

    async def append(self, chain_id: str, link: ChainLinker) -> AuditLogEntry:
        # No await suspends between the head read and the insert
        entry = link(await self.get_chain_head(chain_id))
        await self.insert(entry)
        return entry

    async def get_chain_head(self, chain_id: str) -> Optional[AuditLogEntry]:
        hashed = [e for e in self._ordered(chain_id) if e.log_hash]
        return hashed[-1] if hashed else None

    async def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        return self._entries.get(entry_id)

    async def get_previous_hashed_entry(
        self, entry: AuditLogEntry
    ) -> Optional[AuditLogEntry]:
        previous = None
        for candidate in self._ordered(entry.chain_id):
            if candidate.id == entry.id:
                break
            if candidate.log_hash:
                previous = candidate
        return previous

    async def get_first_hashed_entry(self, chain_id: str) -> Optional[AuditLogEntry]:
        for entry in self._ordered(chain_id):
            if entry.log_hash:
                return entry
        return None

    async def count_entries(
        self,
        chain_id: str,
        *,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
        hashed: Optional[bool] = None,
    ) -> int:
        entries = self._ordered(chain_id, from_timestamp, to_timestamp)
        if hashed is not None:
            entries = [e for e in entries if bool(e.log_hash) == hashed]
        return len(entries)

    async def list_entries(
        self,
        chain_id: str,
        *,
        offset: int = 0,
        limit: Optional[int] = None,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        entries = self._ordered(chain_id, from_timestamp, to_timestamp)
        end = None if limit is None else offset + limit
        return entries[offset:end]

    async def list_recent_entries(
        self, chain_id: str, limit: int, *, hashed_only: bool = True
    ) -> List[AuditLogEntry]:
        entries = self._ordered(chain_id)
        if hashed_only:
            entries = [e for e in entries if e.log_hash]
        return entries[-limit:] if limit > 0 else []
