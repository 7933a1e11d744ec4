"""
Hash-chained audit logging for integration tool calls.

Every saga run that reaches a connection writes exactly one entry. Each entry
stores ``log_hash = sha256(canonical(fields) + previous_hash)`` where the
previous hash is the chain head's ``log_hash`` or, for the first entry of a
chain, a random seed stored on that entry. Modifying, deleting or reordering
any persisted entry therefore breaks every hash after it.
"""

import asyncio
import hashlib
import json
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from ..config import Settings, get_settings
from ..types import AuditLogEntry
from ..utils.logging import get_logger, is_sensitive_key
from .audit_store import AuditChainConflictError, AuditStore, as_utc

logger = get_logger(__name__)

# Entry fields covered by log_hash, in canonical (sorted) order
HASHED_FIELDS = (
    "agent_id",
    "chain_id",
    "connection_id",
    "drive_id",
    "duration_ms",
    "error_message",
    "error_type",
    "id",
    "input_summary",
    "response_code",
    "success",
    "timestamp",
    "tool_name",
    "user_id",
)

REDACTED = "[REDACTED]"


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with microseconds, the only timestamp form that is hashed."""
    return as_utc(value).isoformat(timespec="microseconds")


def hashable_fields(entry: AuditLogEntry) -> Dict[str, Any]:
    """Extract the hashed subset of an entry."""
    return {name: getattr(entry, name) for name in HASHED_FIELDS}


def canonicalize(fields: Mapping[str, Any]) -> str:
    """
    Deterministic JSON for hashing.

    Keys are sorted, separators compact, datetimes rendered in UTC.
    """

    def _default(value: Any) -> Any:
        if isinstance(value, datetime):
            return format_timestamp(value)
        raise TypeError(f"Cannot canonicalize {type(value).__name__}")

    return json.dumps(
        dict(fields),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_default,
    )


def compute_log_hash(fields: Mapping[str, Any], previous_hash: Optional[str]) -> str:
    """SHA-256 hex of the canonical fields followed by the previous hash."""
    payload = canonicalize(fields) + (previous_hash or "")
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_entry_hash(entry: AuditLogEntry, previous_hash: Optional[str]) -> str:
    return compute_log_hash(hashable_fields(entry), previous_hash)


def generate_chain_seed() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def build_input_summary(tool_input: Optional[Mapping[str, Any]], max_length: int = 500) -> str:
    """
    Summarize tool input for the audit trail.

    Renders ``key=value`` pairs in key order, redacts values under
    secret-looking keys and truncates the result to ``max_length``.
    """
    if not tool_input:
        return ""

    parts = []
    for key in sorted(tool_input):
        value = tool_input[key]
        if is_sensitive_key(str(key)):
            rendered = REDACTED
        elif isinstance(value, str):
            rendered = value
        else:
            try:
                rendered = json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
            except ValueError:
                rendered = repr(value)
        parts.append(f"{key}={rendered}")

    summary = ", ".join(parts)
    if len(summary) > max_length:
        summary = summary[: max(0, max_length - 3)] + "..."
    return summary


def _log_conflict(retry_state: RetryCallState) -> None:
    logger.info(
        "Audit chain head taken by another writer, retrying",
        attempt=retry_state.attempt_number,
    )


class AuditLogger:
    """
    Appends hash-chained entries to an AuditStore.

    Appends through one logger are serialized with a per-chain lock. Writers
    that share a store but not a logger (other workers, other instances) are
    kept on one chain by the store's atomic ``append``: a writer that loses
    the race for a head gets AuditChainConflictError, re-reads the head and
    tries again. Different chains append independently.

    Usage:
        audit = AuditLogger(InMemoryAuditStore())
        stored = await audit.append_log(AuditLogEntry(tool_name="list_repos", success=True))
    """

    def __init__(
        self,
        store: AuditStore,
        settings: Optional[Settings] = None,
        max_append_attempts: int = 10,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.chain_id = self.settings.audit_chain_id
        self.max_append_attempts = max_append_attempts
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, chain_id: str) -> asyncio.Lock:
        lock = self._locks.get(chain_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chain_id] = lock
        return lock

    @staticmethod
    def _link(entry: AuditLogEntry, head: Optional[AuditLogEntry]) -> AuditLogEntry:
        """Chain ``entry`` to ``head``, or start the chain when there is none."""
        timestamp = as_utc(entry.timestamp)

        if head is None:
            chain_seed = generate_chain_seed()
            previous_hash = chain_seed
        else:
            chain_seed = None
            previous_hash = head.log_hash
            head_timestamp = as_utc(head.timestamp)
            if timestamp <= head_timestamp:
                timestamp = head_timestamp + timedelta(microseconds=1)

        linked = entry.model_copy(
            update={
                "timestamp": timestamp,
                "chain_seed": chain_seed,
                "previous_log_hash": previous_hash,
                "log_hash": None,
            }
        )
        return linked.model_copy(update={"log_hash": compute_entry_hash(linked, previous_hash)})

    async def append_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        """
        Link ``entry`` to its chain and persist it.

        Timestamps are kept strictly increasing within a chain so timestamp
        order always equals append order.

        Returns:
            The stored entry with ``previous_log_hash``, ``log_hash`` and,
            for the first entry, ``chain_seed`` set

        Raises:
            AuditChainConflictError: When every attempt lost the head to
                another writer
            AuditStoreError: When the store fails
        """
        chain_id = entry.chain_id

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_append_attempts),
            wait=wait_random(min=0, max=0.02),
            retry=retry_if_exception_type(AuditChainConflictError),
            before_sleep=_log_conflict,
            reraise=True,
        )

        async with self._lock_for(chain_id):
            async for attempt in retrying:
                with attempt:
                    linked = await self.store.append(
                        chain_id, lambda head: self._link(entry, head)
                    )

        if linked.chain_seed is not None:
            logger.info("Started new audit hash chain", chain_id=chain_id)
        logger.debug(
            "Audit entry appended",
            chain_id=chain_id,
            entry_id=linked.id,
            tool_name=linked.tool_name,
            success=linked.success,
        )
        return linked


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(store: Optional[AuditStore] = None) -> AuditLogger:
    """
    Get the process-wide AuditLogger (singleton pattern).

    The first call must supply the store.
    """
    global _audit_logger

    if _audit_logger is None:
        if store is None:
            raise RuntimeError("get_audit_logger() needs a store on first use")
        _audit_logger = AuditLogger(store)

    return _audit_logger
