"""
Hash chain integrity verification.

Walks a persisted audit chain oldest-first, recomputes every entry's hash
from its stored fields and the previous entry's *stored* hash, and reports
the first point where they disagree. Runs independently of the saga and only
reads what the AuditLogger persisted.
"""

import random
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..config import Settings, get_settings
from ..types import AuditLogEntry, utc_now
from ..utils.logging import get_logger
from .audit_logger import compute_entry_hash, format_timestamp
from .audit_store import AuditStore, AuditStoreError

logger = get_logger(__name__)

LINK_CHECK_ENTRIES = 5


class _Result(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class HashChainBreakPoint(_Result):
    entry_id: str
    timestamp: datetime
    position: int  # 0-indexed
    stored_hash: Optional[str]
    computed_hash: str
    previous_hash_used: str
    description: str


class HashChainVerificationResult(_Result):
    is_valid: bool
    total_entries: int
    entries_verified: int
    valid_entries: int
    invalid_entries: int
    entries_without_hash: int
    break_point: Optional[HashChainBreakPoint]
    chain_seed: Optional[str]
    first_entry_id: Optional[str]
    last_entry_id: Optional[str]
    verification_started_at: datetime
    verification_completed_at: datetime
    duration_ms: int


class QuickIntegrityResult(_Result):
    is_likely_valid: bool
    has_chain_seed: bool
    last_entries_valid: bool
    sample_valid: bool
    details: str


class EntryVerification(_Result):
    id: str
    timestamp: datetime
    is_valid: bool
    stored_hash: Optional[str]
    computed_hash: str
    previous_hash_used: str


class HashChainStats(_Result):
    total_entries: int
    entries_with_hash: int
    entries_without_hash: int
    has_chain_seed: bool
    first_entry_timestamp: Optional[datetime]
    last_entry_timestamp: Optional[datetime]


def _short(value: Optional[str]) -> str:
    return f"{value[:16]}..." if value else "(empty)"


def describe_break(
    entry: AuditLogEntry, computed_hash: str, previous_hash_used: str, position: int
) -> str:
    """Human-readable description of a break point."""
    parts = [
        f"Hash chain break detected at position {position}",
        f"Entry ID: {entry.id}",
        f"Timestamp: {format_timestamp(entry.timestamp)}",
        f"Tool: {entry.tool_name or '(none)'} on connection {entry.connection_id or '(none)'}",
        f"Stored hash: {_short(entry.log_hash)}",
        f"Computed hash: {_short(computed_hash)}",
        f"Previous hash used: {_short(previous_hash_used)}",
        "Reason: Hash mismatch - entry data may have been modified",
    ]
    return ". ".join(parts)


def _elapsed_ms(started: datetime, completed: datetime) -> int:
    return int((completed - started).total_seconds() * 1000)


class HashChainVerifier:
    """
    Read-only integrity checks over one audit chain.

    Usage:
        verifier = HashChainVerifier(store)
        result = await verifier.verify_hash_chain()
        if not result.is_valid:
            print(result.break_point.description)
    """

    def __init__(
        self,
        store: AuditStore,
        chain_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.chain_id = chain_id or self.settings.audit_chain_id

    async def _previous_hash_for(self, entry: AuditLogEntry) -> str:
        """Seed for the first entry, else the nearest hashed predecessor's stored hash."""
        if entry.chain_seed:
            return entry.chain_seed
        predecessor = await self.store.get_previous_hashed_entry(entry)
        if predecessor is not None and predecessor.log_hash:
            return predecessor.log_hash
        return ""

    async def verify_hash_chain(
        self,
        limit: Optional[int] = None,
        stop_on_first_break: bool = True,
        from_timestamp: Optional[datetime] = None,
        to_timestamp: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> HashChainVerificationResult:
        """
        Verify the chain in timestamp order.

        Args:
            limit: Maximum number of entries to verify
            stop_on_first_break: Halt at the first mismatching entry
            from_timestamp: Inclusive lower bound
            to_timestamp: Inclusive upper bound
            batch_size: Entries fetched per store read

        Returns:
            HashChainVerificationResult; ``is_valid`` is True only when no
            entry mismatched
        """
        batch_size = batch_size or self.settings.audit_verify_batch_size
        started_at = utc_now()

        total_entries = await self.store.count_entries(
            self.chain_id, from_timestamp=from_timestamp, to_timestamp=to_timestamp
        )

        entries_verified = 0
        valid_entries = 0
        invalid_entries = 0
        entries_without_hash = 0
        break_point: Optional[HashChainBreakPoint] = None
        chain_seed: Optional[str] = None
        first_entry_id: Optional[str] = None
        last_entry_id: Optional[str] = None
        previous_hash: Optional[str] = None
        position = 0
        offset = 0
        should_continue = total_entries > 0

        while should_continue:
            current_batch = batch_size
            if limit is not None:
                current_batch = min(batch_size, limit - entries_verified)
            if current_batch <= 0:
                break

            entries = await self.store.list_entries(
                self.chain_id,
                offset=offset,
                limit=current_batch,
                from_timestamp=from_timestamp,
                to_timestamp=to_timestamp,
            )
            if not entries:
                break

            for entry in entries:
                if first_entry_id is None:
                    first_entry_id = entry.id
                last_entry_id = entry.id

                if not entry.log_hash:
                    # Legacy entry written before chaining; not a break
                    entries_without_hash += 1
                else:
                    if entry.chain_seed:
                        chain_seed = entry.chain_seed
                        previous_hash = entry.chain_seed
                    elif previous_hash is None:
                        # Range starts mid-chain
                        previous_hash = await self._previous_hash_for(entry)

                    hash_input = previous_hash or ""
                    computed_hash = compute_entry_hash(entry, hash_input)

                    if computed_hash == entry.log_hash:
                        valid_entries += 1
                    else:
                        invalid_entries += 1
                        if break_point is None:
                            break_point = HashChainBreakPoint(
                                entry_id=entry.id,
                                timestamp=entry.timestamp,
                                position=position,
                                stored_hash=entry.log_hash,
                                computed_hash=computed_hash,
                                previous_hash_used=hash_input,
                                description=describe_break(
                                    entry, computed_hash, hash_input, position
                                ),
                            )
                            logger.warning(
                                "Audit hash chain break detected",
                                chain_id=self.chain_id,
                                entry_id=entry.id,
                                position=position,
                            )

                    # Successors are linked to what is stored, not to what it should be
                    previous_hash = entry.log_hash

                entries_verified += 1
                position += 1

                if break_point is not None and stop_on_first_break:
                    should_continue = False
                    break
                if limit is not None and entries_verified >= limit:
                    should_continue = False
                    break

            offset += len(entries)
            if len(entries) < current_batch:
                should_continue = False

        completed_at = utc_now()
        result = HashChainVerificationResult(
            is_valid=break_point is None and invalid_entries == 0,
            total_entries=total_entries,
            entries_verified=entries_verified,
            valid_entries=valid_entries,
            invalid_entries=invalid_entries,
            entries_without_hash=entries_without_hash,
            break_point=break_point,
            chain_seed=chain_seed,
            first_entry_id=first_entry_id,
            last_entry_id=last_entry_id,
            verification_started_at=started_at,
            verification_completed_at=completed_at,
            duration_ms=_elapsed_ms(started_at, completed_at),
        )

        logger.info(
            "Audit hash chain verified",
            chain_id=self.chain_id,
            is_valid=result.is_valid,
            entries_verified=entries_verified,
            invalid_entries=invalid_entries,
            duration_ms=result.duration_ms,
        )
        return result

    async def verify_entry(self, entry_id: str) -> Optional[EntryVerification]:
        """Recompute one entry against its predecessor (or the chain seed)."""
        entry = await self.store.get_entry(entry_id)
        if entry is None:
            return None

        previous_hash_used = await self._previous_hash_for(entry)
        computed_hash = compute_entry_hash(entry, previous_hash_used)

        return EntryVerification(
            id=entry.id,
            timestamp=entry.timestamp,
            is_valid=computed_hash == entry.log_hash,
            stored_hash=entry.log_hash,
            computed_hash=computed_hash,
            previous_hash_used=previous_hash_used,
        )

    async def quick_integrity_check(
        self, sample_size: Optional[int] = None
    ) -> QuickIntegrityResult:
        """
        Cheap health signal without a full walk.

        Checks that the chain has a seed, that the newest entries link to each
        other, and recomputes a random sample of entries.
        """
        if sample_size is None:
            sample_size = self.settings.audit_quick_check_sample_size

        try:
            first = await self.store.get_first_hashed_entry(self.chain_id)
            if first is None:
                return QuickIntegrityResult(
                    is_likely_valid=True,
                    has_chain_seed=False,
                    last_entries_valid=True,
                    sample_valid=True,
                    details="Audit chain has no hashed entries yet",
                )

            has_chain_seed = bool(first.chain_seed)

            recent = await self.store.list_recent_entries(
                self.chain_id, LINK_CHECK_ENTRIES
            )
            last_entries_valid = all(
                current.previous_log_hash == previous.log_hash
                for previous, current in zip(recent, recent[1:])
            )

            sample_valid = await self._sample_is_valid(sample_size)
        except AuditStoreError as e:
            logger.error(
                "Audit quick integrity check failed",
                chain_id=self.chain_id,
                error=str(e),
            )
            return QuickIntegrityResult(
                is_likely_valid=False,
                has_chain_seed=False,
                last_entries_valid=False,
                sample_valid=False,
                details=f"Verification failed: {e}",
            )

        is_likely_valid = has_chain_seed and last_entries_valid and sample_valid

        if is_likely_valid:
            details = "Hash chain structure appears valid"
        else:
            issues: List[str] = []
            if not has_chain_seed:
                issues.append("Missing chain seed.")
            if not last_entries_valid:
                issues.append("Last entries have inconsistent hashes.")
            if not sample_valid:
                issues.append("Sampled entries failed hash verification.")
            details = "Issues detected: " + " ".join(issues)

        return QuickIntegrityResult(
            is_likely_valid=is_likely_valid,
            has_chain_seed=has_chain_seed,
            last_entries_valid=last_entries_valid,
            sample_valid=sample_valid,
            details=details,
        )

    async def _sample_is_valid(self, sample_size: int) -> bool:
        total = await self.store.count_entries(self.chain_id)
        if sample_size <= 0 or total == 0:
            return True

        for offset in random.sample(range(total), min(sample_size, total)):
            entries = await self.store.list_entries(self.chain_id, offset=offset, limit=1)
            if not entries or not entries[0].log_hash:
                continue
            verification = await self.verify_entry(entries[0].id)
            if verification is not None and not verification.is_valid:
                return False
        return True

    async def get_hash_chain_stats(self) -> HashChainStats:
        """Counts and bounds of the chain without verifying it."""
        total_entries = await self.store.count_entries(self.chain_id)
        entries_with_hash = await self.store.count_entries(self.chain_id, hashed=True)
        first_hashed = await self.store.get_first_hashed_entry(self.chain_id)
        oldest = await self.store.list_entries(self.chain_id, limit=1)
        newest = await self.store.list_recent_entries(
            self.chain_id, 1, hashed_only=False
        )

        return HashChainStats(
            total_entries=total_entries,
            entries_with_hash=entries_with_hash,
            entries_without_hash=total_entries - entries_with_hash,
            has_chain_seed=bool(first_hashed and first_hashed.chain_seed),
            first_entry_timestamp=oldest[0].timestamp if oldest else None,
            last_entry_timestamp=newest[0].timestamp if newest else None,
        )
