"""Stateful services: rate limiting, the execution saga and the audit chain."""

from .audit_logger import (
    AuditLogger,
    build_input_summary,
    compute_log_hash,
    generate_chain_seed,
)
from .audit_store import (
    AuditChainConflictError,
    AuditStore,
    AuditStoreError,
    InMemoryAuditStore,
)
from .execution_saga import (
    ExecuteToolDependencies,
    ExecutionSaga,
    create_tool_executor,
    execute_tool_saga,
)
from .hash_chain_verifier import (
    EntryVerification,
    HashChainBreakPoint,
    HashChainStats,
    HashChainVerificationResult,
    HashChainVerifier,
    QuickIntegrityResult,
)
from .rate_limiter import (
    CounterResult,
    CounterStore,
    InMemoryCounterStore,
    IntegrationRateLimiter,
    RateLimitDecision,
    resolve_effective_rate_limit,
)

__all__ = [
    "AuditChainConflictError",
    "AuditLogger",
    "AuditStore",
    "AuditStoreError",
    "CounterResult",
    "CounterStore",
    "EntryVerification",
    "ExecuteToolDependencies",
    "ExecutionSaga",
    "HashChainBreakPoint",
    "HashChainStats",
    "HashChainVerificationResult",
    "HashChainVerifier",
    "InMemoryAuditStore",
    "InMemoryCounterStore",
    "IntegrationRateLimiter",
    "QuickIntegrityResult",
    "RateLimitDecision",
    "build_input_summary",
    "compute_log_hash",
    "create_tool_executor",
    "execute_tool_saga",
    "generate_chain_seed",
    "resolve_effective_rate_limit",
]
