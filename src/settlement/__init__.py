"""
Settlement orchestration: allocation, dispatch with retry, idempotency and
queue maintenance.
"""

from .retry import RetryPolicy
from .idempotency import IdempotencyConflictError, IdempotencyGuard
from .orchestrator import (
    SettlementOrchestrator,
    StepResult,
    StepStatus,
    AuditAction,
    ConfirmationSource,
    summarize,
)

__all__ = [
    "RetryPolicy",
    "IdempotencyConflictError",
    "IdempotencyGuard",
    "SettlementOrchestrator",
    "StepResult",
    "StepStatus",
    "AuditAction",
    "ConfirmationSource",
    "summarize",
]
