"""
Settlement Ledger

Durable, lock-guarded record of daily usage, transactions and the overflow
queue. The ledger is the single source of truth for daily-limit enforcement.
"""

from .lock import Lock, FileLock, ThreadLock, LockTimeoutError
from .storage import LedgerStorage, JsonFileStorage, InMemoryStorage, LedgerError
from .models import (
    Transaction,
    TransactionStatus,
    QueueItem,
    QueueReason,
    QueueStatus,
    Reservation,
    IdempotencyRecord,
    IdempotencyState,
)
from .ledger import SettlementLedger

__all__ = [
    "Lock",
    "FileLock",
    "ThreadLock",
    "LockTimeoutError",
    "LedgerStorage",
    "JsonFileStorage",
    "InMemoryStorage",
    "LedgerError",
    "Transaction",
    "TransactionStatus",
    "QueueItem",
    "QueueReason",
    "QueueStatus",
    "Reservation",
    "IdempotencyRecord",
    "IdempotencyState",
    "SettlementLedger",
]
