"""
Data Models for the Settlement Ledger

Plain records as stored in the ledger snapshot. Every model round-trips
through to_dict()/from_dict() so the JSON layout stays the single source of
truth.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TransactionStatus(Enum):
    """Lifecycle of a transaction record."""
    QUEUED = "QUEUED"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses that consume daily capacity
COUNTED_STATUSES = frozenset({TransactionStatus.IN_TRANSIT, TransactionStatus.COMPLETED})


class QueueReason(Enum):
    """Why money landed on the overflow queue."""
    OVERFLOW_LIMITS = "OVERFLOW_LIMITS"
    MISSING_RESOURCE = "MISSING_RESOURCE"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    NO_ROUTE = "NO_ROUTE"


class QueueStatus(Enum):
    QUEUED = "QUEUED"
    RETRYING = "RETRYING"  # claimed by a drain pass


@dataclass
class Transaction:
    """A routed transfer as recorded in the ledger history."""
    id: str
    timestamp: str
    rail: str
    amount: int
    status: TransactionStatus
    currency: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[str] = None

    @property
    def counts_toward_usage(self) -> bool:
        return self.status in COUNTED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "rail": self.rail,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "details": self.details,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Transaction":
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            rail=row.get("rail") or row.get("channel", ""),
            amount=row["amount"],
            status=TransactionStatus(row["status"]),
            currency=row.get("currency", ""),
            details=row.get("details") or {},
            updated_at=row.get("updated_at"),
        )


@dataclass
class QueueItem:
    """Money that could not be routed this cycle."""
    id: str
    timestamp: str
    rail: str
    amount: int
    reason: QueueReason
    currency: str = ""
    status: QueueStatus = QueueStatus.QUEUED
    claimed_at: Optional[str] = None
    claim_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "rail": self.rail,
            "amount": self.amount,
            "currency": self.currency,
            "reason": self.reason.value,
            "status": self.status.value,
            "claimed_at": self.claimed_at,
            "claim_id": self.claim_id,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "QueueItem":
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            rail=row.get("rail") or row.get("channel", ""),
            amount=row["amount"],
            reason=QueueReason(row["reason"]),
            currency=row.get("currency", ""),
            status=QueueStatus(row.get("status", "QUEUED")),
            claimed_at=row.get("claimed_at"),
            claim_id=row.get("claim_id"),
            details=row.get("details") or {},
        )


@dataclass
class Reservation:
    """Daily capacity held by a step between allocation and recording."""
    id: str
    date: str
    rail: str
    amount: int
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "rail": self.rail,
            "amount": self.amount,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Reservation":
        return cls(
            id=row["id"],
            date=row["date"],
            rail=row["rail"],
            amount=row["amount"],
            created_at=row["created_at"],
        )


class IdempotencyState(Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


@dataclass
class IdempotencyRecord:
    """What happened the first time a settlement key was seen."""
    key: str
    state: IdempotencyState
    amount: int
    currency: str
    created_at: str
    results: List[Dict[str, Any]] = field(default_factory=list)
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "amount": self.amount,
            "currency": self.currency,
            "created_at": self.created_at,
            "results": self.results,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "IdempotencyRecord":
        return cls(
            key=row["key"],
            state=IdempotencyState(row["state"]),
            amount=row["amount"],
            currency=row["currency"],
            created_at=row["created_at"],
            results=row.get("results") or [],
            completed_at=row.get("completed_at"),
        )
