"""
Settlement Ledger

Durable store of per-day per-rail usage, transaction history, the overflow
queue, capacity reservations and idempotency records.

Every public operation loads, mutates and saves the snapshot while holding
the ledger lock for the whole read-modify-write. Checking capacity and
recording usage in separate lock scopes would let two processes both pass
the check and jointly exceed a daily cap.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple, Union
import structlog

from .lock import FileLock, Lock, ThreadLock
from .models import (
    COUNTED_STATUSES,
    IdempotencyRecord,
    IdempotencyState,
    QueueItem,
    QueueReason,
    QueueStatus,
    Reservation,
    Transaction,
    TransactionStatus,
)
from .storage import InMemoryStorage, JsonFileStorage, LedgerError, LedgerStorage

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str, now: datetime) -> str:
    return f"{prefix}_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


def _rail_name(rail: Any) -> str:
    return getattr(rail, "value", rail)


class SettlementLedger:
    """
    Lock-guarded settlement ledger.

    Usage:
        ledger = SettlementLedger.from_path(Path("data/financial/ledger.json"))
        reservation = ledger.reserve_capacity(Rail.BANK_WIRE, 70_000, 1_000_000, 50_000)
        ledger.record_transaction(Rail.BANK_WIRE, reservation.amount,
                                  TransactionStatus.IN_TRANSIT,
                                  reservation_id=reservation.id)
    """

    def __init__(
        self,
        storage: LedgerStorage,
        lock: Lock,
        clock: Optional[Clock] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.storage = storage
        self.lock = lock
        self._clock = clock or utc_now
        self.lock_timeout = lock_timeout

    @classmethod
    def from_path(
        cls,
        path: Path,
        lock_dir: Optional[Path] = None,
        lock_timeout: float = 5.0,
        clock: Optional[Clock] = None,
    ) -> "SettlementLedger":
        path = Path(path)
        lock_path = (Path(lock_dir) if lock_dir else path.parent) / f"{path.stem}.lock"
        return cls(
            storage=JsonFileStorage(path),
            lock=FileLock(lock_path, default_timeout=lock_timeout),
            clock=clock,
            lock_timeout=lock_timeout,
        )

    @classmethod
    def from_config(cls, config: Any, clock: Optional[Clock] = None) -> "SettlementLedger":
        return cls.from_path(
            config.ledger_file,
            lock_dir=config.lock_directory,
            lock_timeout=config.lock_timeout_seconds,
            clock=clock,
        )

    @classmethod
    def in_memory(cls, clock: Optional[Clock] = None, lock_timeout: float = 5.0) -> "SettlementLedger":
        return cls(
            storage=InMemoryStorage(),
            lock=ThreadLock("settlement_ledger", default_timeout=lock_timeout),
            clock=clock,
            lock_timeout=lock_timeout,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, write: bool = True) -> Generator[Dict[str, Any], None, None]:
        """Hold the lock across load -> mutate -> save. Nothing is saved on error."""
        with self.lock.held(self.lock_timeout):
            state = self.storage.load()
            yield state
            if write:
                self.storage.save(state)

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> str:
        return self._clock().date().isoformat()

    @staticmethod
    def _usage(state: Dict[str, Any], day: str, rail: str) -> int:
        return int(state["daily_usage"].get(day, {}).get(rail, 0))

    @staticmethod
    def _reserved(state: Dict[str, Any], day: str, rail: str) -> int:
        return sum(
            r["amount"] for r in state["reservations"]
            if r["date"] == day and r["rail"] == rail
        )

    @staticmethod
    def _add_usage(state: Dict[str, Any], day: str, rail: str, amount: int) -> None:
        day_usage = state["daily_usage"].setdefault(day, {})
        day_usage[rail] = int(day_usage.get(rail, 0)) + amount

    @staticmethod
    def _pop_reservation(state: Dict[str, Any], reservation_id: str) -> Optional[Dict[str, Any]]:
        for i, r in enumerate(state["reservations"]):
            if r["id"] == reservation_id:
                return state["reservations"].pop(i)
        return None

    # ------------------------------------------------------------------
    # Usage and capacity
    # ------------------------------------------------------------------

    def get_daily_usage(self, rail: Any, day: Optional[str] = None) -> int:
        """Amount successfully routed through the rail on the given (default: current) day."""
        rail_name = _rail_name(rail)
        with self._locked(write=False) as state:
            return self._usage(state, day or self.today(), rail_name)

    def remaining_capacity(self, rail: Any, daily_limit: int, day: Optional[str] = None) -> int:
        """Daily limit minus committed usage and outstanding reservations, floored at 0."""
        rail_name = _rail_name(rail)
        with self._locked(write=False) as state:
            day = day or self.today()
            used = self._usage(state, day, rail_name) + self._reserved(state, day, rail_name)
            return max(0, daily_limit - used)

    def usage_snapshot(self, day: Optional[str] = None) -> Dict[str, int]:
        with self._locked(write=False) as state:
            return dict(state["daily_usage"].get(day or self.today(), {}))

    def reserve_capacity(
        self,
        rail: Any,
        requested: int,
        daily_limit: int,
        min_amount: int = 0,
    ) -> Optional[Reservation]:
        """
        Atomically claim up to `requested` of today's remaining capacity.

        Grants min(requested, capacity). Returns None when the grant would
        be zero or below the rail's minimum; dust is never allocated.
        """
        rail_name = _rail_name(rail)
        with self._locked() as state:
            now = self.now()
            day = now.date().isoformat()
            used = self._usage(state, day, rail_name) + self._reserved(state, day, rail_name)
            capacity = max(0, daily_limit - used)
            grant = min(requested, capacity)

            if grant <= 0 or grant < min_amount:
                logger.info(
                    "capacity_insufficient",
                    rail=rail_name,
                    requested=requested,
                    capacity=capacity,
                    min_amount=min_amount,
                )
                return None

            reservation = Reservation(
                id=_new_id("rsv", now),
                date=day,
                rail=rail_name,
                amount=grant,
                created_at=now.isoformat(),
            )
            state["reservations"].append(reservation.to_dict())

        logger.info("capacity_reserved", rail=rail_name, amount=grant, reservation_id=reservation.id)
        return reservation

    def release_reservation(self, reservation_id: str) -> bool:
        with self._locked() as state:
            released = self._pop_reservation(state, reservation_id) is not None
        if released:
            logger.info("reservation_released", reservation_id=reservation_id)
        return released

    def release_stale_reservations(self, max_age_seconds: float) -> int:
        """Drop reservations left behind by runs that died mid-flight."""
        with self._locked() as state:
            cutoff = self.now() - timedelta(seconds=max_age_seconds)
            keep, stale = [], []
            for r in state["reservations"]:
                created = datetime.fromisoformat(r["created_at"])
                (stale if created < cutoff else keep).append(r)
            state["reservations"] = keep

        if stale:
            logger.warning(
                "stale_reservations_released",
                count=len(stale),
                amount=sum(r["amount"] for r in stale),
            )
        return len(stale)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def record_transaction(
        self,
        rail: Any,
        amount: int,
        status: Union[TransactionStatus, str],
        tx_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        currency: str = "",
        reservation_id: Optional[str] = None,
    ) -> Transaction:
        """
        Append a transaction; counted statuses increment today's usage in
        the same locked operation. A matching reservation is consumed.
        """
        status = TransactionStatus(status) if isinstance(status, str) else status
        rail_name = _rail_name(rail)

        with self._locked() as state:
            now = self.now()
            tx_id = tx_id or _new_id("tx", now)
            if any(t["id"] == tx_id for t in state["transactions"]):
                raise LedgerError(f"Duplicate transaction id {tx_id}")

            if reservation_id and self._pop_reservation(state, reservation_id) is None:
                logger.warning("reservation_missing", reservation_id=reservation_id, tx_id=tx_id)

            if status in COUNTED_STATUSES:
                self._add_usage(state, now.date().isoformat(), rail_name, amount)

            transaction = Transaction(
                id=tx_id,
                timestamp=now.isoformat(),
                rail=rail_name,
                amount=amount,
                status=status,
                currency=currency,
                details=dict(details or {}),
            )
            state["transactions"].append(transaction.to_dict())

        logger.info(
            "transaction_recorded",
            tx_id=tx_id,
            rail=rail_name,
            amount=amount,
            status=status.value,
        )
        return transaction

    def update_transaction_status(
        self,
        tx_id: str,
        status: Union[TransactionStatus, str],
        details: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        In-place status transition. Usage is incremented the first time a
        transaction enters a counted status and is never decremented.
        """
        status = TransactionStatus(status) if isinstance(status, str) else status

        with self._locked() as state:
            for row in state["transactions"]:
                if row["id"] == tx_id:
                    break
            else:
                raise LedgerError(f"Unknown transaction {tx_id}")

            previous = TransactionStatus(row["status"])
            now = self.now()
            if status in COUNTED_STATUSES and previous not in COUNTED_STATUSES:
                self._add_usage(state, now.date().isoformat(), row["rail"], row["amount"])

            row["status"] = status.value
            row["updated_at"] = now.isoformat()
            if details:
                row.setdefault("details", {}).update(details)
            transaction = Transaction.from_dict(row)

        logger.info("transaction_status_updated", tx_id=tx_id, old=previous.value, new=status.value)
        return transaction

    def list_transactions(
        self,
        rail: Any = None,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        with self._locked(write=False) as state:
            rows = state["transactions"]
        items = [Transaction.from_dict(r) for r in rows]
        if rail is not None:
            items = [t for t in items if t.rail == _rail_name(rail)]
        if status is not None:
            items = [t for t in items if t.status == status]
        if limit is not None:
            items = items[-limit:]
        return items

    # ------------------------------------------------------------------
    # Overflow queue
    # ------------------------------------------------------------------

    def queue_transaction(
        self,
        rail: Any,
        amount: int,
        reason: Union[QueueReason, str],
        currency: str = "",
        details: Optional[Dict[str, Any]] = None,
        reservation_id: Optional[str] = None,
    ) -> QueueItem:
        """Append an overflow entry. Does not touch daily usage; frees any reservation."""
        reason = QueueReason(reason) if isinstance(reason, str) else reason
        rail_name = _rail_name(rail)

        with self._locked() as state:
            if reservation_id:
                self._pop_reservation(state, reservation_id)
            now = self.now()
            item = QueueItem(
                id=_new_id("queue", now),
                timestamp=now.isoformat(),
                rail=rail_name,
                amount=amount,
                reason=reason,
                currency=currency,
                details=dict(details or {}),
            )
            state["queued"].append(item.to_dict())

        logger.info(
            "transaction_queued",
            queue_id=item.id,
            rail=rail_name,
            amount=amount,
            reason=reason.value,
        )
        return item

    def list_queued(
        self,
        currency: Optional[str] = None,
        status: Optional[QueueStatus] = None,
    ) -> List[QueueItem]:
        with self._locked(write=False) as state:
            items = [QueueItem.from_dict(r) for r in state["queued"]]
        if currency is not None:
            items = [q for q in items if q.currency.upper() == currency.upper()]
        if status is not None:
            items = [q for q in items if q.status == status]
        return items

    def queued_total(self, currency: Optional[str] = None) -> int:
        return sum(q.amount for q in self.list_queued(currency=currency))

    def claim_queued(self, currency: str, claim_id: Optional[str] = None) -> Tuple[str, List[QueueItem]]:
        """Mark every waiting item in the currency as RETRYING under one claim id."""
        with self._locked() as state:
            now = self.now()
            claim_id = claim_id or _new_id("claim", now)
            claimed = []
            for row in state["queued"]:
                if row.get("status", "QUEUED") != QueueStatus.QUEUED.value:
                    continue
                if row.get("currency", "").upper() != currency.upper():
                    continue
                row["status"] = QueueStatus.RETRYING.value
                row["claimed_at"] = now.isoformat()
                row["claim_id"] = claim_id
                claimed.append(QueueItem.from_dict(row))

        logger.info("queue_claimed", claim_id=claim_id, count=len(claimed), currency=currency)
        return claim_id, claimed

    def finish_claim(self, claim_id: str) -> int:
        """Remove the items of a claim whose amount has been re-routed."""
        with self._locked() as state:
            before = len(state["queued"])
            state["queued"] = [r for r in state["queued"] if r.get("claim_id") != claim_id]
            removed = before - len(state["queued"])
        logger.info("queue_claim_finished", claim_id=claim_id, removed=removed)
        return removed

    def release_claims(
        self,
        claim_id: Optional[str] = None,
        max_age_seconds: Optional[float] = None,
    ) -> int:
        """Return claimed items to QUEUED, either one claim or every claim older than max_age."""
        with self._locked() as state:
            cutoff = None
            if max_age_seconds is not None:
                cutoff = self.now() - timedelta(seconds=max_age_seconds)
            released = 0
            for row in state["queued"]:
                if row.get("status") != QueueStatus.RETRYING.value:
                    continue
                if claim_id is not None and row.get("claim_id") != claim_id:
                    continue
                if cutoff is not None and datetime.fromisoformat(row["claimed_at"]) >= cutoff:
                    continue
                row["status"] = QueueStatus.QUEUED.value
                row["claimed_at"] = None
                row["claim_id"] = None
                released += 1

        if released:
            logger.warning("queue_claims_released", claim_id=claim_id, count=released)
        return released

    def resolve_queued(
        self,
        queue_id: str,
        details: Optional[Dict[str, Any]] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> Transaction:
        """
        Promote a queued item that settled independently: removal from the
        queue and the transaction write happen in one locked operation.
        """
        with self._locked() as state:
            for i, row in enumerate(state["queued"]):
                if row["id"] == queue_id:
                    item = QueueItem.from_dict(state["queued"].pop(i))
                    break
            else:
                raise LedgerError(f"Unknown queue item {queue_id}")

            now = self.now()
            if status in COUNTED_STATUSES:
                self._add_usage(state, now.date().isoformat(), item.rail, item.amount)

            transaction = Transaction(
                id=_new_id("tx", now),
                timestamp=now.isoformat(),
                rail=item.rail,
                amount=item.amount,
                status=status,
                currency=item.currency,
                details={"resolved_from": queue_id, **(details or {})},
            )
            state["transactions"].append(transaction.to_dict())

        logger.info("queue_item_resolved", queue_id=queue_id, tx_id=transaction.id, amount=item.amount)
        return transaction

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    def begin_idempotent(self, key: str, amount: int, currency: str) -> Tuple[bool, IdempotencyRecord]:
        """
        Record a settlement key before any dispatch.

        Returns (created, record). When created is False the caller must not
        dispatch; the record tells it what happened the first time.
        """
        with self._locked() as state:
            existing = state["idempotency"].get(key)
            if existing is not None:
                return False, IdempotencyRecord.from_dict(existing)

            record = IdempotencyRecord(
                key=key,
                state=IdempotencyState.IN_PROGRESS,
                amount=amount,
                currency=currency,
                created_at=self.now().isoformat(),
            )
            state["idempotency"][key] = record.to_dict()
        return True, record

    def complete_idempotent(self, key: str, results: List[Dict[str, Any]]) -> IdempotencyRecord:
        with self._locked() as state:
            row = state["idempotency"].get(key)
            if row is None:
                raise LedgerError(f"Unknown idempotency key {key}")
            row["state"] = IdempotencyState.COMPLETED.value
            row["results"] = results
            row["completed_at"] = self.now().isoformat()
            return IdempotencyRecord.from_dict(row)

    def abandon_idempotent(self, key: str) -> bool:
        """Forget a key whose run failed before dispatching anything."""
        with self._locked() as state:
            row = state["idempotency"].get(key)
            if row is None or row["state"] != IdempotencyState.IN_PROGRESS.value:
                return False
            del state["idempotency"][key]
            return True

    def get_idempotent(self, key: str) -> Optional[IdempotencyRecord]:
        with self._locked(write=False) as state:
            row = state["idempotency"].get(key)
        return IdempotencyRecord.from_dict(row) if row else None
