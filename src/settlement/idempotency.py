"""
Settlement Idempotency

At most one externally visible execution per caller-supplied key. The key
is recorded in the ledger, under its lock, before anything is dispatched.
"""

from typing import Any, Dict, List, Optional
import structlog

from ledger import IdempotencyState, SettlementLedger

logger = structlog.get_logger()


class IdempotencyConflictError(Exception):
    """Raised when a key is still in flight or was used for a different request."""
    pass


class IdempotencyGuard:
    """Ledger-backed key registry for route_and_execute."""

    def __init__(self, ledger: SettlementLedger):
        self.ledger = ledger

    def begin(self, key: str, amount: int, currency: str) -> Optional[List[Dict[str, Any]]]:
        """
        Claim `key` for a new run.

        Returns None when the caller should proceed, or the cached step
        results of the completed earlier run.
        """
        created, record = self.ledger.begin_idempotent(key, amount, currency)
        if created:
            logger.info("idempotency_key_claimed", key=key)
            return None

        if record.amount != amount or record.currency.upper() != currency.upper():
            logger.error(
                "idempotency_key_reused",
                key=key,
                original_amount=record.amount,
                original_currency=record.currency,
            )
            raise IdempotencyConflictError(
                f"Idempotency key {key} was used for {record.amount} {record.currency}"
            )

        if record.state is IdempotencyState.IN_PROGRESS:
            logger.warning("idempotency_key_in_flight", key=key)
            raise IdempotencyConflictError(f"Settlement {key} is already in progress")

        logger.info("idempotency_replay", key=key, steps=len(record.results))
        return record.results

    def complete(self, key: str, results: List[Dict[str, Any]]) -> None:
        self.ledger.complete_idempotent(key, results)

    def abandon(self, key: str) -> bool:
        return self.ledger.abandon_idempotent(key)
