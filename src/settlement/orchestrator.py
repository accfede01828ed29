"""
Settlement Orchestrator

Top-level routing policy: rank rails, split the amount greedily across
their remaining daily capacity, dispatch each allocation with retry, and
journal every decision.

The caller always gets StepResults covering 100% of the requested amount:
each unit is either IN_TRANSIT or explicitly queued. A single rail's failure
never stops the remaining steps; a ledger lock timeout aborts the run.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import structlog

from audit import AuditLog
from gateways import (
    DispatchResult,
    GatewayDispatcher,
    GatewayError,
    TerminalGatewayError,
    TransferInstruction,
    build_dispatcher,
    mask_destination,
)
from ledger import (
    FileLock,
    LockTimeoutError,
    QueueItem,
    QueueReason,
    QueueStatus,
    Reservation,
    SettlementLedger,
    TransactionStatus,
)
from rails import (
    QUEUE_OVERFLOW,
    Capability,
    JsonStatsStore,
    Rail,
    RailOptimizer,
    SettlementConfig,
    check_capability,
)

from .idempotency import IdempotencyGuard
from .retry import RetryPolicy

logger = structlog.get_logger()


class StepStatus(Enum):
    IN_TRANSIT = "IN_TRANSIT"
    QUEUED = "QUEUED"
    QUEUED_MISSING_RESOURCE = "QUEUED_MISSING_RESOURCE"
    FAILED_QUEUED = "FAILED_QUEUED"


class AuditAction(Enum):
    SETTLEMENT_STARTED = "SETTLEMENT_STARTED"
    STEP_IN_TRANSIT = "STEP_IN_TRANSIT"
    STEP_QUEUED = "STEP_QUEUED"
    STEP_QUEUED_MISSING_RESOURCE = "STEP_QUEUED_MISSING_RESOURCE"
    STEP_FAILED_QUEUED = "STEP_FAILED_QUEUED"
    SETTLEMENT_COMPLETED = "SETTLEMENT_COMPLETED"
    QUEUE_ITEM_RESOLVED = "QUEUE_ITEM_RESOLVED"
    QUEUE_DRAINED = "QUEUE_DRAINED"


_STEP_ACTIONS = {
    StepStatus.IN_TRANSIT: AuditAction.STEP_IN_TRANSIT,
    StepStatus.QUEUED: AuditAction.STEP_QUEUED,
    StepStatus.QUEUED_MISSING_RESOURCE: AuditAction.STEP_QUEUED_MISSING_RESOURCE,
    StepStatus.FAILED_QUEUED: AuditAction.STEP_FAILED_QUEUED,
}


@dataclass
class StepResult:
    """Outcome of one allocation step."""
    status: StepStatus
    rail: str
    amount: int
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    queue_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "rail": self.rail,
            "amount": self.amount,
            "reason": self.reason,
            "transaction_id": self.transaction_id,
            "queue_id": self.queue_id,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            status=StepStatus(data["status"]),
            rail=data["rail"],
            amount=data["amount"],
            reason=data.get("reason"),
            transaction_id=data.get("transaction_id"),
            queue_id=data.get("queue_id"),
            details=data.get("details") or {},
        )


@dataclass
class AllocationStep:
    rail: Rail
    amount: int
    reservation: Reservation


class ConfirmationSource(ABC):
    """Independent evidence that a queued amount has settled after all."""

    @abstractmethod
    def confirm(self, item: QueueItem) -> Optional[Dict[str, Any]]:
        """Return settlement details if the item cleared, else None."""
        pass


class SettlementOrchestrator:
    """
    Routes a settlement across rails.

    Usage:
        orchestrator = SettlementOrchestrator.from_config(SettlementConfig.from_env())
        results = orchestrator.route_and_execute(70_000, "USD", idempotency_key="inv-2041")
    """

    def __init__(
        self,
        config: SettlementConfig,
        ledger: SettlementLedger,
        optimizer: RailOptimizer,
        dispatcher: GatewayDispatcher,
        audit: AuditLog,
        retry_policy: Optional[RetryPolicy] = None,
        confirmation_source: Optional[ConfirmationSource] = None,
    ):
        self.config = config
        self.registry = config.registry()
        self.ledger = ledger
        self.optimizer = optimizer
        self.dispatcher = dispatcher
        self.audit = audit
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.confirmation_source = confirmation_source
        self.idempotency = IdempotencyGuard(ledger)

    @classmethod
    def from_config(
        cls,
        config: SettlementConfig,
        dispatcher: Optional[GatewayDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        **kwargs: Any,
    ) -> "SettlementOrchestrator":
        optimizer = RailOptimizer(
            config.registry(),
            store=JsonStatsStore(
                config.stats_file,
                lock=FileLock(
                    config.lock_directory / "rail_stats.lock",
                    default_timeout=config.lock_timeout_seconds,
                ),
            ),
            clock=clock,
            exploration_rate=config.exploration_rate,
            circuit_breaker_threshold=config.circuit_breaker_threshold,
            fallback_rail=config.fallback_rail,
        )
        return cls(
            config=config,
            ledger=SettlementLedger.from_config(config, clock=clock),
            optimizer=optimizer,
            dispatcher=dispatcher or build_dispatcher(config),
            audit=AuditLog.from_config(config, clock=clock),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def route_and_execute(
        self,
        total_amount: int,
        currency: str,
        destination: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> List[StepResult]:
        """
        Route `total_amount` (minor units) of `currency`.

        With an idempotency key, a repeated call returns the first call's
        results without dispatching again.
        """
        if isinstance(total_amount, bool) or not isinstance(total_amount, int) or total_amount <= 0:
            raise ValueError("total_amount must be a positive integer in minor units")
        currency = currency.upper()

        if idempotency_key:
            cached = self.idempotency.begin(idempotency_key, total_amount, currency)
            if cached is not None:
                return [StepResult.from_dict(r) for r in cached]

        run_id = idempotency_key or f"run_{uuid.uuid4().hex[:12]}"
        state = {"dispatched": False}
        try:
            self._journal(
                AuditAction.SETTLEMENT_STARTED,
                run_id,
                after={"amount": total_amount, "currency": currency},
                context={"idempotency_key": idempotency_key},
            )

            # Step 1: Reconcile earlier overflow
            self.reconcile_queue()

            results = self._route(run_id, total_amount, currency, destination, state)
        except Exception as e:
            self._on_abort(run_id, idempotency_key, state, e)
            raise

        if idempotency_key:
            self.idempotency.complete(idempotency_key, [r.to_dict() for r in results])

        summary = summarize(results)
        self._journal(AuditAction.SETTLEMENT_COMPLETED, run_id, after=summary)
        logger.info("settlement_completed", run_id=run_id, **summary)
        return results

    def _on_abort(self, run_id: str, key: Optional[str], state: Dict[str, Any], error: Exception) -> None:
        level = logger.critical if isinstance(error, LockTimeoutError) else logger.error
        level("settlement_aborted", run_id=run_id, error=str(error), dispatched=state["dispatched"])

        # A key stays IN_PROGRESS once money may have moved
        if key and not state["dispatched"]:
            try:
                self.idempotency.abandon(key)
            except LockTimeoutError:
                logger.critical("idempotency_key_stuck", key=key)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route(
        self,
        run_id: str,
        total_amount: int,
        currency: str,
        destination: Optional[str],
        state: Dict[str, Any],
    ) -> List[StepResult]:
        # Step 2: Rank
        ranked = self.optimizer.rank(total_amount, currency)

        # Step 3: Greedy allocation against reserved capacity
        steps, remaining = self._allocate(ranked, total_amount)

        # Steps 5-6: Capability check and dispatch, in allocation order
        results: List[StepResult] = []
        try:
            for index, step in enumerate(steps):
                result = self._execute_step(run_id, index, step, currency, destination, state)
                results.append(result)
                self._journal(_STEP_ACTIONS[result.status], run_id, after=result.to_dict())
        finally:
            # Reservations of steps never dispatched must not hold capacity
            for step in steps[len(results):]:
                if step.reservation.id == state.get("dispatched_reservation"):
                    continue
                try:
                    self.ledger.release_reservation(step.reservation.id)
                except LockTimeoutError:
                    logger.critical("reservation_not_released", reservation_id=step.reservation.id)

        # Step 4: Overflow for whatever no rail could take
        if remaining > 0:
            reason = QueueReason.OVERFLOW_LIMITS if ranked else QueueReason.NO_ROUTE
            item = self.ledger.queue_transaction(
                QUEUE_OVERFLOW,
                remaining,
                reason,
                currency=currency,
                details={"run_id": run_id},
            )
            result = StepResult(
                status=StepStatus.QUEUED,
                rail=QUEUE_OVERFLOW,
                amount=remaining,
                reason=reason.value,
                queue_id=item.id,
            )
            results.append(result)
            self._journal(AuditAction.STEP_QUEUED, run_id, after=result.to_dict())
            logger.warning("settlement_overflow_queued", run_id=run_id, amount=remaining, reason=reason.value)

        return results

    def _allocate(self, ranked: List[Rail], total_amount: int) -> Tuple[List[AllocationStep], int]:
        remaining = total_amount
        steps: List[AllocationStep] = []
        for rail in ranked:
            if remaining <= 0:
                break
            policy = self.registry.policy(rail)
            reservation = self.ledger.reserve_capacity(
                rail, remaining, policy.daily_limit, policy.min_amount
            )
            if reservation is None:
                logger.warning("rail_skipped_capacity", rail=rail.value, remaining=remaining)
                continue
            steps.append(AllocationStep(rail=rail, amount=reservation.amount, reservation=reservation))
            remaining -= reservation.amount

        logger.info(
            "allocation_planned",
            steps=[{"rail": s.rail.value, "amount": s.amount} for s in steps],
            overflow=remaining,
        )
        return steps, remaining

    def capability(self, rail: Rail, destination: Optional[str] = None) -> Capability:
        base = check_capability(self.config, rail, destination)
        if base.possible and not self.dispatcher.has_gateway(rail):
            return Capability(False, "NO_GATEWAY")
        return base

    def _execute_step(
        self,
        run_id: str,
        index: int,
        step: AllocationStep,
        currency: str,
        destination: Optional[str],
        state: Dict[str, Any],
    ) -> StepResult:
        rail = step.rail
        target = destination or self.config.destinations.get(rail)

        # Step 5: Capability
        capability = self.capability(rail, target)
        if not capability.possible:
            item = self.ledger.queue_transaction(
                rail,
                step.amount,
                QueueReason.MISSING_RESOURCE,
                currency=currency,
                details={"run_id": run_id, "capability": capability.reason},
                reservation_id=step.reservation.id,
            )
            logger.warning("rail_not_capable", rail=rail.value, reason=capability.reason, amount=step.amount)
            return StepResult(
                status=StepStatus.QUEUED_MISSING_RESOURCE,
                rail=rail.value,
                amount=step.amount,
                reason=capability.reason,
                queue_id=item.id,
            )

        # Step 6: Dispatch with retry
        instruction = TransferInstruction(
            amount=step.amount,
            currency=currency,
            destination=target,
            reference=f"{run_id}-{index}",
        )

        def attempt() -> DispatchResult:
            state["dispatched"] = True
            state["dispatched_reservation"] = step.reservation.id
            result = self.dispatcher.execute(rail, [instruction])
            if not result.accepted:
                raise TerminalGatewayError(
                    f"{rail.value} reported {result.status.value}",
                    rail=rail.value,
                    provider_response=result.provider_response,
                )
            return result

        def record_attempt(n: int, success: bool, latency_ms: float, error: Optional[BaseException]) -> None:
            # A stats write failure never changes the step outcome
            try:
                self.optimizer.record_outcome(rail, success, latency_ms)
            except (LockTimeoutError, OSError) as e:
                logger.warning("rail_stats_unrecorded", rail=rail.value, attempt=n, success=success, error=str(e))

        try:
            dispatch = self.retry_policy.call(attempt, on_attempt=record_attempt)
        except Exception as e:
            # Isolation: the failure stays with this step
            if isinstance(e, GatewayError):
                logger.error("step_dispatch_failed", rail=rail.value, amount=step.amount, error=str(e))
            else:
                logger.exception("step_dispatch_crashed", rail=rail.value, amount=step.amount)
            item = self.ledger.queue_transaction(
                rail,
                step.amount,
                QueueReason.EXECUTION_ERROR,
                currency=currency,
                details={
                    "run_id": run_id,
                    "reference": instruction.reference,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                reservation_id=step.reservation.id,
            )
            return StepResult(
                status=StepStatus.FAILED_QUEUED,
                rail=rail.value,
                amount=step.amount,
                reason=QueueReason.EXECUTION_ERROR.value,
                queue_id=item.id,
                details={"error": str(e)},
            )

        try:
            tx = self.ledger.record_transaction(
                rail,
                step.amount,
                TransactionStatus.IN_TRANSIT,
                currency=currency,
                details={
                    "run_id": run_id,
                    "reference": instruction.reference,
                    "destination": mask_destination(target),
                    "dispatch_status": dispatch.status.value,
                    "provider_response": dispatch.provider_response,
                },
                reservation_id=step.reservation.id,
            )
        except LockTimeoutError:
            logger.critical(
                "dispatched_transfer_unrecorded",
                rail=rail.value,
                amount=step.amount,
                reference=instruction.reference,
            )
            raise

        logger.info("step_dispatched", rail=rail.value, amount=step.amount, tx_id=tx.id)
        return StepResult(
            status=StepStatus.IN_TRANSIT,
            rail=rail.value,
            amount=step.amount,
            transaction_id=tx.id,
            details={"dispatch_status": dispatch.status.value, "reference": instruction.reference},
        )

    def _journal(
        self,
        action: AuditAction,
        run_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.write(
            self.audit.entry(action.value, run_id, before=before, after=after, context=context)
        )

    # ------------------------------------------------------------------
    # Queue maintenance
    # ------------------------------------------------------------------

    def reconcile_queue(self) -> Dict[str, int]:
        """
        Release capacity and claims left by dead runs, then promote queued
        items an independent confirmation source reports as settled.
        """
        ttl = self.config.reservation_ttl_seconds
        summary = {
            "released_reservations": self.ledger.release_stale_reservations(ttl),
            "released_claims": self.ledger.release_claims(max_age_seconds=ttl),
            "resolved": 0,
        }

        if self.confirmation_source is not None:
            for item in self.ledger.list_queued(status=QueueStatus.QUEUED):
                details = self.confirmation_source.confirm(item)
                if not details:
                    continue
                tx = self.ledger.resolve_queued(item.id, details)
                self._journal(
                    AuditAction.QUEUE_ITEM_RESOLVED,
                    item.id,
                    after={"transaction_id": tx.id, "amount": item.amount, "rail": item.rail},
                )
                summary["resolved"] += 1

        if any(summary.values()):
            logger.info("queue_reconciled", **summary)
        return summary

    def drain_queue(self, currency: str, destination: Optional[str] = None) -> List[StepResult]:
        """
        Re-route everything queued in `currency` as one settlement. Amounts
        that still cannot be routed are queued again by the normal path.
        """
        currency = currency.upper()
        claim_id, items = self.ledger.claim_queued(currency)
        if not items:
            return []

        total = sum(i.amount for i in items)
        run_id = f"drain_{claim_id}"
        state = {"dispatched": False}
        try:
            results = self._route(run_id, total, currency, destination, state)
        except Exception:
            if not state["dispatched"]:
                self.ledger.release_claims(claim_id=claim_id)
            else:
                logger.critical("queue_drain_aborted", claim_id=claim_id, total=total)
            raise

        self.ledger.finish_claim(claim_id)
        summary = summarize(results)
        self._journal(
            AuditAction.QUEUE_DRAINED,
            run_id,
            before={"items": [i.id for i in items], "total": total},
            after=summary,
        )
        logger.info("queue_drained", claim_id=claim_id, items=len(items), **summary)
        return results


def summarize(results: List[StepResult]) -> Dict[str, Any]:
    """Totals by outcome and by rail for a settlement report."""
    by_status: Dict[str, int] = {}
    by_rail: Dict[str, int] = {}
    for r in results:
        by_status[r.status.value] = by_status.get(r.status.value, 0) + r.amount
        by_rail[r.rail] = by_rail.get(r.rail, 0) + r.amount

    routed = by_status.get(StepStatus.IN_TRANSIT.value, 0)
    total = sum(r.amount for r in results)
    return {
        "steps": len(results),
        "total": total,
        "routed": routed,
        "queued": total - routed,
        "by_status": by_status,
        "by_rail": by_rail,
    }
