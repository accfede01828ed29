"""
Tests for the Settlement Ledger

Usage accounting, reservations, queue handling, idempotency records and
the cross-process daily-limit invariant.
"""

import json
import multiprocessing
import sys

import pytest

from ledger import (
    FileLock,
    IdempotencyState,
    LedgerError,
    LockTimeoutError,
    QueueReason,
    QueueStatus,
    SettlementLedger,
    TransactionStatus,
)
from rails import Rail


@pytest.fixture
def ledger(tmp_path, clock):
    return SettlementLedger.from_path(tmp_path / "ledger.json", lock_timeout=1.0, clock=clock)


def _reserve_and_record(path, lock_dir, rounds, chunk, limit, minimum, results):
    ledger = SettlementLedger.from_path(path, lock_dir=lock_dir, lock_timeout=20.0)
    granted = 0
    for _ in range(rounds):
        reservation = ledger.reserve_capacity(Rail.BANK_WIRE, chunk, limit, minimum)
        if reservation is None:
            continue
        ledger.record_transaction(
            Rail.BANK_WIRE, reservation.amount, TransactionStatus.IN_TRANSIT,
            reservation_id=reservation.id,
        )
        granted += reservation.amount
    results.put(granted)


class TestUsage:
    """Test daily usage accounting."""

    def test_counted_statuses_increment_usage(self, ledger):
        """IN_TRANSIT and COMPLETED count; QUEUED and FAILED do not."""
        ledger.record_transaction(Rail.BANK_WIRE, 1_000, TransactionStatus.IN_TRANSIT)
        ledger.record_transaction(Rail.BANK_WIRE, 2_000, TransactionStatus.COMPLETED)
        ledger.record_transaction(Rail.BANK_WIRE, 4_000, TransactionStatus.FAILED)
        ledger.record_transaction(Rail.BANK_WIRE, 8_000, TransactionStatus.QUEUED)

        assert ledger.get_daily_usage(Rail.BANK_WIRE) == 3_000
        assert len(ledger.list_transactions()) == 4

    def test_queue_does_not_touch_usage(self, ledger):
        """Queued overflow never consumes capacity."""
        ledger.queue_transaction(Rail.BANK_WIRE, 5_000, QueueReason.OVERFLOW_LIMITS, currency="USD")

        assert ledger.get_daily_usage(Rail.BANK_WIRE) == 0
        assert ledger.queued_total("USD") == 5_000

    def test_usage_is_keyed_by_day(self, ledger, clock):
        """A new calendar day starts from zero without mutating the old key."""
        ledger.record_transaction(Rail.EWALLET, 700, TransactionStatus.IN_TRANSIT)
        yesterday = ledger.today()
        clock.advance(days=1)

        assert ledger.get_daily_usage(Rail.EWALLET) == 0
        assert ledger.get_daily_usage(Rail.EWALLET, day=yesterday) == 700

    def test_state_survives_restart(self, tmp_path, clock):
        """A second ledger over the same file sees prior writes."""
        path = tmp_path / "ledger.json"
        SettlementLedger.from_path(path, clock=clock).record_transaction(
            Rail.CARD_PAYOUT, 1_500, TransactionStatus.IN_TRANSIT
        )

        reopened = SettlementLedger.from_path(path, clock=clock)

        assert reopened.get_daily_usage(Rail.CARD_PAYOUT) == 1_500
        with open(path) as f:
            data = json.load(f)
        assert set(data) >= {"daily_usage", "transactions", "queued"}

    def test_corrupt_ledger_is_refused(self, tmp_path):
        """A corrupt store raises instead of silently resetting caps."""
        path = tmp_path / "ledger.json"
        path.write_text("{ not json")

        with pytest.raises(LedgerError):
            SettlementLedger.from_path(path).get_daily_usage(Rail.BANK_WIRE)

    def test_duplicate_transaction_id_rejected(self, ledger):
        """Transaction ids are unique."""
        ledger.record_transaction(Rail.BANK_WIRE, 100, TransactionStatus.QUEUED, tx_id="tx-1")

        with pytest.raises(LedgerError):
            ledger.record_transaction(Rail.BANK_WIRE, 100, TransactionStatus.QUEUED, tx_id="tx-1")

    def test_status_update_counts_once(self, ledger):
        """Entering a counted status increments usage once; leaving it never decrements."""
        tx = ledger.record_transaction(Rail.BANK_WIRE, 900, TransactionStatus.QUEUED)

        ledger.update_transaction_status(tx.id, TransactionStatus.IN_TRANSIT)
        ledger.update_transaction_status(tx.id, TransactionStatus.COMPLETED)
        assert ledger.get_daily_usage(Rail.BANK_WIRE) == 900

        ledger.update_transaction_status(tx.id, TransactionStatus.FAILED)
        assert ledger.get_daily_usage(Rail.BANK_WIRE) == 900

    def test_unknown_transaction_update(self, ledger):
        """Updating a missing transaction is an error."""
        with pytest.raises(LedgerError):
            ledger.update_transaction_status("tx-missing", TransactionStatus.COMPLETED)


class TestReservations:
    """Test atomic capacity reservation."""

    def test_grant_is_capped_by_capacity(self, ledger):
        """The grant is min(requested, remaining capacity)."""
        ledger.record_transaction(Rail.BANK_WIRE, 9_800, TransactionStatus.IN_TRANSIT)

        reservation = ledger.reserve_capacity(Rail.BANK_WIRE, 700, daily_limit=10_000, min_amount=100)

        assert reservation.amount == 200

    def test_grant_below_minimum_is_refused(self, ledger):
        """No dust allocations below the rail minimum."""
        ledger.record_transaction(Rail.BANK_WIRE, 9_800, TransactionStatus.IN_TRANSIT)

        assert ledger.reserve_capacity(Rail.BANK_WIRE, 700, daily_limit=10_000, min_amount=500) is None

    def test_reservations_hold_capacity(self, ledger):
        """Outstanding reservations reduce what others can reserve."""
        first = ledger.reserve_capacity(Rail.BANK_WIRE, 6_000, daily_limit=10_000, min_amount=500)
        second = ledger.reserve_capacity(Rail.BANK_WIRE, 6_000, daily_limit=10_000, min_amount=500)

        assert first.amount == 6_000
        assert second.amount == 4_000
        assert ledger.remaining_capacity(Rail.BANK_WIRE, 10_000) == 0

    def test_record_consumes_reservation(self, ledger):
        """Recording converts the reservation into usage without double counting."""
        reservation = ledger.reserve_capacity(Rail.BANK_WIRE, 3_000, daily_limit=10_000)
        ledger.record_transaction(
            Rail.BANK_WIRE, 3_000, TransactionStatus.IN_TRANSIT, reservation_id=reservation.id
        )

        assert ledger.get_daily_usage(Rail.BANK_WIRE) == 3_000
        assert ledger.remaining_capacity(Rail.BANK_WIRE, 10_000) == 7_000

    def test_release_frees_capacity(self, ledger):
        """A released reservation gives its capacity back."""
        reservation = ledger.reserve_capacity(Rail.BANK_WIRE, 3_000, daily_limit=10_000)

        assert ledger.release_reservation(reservation.id)
        assert ledger.remaining_capacity(Rail.BANK_WIRE, 10_000) == 10_000
        assert not ledger.release_reservation(reservation.id)

    def test_stale_reservations_released(self, ledger, clock):
        """Reservations older than the TTL are dropped."""
        ledger.reserve_capacity(Rail.BANK_WIRE, 3_000, daily_limit=10_000)
        clock.advance(minutes=5)
        ledger.reserve_capacity(Rail.BANK_WIRE, 1_000, daily_limit=10_000)
        clock.advance(minutes=11)

        assert ledger.release_stale_reservations(max_age_seconds=900) == 1
        assert ledger.remaining_capacity(Rail.BANK_WIRE, 10_000) == 9_000


class TestQueue:
    """Test overflow queue claims and resolution."""

    def test_claim_and_finish(self, ledger):
        """Claimed items are marked RETRYING and removed when the claim finishes."""
        ledger.queue_transaction("QUEUE_OVERFLOW", 500, QueueReason.OVERFLOW_LIMITS, currency="USD")
        ledger.queue_transaction(Rail.EWALLET, 300, QueueReason.EXECUTION_ERROR, currency="USD")
        ledger.queue_transaction(Rail.CRYPTO_TRANSFER, 900, QueueReason.MISSING_RESOURCE, currency="USDT")

        claim_id, items = ledger.claim_queued("usd")

        assert sorted(i.amount for i in items) == [300, 500]
        assert all(i.status == QueueStatus.RETRYING for i in ledger.list_queued(currency="USD"))
        assert ledger.claim_queued("USD")[1] == []

        assert ledger.finish_claim(claim_id) == 2
        assert [i.currency for i in ledger.list_queued()] == ["USDT"]

    def test_stale_claims_return_to_queue(self, ledger, clock):
        """Claims abandoned by a dead process are released after max age."""
        ledger.queue_transaction("QUEUE_OVERFLOW", 500, QueueReason.OVERFLOW_LIMITS, currency="USD")
        ledger.claim_queued("USD")
        clock.advance(hours=1)

        assert ledger.release_claims(max_age_seconds=900) == 1
        assert ledger.list_queued()[0].status == QueueStatus.QUEUED

    def test_resolve_moves_item_to_history(self, ledger):
        """Resolution removes the queue item and records a COMPLETED transaction together."""
        item = ledger.queue_transaction(Rail.BANK_WIRE, 5_000, QueueReason.EXECUTION_ERROR, currency="USD")

        tx = ledger.resolve_queued(item.id, {"confirmation": "wire-123"})

        assert ledger.list_queued() == []
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.details["resolved_from"] == item.id
        assert ledger.get_daily_usage(Rail.BANK_WIRE) == 5_000

    def test_resolve_unknown_item(self, ledger):
        """Resolving an unknown id fails and changes nothing."""
        with pytest.raises(LedgerError):
            ledger.resolve_queued("queue_missing")

    def test_queue_releases_reservation(self, ledger):
        """Queuing a step frees the capacity it had reserved."""
        reservation = ledger.reserve_capacity(Rail.BANK_WIRE, 4_000, daily_limit=10_000)

        ledger.queue_transaction(
            Rail.BANK_WIRE, 4_000, QueueReason.MISSING_RESOURCE, reservation_id=reservation.id
        )

        assert ledger.remaining_capacity(Rail.BANK_WIRE, 10_000) == 10_000


class TestIdempotencyRecords:
    """Test idempotency bookkeeping in the ledger."""

    def test_first_begin_creates_record(self, ledger):
        """Only the first begin for a key creates it."""
        created, record = ledger.begin_idempotent("inv-1", 700, "USD")
        again, existing = ledger.begin_idempotent("inv-1", 700, "USD")

        assert created and not again
        assert existing.state == IdempotencyState.IN_PROGRESS

    def test_complete_stores_results(self, ledger):
        """Completed keys carry their results."""
        ledger.begin_idempotent("inv-2", 700, "USD")
        ledger.complete_idempotent("inv-2", [{"status": "IN_TRANSIT", "amount": 700}])

        record = ledger.get_idempotent("inv-2")

        assert record.state == IdempotencyState.COMPLETED
        assert record.results[0]["amount"] == 700

    def test_abandon_only_in_progress(self, ledger):
        """Completed keys cannot be abandoned."""
        ledger.begin_idempotent("inv-3", 700, "USD")
        ledger.complete_idempotent("inv-3", [])

        assert not ledger.abandon_idempotent("inv-3")
        assert ledger.get_idempotent("inv-3") is not None


class TestLocking:
    """Test the exclusive-access discipline."""

    def test_lock_timeout_is_reported(self, tmp_path):
        """A held lock makes ledger operations fail loudly, not skip."""
        path = tmp_path / "ledger.json"
        holder = FileLock(tmp_path / "ledger.lock")
        assert holder.acquire(timeout=1.0)
        try:
            ledger = SettlementLedger.from_path(path, lock_timeout=0.2)
            with pytest.raises(LockTimeoutError):
                ledger.record_transaction(Rail.BANK_WIRE, 100, TransactionStatus.IN_TRANSIT)
        finally:
            holder.release()

        assert not (tmp_path / "ledger.lock").exists()

    def test_failed_operation_saves_nothing(self, ledger):
        """An error inside a locked operation leaves the store untouched."""
        ledger.record_transaction(Rail.BANK_WIRE, 100, TransactionStatus.QUEUED, tx_id="tx-1")

        with pytest.raises(LedgerError):
            ledger.record_transaction(Rail.BANK_WIRE, 500, TransactionStatus.IN_TRANSIT, tx_id="tx-1")

        assert ledger.get_daily_usage(Rail.BANK_WIRE) == 0

    @pytest.mark.skipif(sys.platform == "win32", reason="fork start method required")
    def test_daily_limit_holds_across_processes(self, tmp_path):
        """Concurrent processes cannot jointly exceed the daily cap."""
        path = tmp_path / "ledger.json"
        ctx = multiprocessing.get_context("fork")
        results = ctx.Queue()
        workers = [
            ctx.Process(
                target=_reserve_and_record,
                args=(path, tmp_path, 10, 700, 10_000, 100, results),
            )
            for _ in range(4)
        ]
        for w in workers:
            w.start()
        granted = [results.get(timeout=60) for _ in workers]
        for w in workers:
            w.join(timeout=60)

        ledger = SettlementLedger.from_path(path, lock_dir=tmp_path)
        usage = ledger.get_daily_usage(Rail.BANK_WIRE)

        assert usage <= 10_000
        assert usage == sum(granted)
        assert usage == sum(t.amount for t in ledger.list_transactions())
