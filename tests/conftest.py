"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Union

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from audit import AuditLog
from gateways import DispatchResult, DispatchStatus, Gateway, GatewayDispatcher
from ledger import SettlementLedger
from rails import InMemoryStatsStore, Rail, RailOptimizer, RailPolicy, SettlementConfig
from settlement import RetryPolicy, SettlementOrchestrator

TEST_AUDIT_SECRET = "test-audit-secret"

ALL_CREDENTIALS = {
    Rail.BANK_WIRE: {"iban": "MA64007810000448500030594182", "swift": "BCMAMAMC"},
    Rail.CARD_PAYOUT: {"stripe_api_key": "sk_test_123"},
    Rail.EWALLET: {"client_id": "client-1", "client_secret": "secret-1"},
    Rail.CRYPTO_TRANSFER: {"wallet_address": "TXyz0000wallet", "signing_key": "signing-key"},
}

ALL_DESTINATIONS = {
    Rail.BANK_WIRE: "GB33BUKB20201555555555",
    Rail.CARD_PAYOUT: "acct_1Owner",
    Rail.EWALLET: "owner@example.com",
    Rail.CRYPTO_TRANSFER: "TOwnerAddress0001",
}


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway(Gateway):
    """
    Scripted gateway. Each call consumes the next outcome: an exception is
    raised, a DispatchResult is returned. When the script runs out the
    default outcome repeats.
    """

    def __init__(self, rail: Rail, outcomes: List[Union[DispatchResult, Exception]] = None):
        self.rail_name = rail.value
        self.outcomes = list(outcomes or [])
        self.default = DispatchResult(DispatchStatus.IN_TRANSIT, {"network": rail.value})
        self.calls = []

    def _dispatch(self, transactions):
        self.calls.append(list(transactions))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class NoSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    """Config with every rail capable and a test audit secret."""
    return SettlementConfig(
        data_dir=tmp_path,
        audit_hmac_secret=TEST_AUDIT_SECRET,
        credentials=ALL_CREDENTIALS,
        destinations=ALL_DESTINATIONS,
        lock_timeout_seconds=2.0,
    )


@pytest.fixture
def wire_only_config(tmp_path):
    """A single USD rail: bank wire, limit 10,000, minimum 500."""
    return SettlementConfig(
        data_dir=tmp_path,
        audit_hmac_secret=TEST_AUDIT_SECRET,
        policies={Rail.BANK_WIRE: RailPolicy(daily_limit=10_000, min_amount=500, currency="USD")},
        credentials={Rail.BANK_WIRE: ALL_CREDENTIALS[Rail.BANK_WIRE]},
        destinations={Rail.BANK_WIRE: ALL_DESTINATIONS[Rail.BANK_WIRE]},
        lock_timeout_seconds=2.0,
    )


@pytest.fixture
def make_orchestrator(clock):
    """
    Build an orchestrator over file-backed ledger and audit log in the
    config's data dir, fake gateways for every rail, no exploration and no
    real sleeping.
    """

    def _make(config, gateways=None, **kwargs):
        if gateways is None:
            gateways = {rail: FakeGateway(rail) for rail in config.policies}
        optimizer = RailOptimizer(
            config.registry(),
            store=InMemoryStatsStore(),
            clock=clock,
            exploration_rate=0.0,
            circuit_breaker_threshold=config.circuit_breaker_threshold,
            fallback_rail=config.fallback_rail,
        )
        sleeper = NoSleep()
        orchestrator = SettlementOrchestrator(
            config=config,
            ledger=SettlementLedger.from_config(config, clock=clock),
            optimizer=optimizer,
            dispatcher=GatewayDispatcher(gateways),
            audit=AuditLog.from_config(config, clock=clock),
            retry_policy=RetryPolicy(max_attempts=config.max_attempts, base_delay=0.01, sleep=sleeper),
            **kwargs,
        )
        orchestrator.sleeper = sleeper
        orchestrator.gateways = gateways
        return orchestrator

    return _make
