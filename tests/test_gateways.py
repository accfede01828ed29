"""
Tests for Gateways, Dispatcher and Retry Policy
"""

import csv
import hashlib
import hmac
import json
from types import SimpleNamespace

import pytest
import stripe

from audit import canonicalize
from gateways import (
    BankWireGateway,
    CryptoTransferGateway,
    DispatchStatus,
    EWalletGateway,
    GatewayDispatcher,
    RetryableGatewayError,
    StripePayoutGateway,
    TerminalGatewayError,
    TransferInstruction,
    build_dispatcher,
    mask_destination,
)
from rails import Rail, SettlementConfig
from settlement import RetryPolicy
from conftest import ALL_CREDENTIALS, NoSleep


def instruction(amount=70_000, currency="USD", destination="GB33BUKB20201555555555", reference="run_1-0"):
    return TransferInstruction(amount=amount, currency=currency, destination=destination, reference=reference)


class FakeTransfers:
    """Stands in for StripeClient.transfers."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def create(self, params, options=None):
        self.calls.append((params, options))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return {"id": f"tr_{len(self.calls)}", "amount": params["amount"], "currency": params["currency"]}


class TestValidation:
    """Test the shared batch checks."""

    def test_empty_batch(self, tmp_path):
        """An empty batch is terminal."""
        with pytest.raises(TerminalGatewayError):
            EWalletGateway(tmp_path, client_id="c").execute([])

    def test_mixed_currencies(self, tmp_path):
        """One batch settles one currency."""
        batch = [instruction(currency="USD"), instruction(currency="EUR", reference="run_1-1")]

        with pytest.raises(TerminalGatewayError):
            EWalletGateway(tmp_path, client_id="c").execute(batch)

    def test_non_positive_amount(self, tmp_path):
        """Zero amounts never reach a provider."""
        with pytest.raises(TerminalGatewayError) as exc:
            EWalletGateway(tmp_path, client_id="c").execute([instruction(amount=0)])

        assert not exc.value.retryable

    def test_missing_destination(self, tmp_path):
        """A transfer needs somewhere to go."""
        with pytest.raises(TerminalGatewayError):
            EWalletGateway(tmp_path, client_id="c").execute([instruction(destination="")])

    def test_mask_destination(self):
        """Only the last four characters remain visible."""
        assert mask_destination("GB33BUKB20201555555555") == "*" * 18 + "5555"
        assert mask_destination("abc") == "***"


class TestInstructionFileGateways:
    """Test on-disk instruction batches."""

    def test_bank_wire_csv(self, tmp_path):
        """Wire batches are CSV with masked accounts, reported as PROCESSING."""
        creds = ALL_CREDENTIALS[Rail.BANK_WIRE]
        gateway = BankWireGateway(tmp_path, iban=creds["iban"], swift=creds["swift"], account_name="Ops")

        result = gateway.execute([instruction()])

        assert result.status == DispatchStatus.PROCESSING
        assert result.accepted
        with open(result.provider_response["file_path"], newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "Reference"
        assert rows[1][:3] == ["run_1-0", "70000", "USD"]
        assert rows[1][3].endswith("5555") and "GB33" not in rows[1][3]
        assert creds["iban"] not in rows[1][4]

    def test_ewallet_instruction(self, tmp_path):
        """E-wallet batches carry the client id and masked recipients."""
        result = EWalletGateway(tmp_path, client_id="client-1").execute(
            [instruction(destination="owner@example.com")]
        )

        with open(result.provider_response["file_path"]) as f:
            data = json.load(f)
        assert data["client_id"] == "client-1"
        assert data["transfers"][0]["masked_destination"].endswith(".com")
        assert "owner" not in data["transfers"][0]["masked_destination"]

    def test_crypto_signature_verifies(self, tmp_path):
        """The instruction signature covers everything but itself."""
        gateway = CryptoTransferGateway(tmp_path, wallet_address="TFrom", signing_key="k3y")

        result = gateway.execute([instruction(currency="USDT", destination="TOwnerAddress0001")])

        with open(result.provider_response["file_path"]) as f:
            data = json.load(f)
        signature = data.pop("signature")
        expected = hmac.new(b"k3y", canonicalize(data).encode("utf-8"), hashlib.sha256).hexdigest()
        assert signature == expected
        assert data["transfers"][0]["to_address"] == "TOwnerAddress0001"
        assert data["network"] == "TRC20"


class TestStripePayoutGateway:
    """Test Stripe error mapping with an injected client."""

    def test_success_is_in_transit(self):
        """Created transfers are reported IN_TRANSIT."""
        transfers = FakeTransfers()
        gateway = StripePayoutGateway(client=SimpleNamespace(transfers=transfers))

        result = gateway.execute([instruction(destination="acct_1Owner")])

        assert result.status == DispatchStatus.IN_TRANSIT
        assert result.provider_response["transfers"][0]["id"] == "tr_1"
        params, options = transfers.calls[0]
        assert params["currency"] == "usd"
        assert options == {"idempotency_key": "run_1-0"}

    def test_connection_error_is_retryable(self):
        """Network failures can be retried."""
        transfers = FakeTransfers([stripe.APIConnectionError("boom")])
        gateway = StripePayoutGateway(client=SimpleNamespace(transfers=transfers))

        with pytest.raises(RetryableGatewayError) as exc:
            gateway.execute([instruction(destination="acct_1Owner")])

        assert exc.value.retryable
        assert exc.value.rail == "CARD_PAYOUT"

    def test_invalid_request_is_terminal(self):
        """Rejected requests are not retried."""
        transfers = FakeTransfers([stripe.InvalidRequestError("bad amount", "amount")])
        gateway = StripePayoutGateway(client=SimpleNamespace(transfers=transfers))

        with pytest.raises(TerminalGatewayError):
            gateway.execute([instruction(destination="acct_1Owner")])

    def test_partial_batch_reports_completed(self):
        """Transfers created before a failure are surfaced on the error."""
        transfers = FakeTransfers([None, stripe.RateLimitError("slow down")])
        gateway = StripePayoutGateway(client=SimpleNamespace(transfers=transfers))
        batch = [instruction(destination="acct_1"), instruction(destination="acct_2", reference="run_1-1")]

        with pytest.raises(RetryableGatewayError) as exc:
            gateway.execute(batch)

        assert [t["reference"] for t in exc.value.provider_response["completed"]] == ["run_1-0"]

    def test_missing_api_key(self):
        """Without a key or client the gateway cannot be built."""
        with pytest.raises(TerminalGatewayError):
            StripePayoutGateway(api_key="")


class TestRetryPolicy:
    """Test bounded exponential backoff."""

    def test_retries_until_success(self):
        """Retryable errors are retried with growing delays."""
        sleeper = NoSleep()
        policy = RetryPolicy(max_attempts=3, base_delay=0.1, jitter=0.0, sleep=sleeper)
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RetryableGatewayError("timeout")
            return "ok"

        assert policy.call(flaky) == "ok"
        assert sleeper.delays == [pytest.approx(0.1), pytest.approx(0.2)]

    def test_gives_up_after_max_attempts(self):
        """The last retryable error propagates."""
        sleeper = NoSleep()
        policy = RetryPolicy(max_attempts=2, base_delay=0.1, sleep=sleeper)

        def always_down():
            raise RetryableGatewayError("down")

        with pytest.raises(RetryableGatewayError):
            policy.call(always_down)
        assert len(sleeper.delays) == 1

    def test_terminal_not_retried(self):
        """Terminal errors surface on the first attempt."""
        sleeper = NoSleep()
        policy = RetryPolicy(max_attempts=5, sleep=sleeper)
        calls = []

        def rejected():
            calls.append(1)
            raise TerminalGatewayError("bad destination")

        with pytest.raises(TerminalGatewayError):
            policy.call(rejected)
        assert len(calls) == 1
        assert sleeper.delays == []

    def test_on_attempt_reports_each_attempt(self):
        """The hook sees every attempt with its outcome."""
        policy = RetryPolicy(max_attempts=3, base_delay=0.0, sleep=NoSleep())
        seen = []
        outcomes = [RetryableGatewayError("t"), "ok"]

        def step():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        policy.call(step, on_attempt=lambda n, ok, ms, err: seen.append((n, ok, err is None)))

        assert seen == [(1, False, False), (2, True, True)]

    def test_delay_is_capped(self):
        """Backoff never exceeds max_delay, jitter included."""
        policy = RetryPolicy(base_delay=1.0, max_delay=1.5, jitter=0.5)

        assert policy.delay_for(5) <= 1.5


class TestDispatcher:
    """Test rail to gateway routing."""

    def test_unregistered_rail_is_terminal(self):
        """No gateway means no dispatch."""
        with pytest.raises(TerminalGatewayError):
            GatewayDispatcher().execute(Rail.EWALLET, [instruction()])

    def test_build_registers_only_configured_rails(self, tmp_path):
        """Rails without credentials get no gateway."""
        config = SettlementConfig(
            data_dir=tmp_path,
            credentials={
                Rail.BANK_WIRE: ALL_CREDENTIALS[Rail.BANK_WIRE],
                Rail.EWALLET: ALL_CREDENTIALS[Rail.EWALLET],
            },
        )

        dispatcher = build_dispatcher(config)

        assert dispatcher.rails == [Rail.BANK_WIRE, Rail.EWALLET]
        result = dispatcher.execute(Rail.BANK_WIRE, [instruction()])
        assert str(tmp_path / "settlements" / "bank_wire") in result.provider_response["file_path"]
