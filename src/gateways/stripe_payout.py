"""
Stripe Card Payout Gateway

Moves funds to a connected account with Stripe Transfers. The transfer
reference doubles as the Stripe idempotency key, so a retried attempt can
never create a second transfer.

Stripe error classes map onto gateway errors:
    APIConnectionError, RateLimitError, APIError   -> retryable
    InvalidRequestError, AuthenticationError,
    PermissionError, CardError, other StripeError  -> terminal
"""

from typing import Any, Dict, List, Optional
import stripe
import structlog

from .base import (
    DispatchResult,
    DispatchStatus,
    Gateway,
    RetryableGatewayError,
    TerminalGatewayError,
    TransferInstruction,
)

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 30

_RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripePayoutGateway(Gateway):
    """
    Card-network payouts through Stripe Connect transfers.

    Args:
        api_key: Stripe secret key
        client: Pre-built StripeClient (tests inject a fake)
        timeout: HTTP timeout per request, in seconds
    """

    rail_name = "CARD_PAYOUT"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Any = None,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
    ):
        if client is None:
            if not api_key:
                raise TerminalGatewayError("Stripe API key not configured", rail=self.rail_name)
            # Retries belong to the settlement retry policy
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout),
                max_network_retries=0,
            )
        self.client = client

    def _create_transfer(self, t: TransferInstruction) -> Dict[str, Any]:
        transfer = self.client.transfers.create(
            params={
                "amount": t.amount,
                "currency": t.currency.lower(),
                "destination": t.destination,
                "transfer_group": t.reference,
                "metadata": {"reference": t.reference},
            },
            options={"idempotency_key": t.reference},
        )
        return {
            "id": transfer["id"],
            "amount": transfer["amount"],
            "currency": transfer["currency"],
            "reference": t.reference,
        }

    def _dispatch(self, transactions: List[TransferInstruction]) -> DispatchResult:
        transfers = []
        for t in transactions:
            try:
                transfers.append(self._create_transfer(t))
            except _RETRYABLE_ERRORS as e:
                logger.warning("stripe_transfer_transient_error", reference=t.reference, error=str(e))
                raise RetryableGatewayError(
                    f"Stripe transient error: {e}",
                    rail=self.rail_name,
                    provider_response={"completed": transfers},
                )
            except stripe.StripeError as e:
                logger.error("stripe_transfer_rejected", reference=t.reference, error=str(e))
                raise TerminalGatewayError(
                    f"Stripe rejected transfer: {e}",
                    rail=self.rail_name,
                    provider_response={"completed": transfers},
                )

        logger.info("stripe_transfers_created", count=len(transfers))
        return DispatchResult(
            status=DispatchStatus.IN_TRANSIT,
            provider_response={"network": "STRIPE", "transfers": transfers},
        )
