"""
Gateway Dispatcher

Routes a transfer batch to the gateway registered for a rail.
"""

from pathlib import Path
from typing import Dict, List, Optional
import structlog

from rails.config import SettlementConfig, check_capability
from rails.registry import Rail

from .adapters import BankWireGateway, CryptoTransferGateway, EWalletGateway
from .base import DispatchResult, Gateway, TerminalGatewayError, TransferInstruction
from .stripe_payout import StripePayoutGateway

logger = structlog.get_logger()


class GatewayDispatcher:
    """Rail -> Gateway mapping with a uniform execute()."""

    def __init__(self, gateways: Optional[Dict[Rail, Gateway]] = None):
        self._gateways: Dict[Rail, Gateway] = dict(gateways or {})

    def register(self, rail: Rail, gateway: Gateway) -> None:
        self._gateways[rail] = gateway

    @property
    def rails(self) -> List[Rail]:
        return list(self._gateways)

    def has_gateway(self, rail: Rail) -> bool:
        return rail in self._gateways

    def gateway_for(self, rail: Rail) -> Gateway:
        gateway = self._gateways.get(rail)
        if gateway is None:
            raise TerminalGatewayError(f"No gateway registered for {rail.value}", rail=rail.value)
        return gateway

    def execute(self, rail: Rail, transactions: List[TransferInstruction]) -> DispatchResult:
        return self.gateway_for(rail).execute(transactions)


def build_dispatcher(config: SettlementConfig, output_dir: Optional[Path] = None) -> GatewayDispatcher:
    """
    Wire up a gateway for every rail that is capable under `config`.

    Rails missing credentials get no gateway; the orchestrator queues their
    steps as MISSING_RESOURCE before any dispatch is attempted.
    """
    output_dir = Path(output_dir) if output_dir else config.data_dir / "settlements"
    dispatcher = GatewayDispatcher()

    for rail in config.policies:
        # Destinations may arrive per request; only credentials gate the gateway
        capability = check_capability(config, rail)
        if not capability.possible and capability.reason != "MISSING_DESTINATION":
            logger.warning("gateway_not_configured", rail=rail.value, reason=capability.reason)
            continue

        if rail is Rail.BANK_WIRE:
            gateway = BankWireGateway(
                output_dir,
                iban=config.credential(rail, "iban"),
                swift=config.credential(rail, "swift"),
            )
        elif rail is Rail.CARD_PAYOUT:
            gateway = StripePayoutGateway(api_key=config.credential(rail, "stripe_api_key"))
        elif rail is Rail.EWALLET:
            gateway = EWalletGateway(output_dir, client_id=config.credential(rail, "client_id"))
        else:
            gateway = CryptoTransferGateway(
                output_dir,
                wallet_address=config.credential(rail, "wallet_address"),
                signing_key=config.credential(rail, "signing_key"),
            )
        dispatcher.register(rail, gateway)

    logger.info("gateway_dispatcher_built", rails=[r.value for r in dispatcher.rails])
    return dispatcher
