"""
Per-rail gateway adapters behind a uniform execute-transfer contract.
"""

from .base import (
    Gateway,
    GatewayError,
    RetryableGatewayError,
    TerminalGatewayError,
    TransferInstruction,
    DispatchResult,
    DispatchStatus,
    mask_destination,
)
from .adapters import InstructionFileGateway, BankWireGateway, EWalletGateway, CryptoTransferGateway
from .stripe_payout import StripePayoutGateway
from .dispatcher import GatewayDispatcher, build_dispatcher

__all__ = [
    "Gateway",
    "GatewayError",
    "RetryableGatewayError",
    "TerminalGatewayError",
    "TransferInstruction",
    "DispatchResult",
    "DispatchStatus",
    "mask_destination",
    "InstructionFileGateway",
    "BankWireGateway",
    "EWalletGateway",
    "CryptoTransferGateway",
    "StripePayoutGateway",
    "GatewayDispatcher",
    "build_dispatcher",
]
