"""
Gateway Contract

Uniform per-rail "execute transfer" interface. Concrete provider clients sit
behind it; the orchestrator only sees TransferInstruction in and
DispatchResult or a GatewayError out.

Retryability is carried by the error type. Callers never inspect messages
to decide whether to retry.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import structlog

logger = structlog.get_logger()


class GatewayError(Exception):
    """Raised when a gateway cannot dispatch a transfer."""

    retryable = False

    def __init__(self, message: str, rail: Optional[str] = None, provider_response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.rail = rail
        self.provider_response = provider_response or {}


class RetryableGatewayError(GatewayError):
    """Transient failure (network, rate limit, provider 5xx); safe to retry."""

    retryable = True


class TerminalGatewayError(GatewayError):
    """Validation, authentication or policy failure; retrying cannot help."""
    pass


class DispatchStatus(Enum):
    IN_TRANSIT = "IN_TRANSIT"
    PROCESSING = "PROCESSING"
    ERROR = "ERROR"


@dataclass
class TransferInstruction:
    """One logical transfer handed to a gateway."""
    amount: int
    currency: str
    destination: str
    reference: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "destination": self.destination,
            "reference": self.reference,
        }


@dataclass
class DispatchResult:
    status: DispatchStatus
    provider_response: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.status in (DispatchStatus.IN_TRANSIT, DispatchStatus.PROCESSING)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "provider_response": self.provider_response}


def mask_destination(destination: str) -> str:
    """Keep only the last four characters of an account reference."""
    if len(destination) <= 4:
        return "*" * len(destination)
    return "*" * (len(destination) - 4) + destination[-4:]


class Gateway(ABC):
    """
    Base class for rail adapters.

    Subclasses implement _dispatch(); execute() validates the batch first.
    """

    rail_name: str = ""

    def execute(self, transactions: List[TransferInstruction]) -> DispatchResult:
        self.validate(transactions)
        return self._dispatch(transactions)

    def validate(self, transactions: List[TransferInstruction]) -> None:
        if not transactions:
            raise TerminalGatewayError("Empty transfer batch", rail=self.rail_name)

        currencies = {t.currency.upper() for t in transactions}
        if len(currencies) != 1:
            raise TerminalGatewayError(
                f"Mixed currencies in one batch: {sorted(currencies)}", rail=self.rail_name
            )

        for t in transactions:
            if t.amount <= 0:
                raise TerminalGatewayError(
                    f"Transfer {t.reference} has non-positive amount {t.amount}", rail=self.rail_name
                )
            if not t.destination:
                raise TerminalGatewayError(
                    f"Transfer {t.reference} has no destination", rail=self.rail_name
                )

    @abstractmethod
    def _dispatch(self, transactions: List[TransferInstruction]) -> DispatchResult:
        pass
