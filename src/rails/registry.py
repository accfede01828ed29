"""
Rail Registry / Constraints Table

Static per-rail settlement policy: daily cap, minimum transferable amount,
currency and the fee model the optimizer uses for its cost score.

All amounts are integers in currency minor units (cents, micro-USDT, ...).
Policies are read-only at runtime; changing a limit means reloading config.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple
import structlog

logger = structlog.get_logger()


class Rail(Enum):
    """Payment channels funds can be settled through."""
    BANK_WIRE = "BANK_WIRE"
    CARD_PAYOUT = "CARD_PAYOUT"
    EWALLET = "EWALLET"
    CRYPTO_TRANSFER = "CRYPTO_TRANSFER"


# Pseudo-rail used for amounts no real rail could take this cycle
QUEUE_OVERFLOW = "QUEUE_OVERFLOW"


@dataclass(frozen=True)
class RailPolicy:
    """
    Limits and fee model for a single rail.

    Invariant: 0 <= min_amount < daily_limit.
    """
    daily_limit: int
    min_amount: int
    currency: str
    fee_fixed: int = 0
    fee_percent: float = 0.0
    fee_cap: Optional[int] = None
    processing_time: str = ""
    risk_factor: str = "medium"

    def __post_init__(self):
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be positive")
        if self.min_amount < 0:
            raise ValueError("min_amount must not be negative")
        if self.min_amount >= self.daily_limit:
            raise ValueError(
                f"min_amount ({self.min_amount}) must be below daily_limit ({self.daily_limit})"
            )
        if self.fee_percent < 0 or self.fee_fixed < 0:
            raise ValueError("fees must not be negative")

    def estimate_fee(self, amount: int) -> int:
        """Fixed fee plus percentage, optionally capped."""
        fee = self.fee_fixed + int(round(amount * self.fee_percent))
        if self.fee_cap is not None:
            fee = min(fee, self.fee_cap)
        return fee

    def to_dict(self) -> Dict[str, object]:
        return {
            "daily_limit": self.daily_limit,
            "min_amount": self.min_amount,
            "currency": self.currency,
            "fee_fixed": self.fee_fixed,
            "fee_percent": self.fee_percent,
            "fee_cap": self.fee_cap,
            "processing_time": self.processing_time,
            "risk_factor": self.risk_factor,
        }


# Individual-account tier limits. Order matters: the first registered rail
# for a currency is the lowest-risk fallback.
DEFAULT_RAIL_POLICIES: Dict[Rail, RailPolicy] = {
    Rail.BANK_WIRE: RailPolicy(
        daily_limit=1_000_000,  # $10,000.00/day
        min_amount=50_000,  # wires under $500 are eaten by fees
        currency="USD",
        fee_fixed=500,
        processing_time="1-3 business days",
        risk_factor="medium",
    ),
    Rail.CARD_PAYOUT: RailPolicy(
        daily_limit=200_000,  # $2,000.00/day
        min_amount=5_000,
        currency="USD",
        fee_fixed=300,
        processing_time="instant",
        risk_factor="low",
    ),
    Rail.EWALLET: RailPolicy(
        daily_limit=50_000,  # $500.00/day, personal account cap
        min_amount=100,
        currency="USD",
        fee_percent=0.02,
        fee_cap=2_000,
        processing_time="instant",
        risk_factor="high",
    ),
    Rail.CRYPTO_TRANSFER: RailPolicy(
        daily_limit=5_000_000,  # 50,000.00 USDT/day
        min_amount=1_000,
        currency="USDT",
        fee_fixed=100,
        processing_time="minutes",
        risk_factor="low",
    ),
}


class RailRegistry:
    """
    Ordered table of rail policies.

    Registration order is preserved and used as the tie-breaker for
    fallback selection.
    """

    def __init__(self, policies: Optional[Dict[Rail, RailPolicy]] = None):
        source = DEFAULT_RAIL_POLICIES if policies is None else policies
        self._policies: Dict[Rail, RailPolicy] = dict(source)

    @property
    def rails(self) -> List[Rail]:
        return list(self._policies)

    def __contains__(self, rail: Rail) -> bool:
        return rail in self._policies

    def policy(self, rail: Rail) -> RailPolicy:
        try:
            return self._policies[rail]
        except KeyError:
            raise KeyError(f"No policy registered for rail {rail.value}")

    def rails_for_currency(self, currency: str) -> List[Rail]:
        """Rails settling in the given currency, in registration order."""
        wanted = currency.upper()
        return [r for r, p in self._policies.items() if p.currency.upper() == wanted]

    def estimate_fee(self, rail: Rail, amount: int) -> int:
        return self.policy(rail).estimate_fee(amount)

    def can_process(
        self,
        rail: Rail,
        amount: int,
        current_usage: int = 0,
    ) -> Tuple[bool, Optional[str]]:
        """
        Check a single transfer against the rail's limits.

        Returns (allowed, reason).
        """
        policy = self.policy(rail)
        if amount < policy.min_amount:
            return False, "BELOW_MINIMUM"
        if amount + current_usage > policy.daily_limit:
            return False, "DAILY_LIMIT_EXCEEDED"
        return True, None

    def to_dict(self) -> Dict[str, Dict[str, object]]:
        return {rail.value: policy.to_dict() for rail, policy in self._policies.items()}
