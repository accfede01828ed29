"""
Settlement Configuration

Typed configuration validated once at startup. Credential presence is read
from here by the capability check instead of probing the environment at
dispatch time.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, SecretStr, model_validator
import structlog

from .registry import DEFAULT_RAIL_POLICIES, Rail, RailPolicy, RailRegistry

logger = structlog.get_logger()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# Credentials each rail needs before it can dispatch
REQUIRED_CREDENTIALS: Dict[Rail, tuple] = {
    Rail.BANK_WIRE: ("iban", "swift"),
    Rail.CARD_PAYOUT: ("stripe_api_key",),
    Rail.EWALLET: ("client_id", "client_secret"),
    Rail.CRYPTO_TRANSFER: ("wallet_address", "signing_key"),
}

# Environment variable -> (rail, credential name)
CREDENTIAL_ENV_VARS: Dict[str, tuple] = {
    "BANK_WIRE_IBAN": (Rail.BANK_WIRE, "iban"),
    "BANK_WIRE_SWIFT": (Rail.BANK_WIRE, "swift"),
    "STRIPE_API_KEY": (Rail.CARD_PAYOUT, "stripe_api_key"),
    "EWALLET_CLIENT_ID": (Rail.EWALLET, "client_id"),
    "EWALLET_CLIENT_SECRET": (Rail.EWALLET, "client_secret"),
    "CRYPTO_WALLET_ADDRESS": (Rail.CRYPTO_TRANSFER, "wallet_address"),
    "CRYPTO_SIGNING_KEY": (Rail.CRYPTO_TRANSFER, "signing_key"),
}

# Environment variable -> rail destination (owner account per rail)
DESTINATION_ENV_VARS: Dict[str, Rail] = {
    "BANK_WIRE_DESTINATION": Rail.BANK_WIRE,
    "STRIPE_CONNECTED_ACCOUNT": Rail.CARD_PAYOUT,
    "EWALLET_DESTINATION": Rail.EWALLET,
    "CRYPTO_DESTINATION": Rail.CRYPTO_TRANSFER,
}


class SettlementConfig(BaseModel):
    """Complete runtime configuration for the settlement rail."""

    data_dir: Path = Path("data")
    ledger_path: Optional[Path] = None
    stats_path: Optional[Path] = None
    audit_dir: Optional[Path] = None
    lock_dir: Optional[Path] = None

    audit_hmac_secret: Optional[SecretStr] = None

    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.25, ge=0)
    max_delay_seconds: float = Field(default=4.0, ge=0)
    exploration_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    circuit_breaker_threshold: int = Field(default=3, ge=1)
    reservation_ttl_seconds: float = Field(default=900.0, gt=0)

    policies: Dict[Rail, RailPolicy] = Field(default_factory=lambda: dict(DEFAULT_RAIL_POLICIES))
    credentials: Dict[Rail, Dict[str, SecretStr]] = Field(default_factory=dict)
    destinations: Dict[Rail, str] = Field(default_factory=dict)
    fallback_rail: Optional[Rail] = None

    @model_validator(mode="after")
    def _check_rails(self) -> "SettlementConfig":
        if not self.policies:
            raise ValueError("at least one rail policy is required")
        if self.fallback_rail is not None and self.fallback_rail not in self.policies:
            raise ValueError(f"fallback_rail {self.fallback_rail.value} has no policy")
        return self

    # ------------------------------------------------------------------
    # Derived locations
    # ------------------------------------------------------------------

    @property
    def ledger_file(self) -> Path:
        return self.ledger_path or self.data_dir / "financial" / "settlement_ledger.json"

    @property
    def stats_file(self) -> Path:
        return self.stats_path or self.data_dir / "financial" / "rail_stats.json"

    @property
    def audit_directory(self) -> Path:
        return self.audit_dir or self.data_dir / "audits" / "settlement_hmac"

    @property
    def lock_directory(self) -> Path:
        return self.lock_dir or self.data_dir / "locks"

    # ------------------------------------------------------------------

    def registry(self) -> RailRegistry:
        return RailRegistry(self.policies)

    def require_audit_secret(self) -> str:
        """Return the audit HMAC secret or fail; never falls back to a default."""
        if self.audit_hmac_secret is None:
            raise ConfigurationError("AUDIT_HMAC_SECRET missing")
        secret = self.audit_hmac_secret.get_secret_value()
        if not secret.strip():
            raise ConfigurationError("AUDIT_HMAC_SECRET missing")
        return secret

    def credential(self, rail: Rail, name: str) -> Optional[str]:
        value = self.credentials.get(rail, {}).get(name)
        if value is None:
            return None
        return value.get_secret_value()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "SettlementConfig":
        """
        Build configuration from environment variables.

        Credential values are trimmed and stripped of stray quotes, which
        commonly leak in from .env files.
        """
        env = os.environ if environ is None else environ

        credentials: Dict[Rail, Dict[str, str]] = {}
        for var, (rail, name) in CREDENTIAL_ENV_VARS.items():
            raw = env.get(var)
            if raw:
                cleaned = raw.strip().strip("'\"")
                if cleaned:
                    credentials.setdefault(rail, {})[name] = cleaned

        destinations = {
            rail: env[var].strip()
            for var, rail in DESTINATION_ENV_VARS.items()
            if env.get(var, "").strip()
        }

        values: Dict[str, Any] = {
            "data_dir": Path(env.get("SETTLEMENT_DATA_DIR", "data")),
            "credentials": credentials,
            "destinations": destinations,
        }
        if env.get("AUDIT_HMAC_SECRET"):
            values["audit_hmac_secret"] = env["AUDIT_HMAC_SECRET"]
        if env.get("SETTLEMENT_LOCK_TIMEOUT"):
            values["lock_timeout_seconds"] = env["SETTLEMENT_LOCK_TIMEOUT"].strip()
        if env.get("SETTLEMENT_MAX_ATTEMPTS"):
            values["max_attempts"] = env["SETTLEMENT_MAX_ATTEMPTS"].strip()
        if env.get("SETTLEMENT_EXPLORATION_RATE"):
            values["exploration_rate"] = env["SETTLEMENT_EXPLORATION_RATE"].strip()
        if env.get("SETTLEMENT_FALLBACK_RAIL"):
            values["fallback_rail"] = env["SETTLEMENT_FALLBACK_RAIL"].strip().upper()
        if env.get("SETTLEMENT_RAIL_POLICIES"):
            try:
                raw_policies = json.loads(env["SETTLEMENT_RAIL_POLICIES"])
                values["policies"] = {
                    Rail(name.upper()): RailPolicy(**fields)
                    for name, fields in raw_policies.items()
                }
            except (ValueError, TypeError) as e:
                raise ConfigurationError(f"Invalid SETTLEMENT_RAIL_POLICIES: {e}")

        values.update(overrides)

        try:
            config = cls(**values)
        except ValueError as e:
            raise ConfigurationError(f"Invalid settlement configuration: {e}")

        logger.info(
            "settlement_config_loaded",
            data_dir=str(config.data_dir),
            rails=[r.value for r in config.policies],
            rails_with_credentials=sorted(r.value for r in config.credentials),
            audit_secret_set=config.audit_hmac_secret is not None,
        )
        return config


@dataclass(frozen=True)
class Capability:
    """Whether a rail can dispatch right now, and why not."""
    possible: bool
    reason: Optional[str] = None
    missing: tuple = ()


def check_capability(config: SettlementConfig, rail: Rail, destination: Optional[str] = None) -> Capability:
    """
    Pure capability check over the typed configuration.

    A rail is capable when it has a policy, every required credential is
    present and non-blank, and there is somewhere to send the money.
    """
    if rail not in config.policies:
        return Capability(False, "NO_POLICY")

    missing: List[str] = []
    for name in REQUIRED_CREDENTIALS.get(rail, ()):
        value = config.credential(rail, name)
        if value is None or not value.strip():
            missing.append(name)
    if missing:
        return Capability(False, f"MISSING_{missing[0].upper()}", tuple(missing))

    if not (destination or config.destinations.get(rail)):
        return Capability(False, "MISSING_DESTINATION", ("destination",))

    return Capability(True)
