"""
Instruction-File Gateways

Rails without a programmatic payout API here: the gateway prepares a
transfer instruction batch on disk for out-of-band execution and reports
the batch as PROCESSING. Destinations are masked unless the executing side
needs the full address.
"""

import csv
import hashlib
import hmac
import io
import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
import structlog

from audit.canonical import canonicalize

from .base import (
    DispatchResult,
    DispatchStatus,
    Gateway,
    RetryableGatewayError,
    TransferInstruction,
    mask_destination,
)

logger = structlog.get_logger()


def _batch_id(prefix: str) -> str:
    return f"{prefix}_{int(datetime.now(timezone.utc).timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"


class InstructionFileGateway(Gateway):
    """Writes a JSON instruction file per batch under output_dir/<rail>/."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir) / self.rail_name.lower()

    def _instruction(self, transactions: List[TransferInstruction], batch_id: str) -> Dict[str, Any]:
        return {
            "batch_id": batch_id,
            "rail": self.rail_name,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "status": "WAITING_MANUAL_EXECUTION",
            "transfers": [
                {
                    "reference": t.reference,
                    "amount": t.amount,
                    "currency": t.currency,
                    "masked_destination": mask_destination(t.destination),
                }
                for t in transactions
            ],
        }

    def _write(self, path: Path, content: str) -> None:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8", newline="") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            raise RetryableGatewayError(f"Cannot write instruction batch: {e}", rail=self.rail_name)

    def _dispatch(self, transactions: List[TransferInstruction]) -> DispatchResult:
        batch_id = _batch_id(self.rail_name)
        instruction = self._instruction(transactions, batch_id)
        path = self.output_dir / f"instruction_{batch_id}.json"
        self._write(path, json.dumps(instruction, indent=2))

        logger.info("instruction_batch_prepared", rail=self.rail_name, batch_id=batch_id, count=len(transactions))
        return DispatchResult(
            status=DispatchStatus.PROCESSING,
            provider_response={"batch_id": batch_id, "file_path": str(path), "network": self.rail_name},
        )


class BankWireGateway(InstructionFileGateway):
    """Wire batches as CSV, one row per transfer, carrying the sending account."""

    rail_name = "BANK_WIRE"

    def __init__(self, output_dir: Path, iban: str, swift: str, account_name: str = ""):
        super().__init__(output_dir)
        self.iban = iban
        self.swift = swift
        self.account_name = account_name

    def _dispatch(self, transactions: List[TransferInstruction]) -> DispatchResult:
        batch_id = _batch_id("WIRE")
        path = self.output_dir / f"wire_batch_{batch_id}.csv"

        rows = [["Reference", "Amount", "Currency", "Beneficiary", "OriginIBAN", "OriginName", "SwiftCode"]]
        for t in transactions:
            rows.append([
                t.reference,
                str(t.amount),
                t.currency,
                mask_destination(t.destination),
                mask_destination(self.iban),
                self.account_name,
                self.swift,
            ])

        buf = io.StringIO()
        csv.writer(buf).writerows(rows)
        self._write(path, buf.getvalue())

        logger.info("wire_batch_prepared", batch_id=batch_id, count=len(transactions))
        return DispatchResult(
            status=DispatchStatus.PROCESSING,
            provider_response={"batch_id": batch_id, "file_path": str(path), "network": "BANK_WIRE"},
        )


class EWalletGateway(InstructionFileGateway):
    """E-wallet payouts, prepared under the app's client id."""

    rail_name = "EWALLET"

    def __init__(self, output_dir: Path, client_id: str):
        super().__init__(output_dir)
        self.client_id = client_id

    def _instruction(self, transactions: List[TransferInstruction], batch_id: str) -> Dict[str, Any]:
        instruction = super()._instruction(transactions, batch_id)
        instruction["client_id"] = self.client_id
        return instruction


class CryptoTransferGateway(InstructionFileGateway):
    """
    Stablecoin transfers prepared as signed instructions.

    The signature is an HMAC-SHA256 over the canonical instruction, keyed
    with the wallet signing key, so the broadcaster can reject edits.
    """

    rail_name = "CRYPTO_TRANSFER"

    def __init__(self, output_dir: Path, wallet_address: str, signing_key: str, network: str = "TRC20"):
        super().__init__(output_dir)
        self.wallet_address = wallet_address
        self.signing_key = signing_key
        self.network = network

    def _instruction(self, transactions: List[TransferInstruction], batch_id: str) -> Dict[str, Any]:
        instruction = super()._instruction(transactions, batch_id)
        instruction["network"] = self.network
        instruction["from_address"] = self.wallet_address
        # The broadcaster needs full addresses
        for row, t in zip(instruction["transfers"], transactions):
            row["to_address"] = t.destination
        instruction["signature"] = hmac.new(
            self.signing_key.encode("utf-8"),
            canonicalize(instruction, exclude=("signature",)).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return instruction
