"""
Append-Only HMAC Audit Log

Hash-chained journal of settlement decisions, one JSON-lines file per UTC
day. Each entry carries the hmac of the previous line in the same file as
`prev_hmac` (None for the first line) and its own HMAC-SHA256 over the
canonicalized entry.

Entries are never mutated or deleted. Verification replays the chain and
fails fast on the first broken link or bad signature; nothing is repaired.
"""

import hashlib
import hmac
import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import structlog

from ledger.lock import FileLock

from .canonical import canonicalize

logger = structlog.get_logger()

# Chain verification failures
CHAIN_BREAK = "chain_break"
HMAC_MISMATCH = "hmac_mismatch"
MALFORMED_ENTRY = "malformed_entry"

_TAIL_CHUNK = 4096


class AuditConfigurationError(Exception):
    """Raised when an audit write is attempted without an HMAC secret."""
    pass


@dataclass
class AuditWriteResult:
    file_path: Path
    hmac: str
    prev_hmac: Optional[str] = None


@dataclass
class ChainVerification:
    """Outcome of replaying one day file."""
    ok: bool
    entries: int = 0
    error: Optional[str] = None
    line: Optional[int] = None
    file_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "entries": self.entries,
            "error": self.error,
            "line": self.line,
            "file_path": str(self.file_path) if self.file_path else None,
        }


def sign(secret: str, canonical: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def read_last_line(path: Path) -> Optional[str]:
    """
    Return the last non-empty line of a file by seeking backwards from EOF.

    Reads fixed-size chunks from the end until a line boundary is found, so
    the cost does not grow with the file.
    """
    if not path.exists():
        return None

    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        end = f.tell()
        if end == 0:
            return None

        buf = b""
        pos = end
        while pos > 0:
            step = min(_TAIL_CHUNK, pos)
            pos -= step
            f.seek(pos)
            buf = f.read(step) + buf
            stripped = buf.rstrip(b"\r\n")
            if b"\n" in stripped:
                return stripped.rsplit(b"\n", 1)[1].decode("utf-8").strip() or None

        stripped = buf.strip()
        return stripped.decode("utf-8") if stripped else None


def build_entry(
    action: str,
    entity_id: str,
    actor: str = "settlement-orchestrator",
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Shape an audit entry; nonce, prev_hmac and hmac are added by write()."""
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "id": str(uuid.uuid4()),
        "timestamp": timestamp.isoformat(),
        "action": action,
        "entity_id": entity_id,
        "actor": actor,
        "changes": {"before": before, "after": after},
        "context": context or {},
    }


class AuditLog:
    """
    Daily-rotated append-only audit journal.

    Usage:
        audit = AuditLog(Path("data/audits/settlement_hmac"), secret=os.environ["AUDIT_HMAC_SECRET"])
        audit.write(build_entry("SETTLEMENT_STARTED", "run_123", after={"amount": 70_000}))
        result = AuditLog.verify_chain(audit.current_file(), secret)
    """

    def __init__(
        self,
        base_dir: Path,
        secret: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        lock_timeout: float = 5.0,
    ):
        self.base_dir = Path(base_dir)
        self._secret = secret
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.lock_timeout = lock_timeout

    @classmethod
    def from_config(cls, config: Any, clock: Optional[Callable[[], datetime]] = None) -> "AuditLog":
        secret = None
        if config.audit_hmac_secret is not None:
            secret = config.audit_hmac_secret.get_secret_value()
        return cls(
            config.audit_directory,
            secret=secret,
            clock=clock,
            lock_timeout=config.lock_timeout_seconds,
        )

    def _require_secret(self) -> str:
        if not self._secret or not self._secret.strip():
            logger.error("audit_secret_missing", base_dir=str(self.base_dir))
            raise AuditConfigurationError("AUDIT_HMAC_SECRET missing")
        return self._secret

    def file_for(self, day: date) -> Path:
        return self.base_dir / f"{day.isoformat()}.jsonl"

    def current_file(self) -> Path:
        return self.file_for(self._clock().date())

    def entry(self, action: str, entity_id: str, **kwargs: Any) -> Dict[str, Any]:
        """build_entry() stamped with this log's clock."""
        kwargs.setdefault("timestamp", self._clock())
        return build_entry(action, entity_id, **kwargs)

    def write(self, entry: Dict[str, Any]) -> AuditWriteResult:
        """
        Append one signed entry to today's file.

        The read of the previous hmac and the append happen under a per-file
        lock so concurrent writers cannot fork the chain.
        """
        secret = self._require_secret()
        file_path = self.current_file()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(
            self.base_dir / f".{file_path.stem}.lock", default_timeout=self.lock_timeout
        )

        with lock.held():
            # Step 1: Link to the previous entry
            prev_hmac = None
            last = read_last_line(file_path)
            if last:
                try:
                    prev_hmac = json.loads(last).get("hmac")
                except json.JSONDecodeError:
                    # The break surfaces on verification; the log is never rewritten
                    logger.error("audit_last_line_unreadable", file_path=str(file_path))

            # Step 2: Sign
            payload = {k: v for k, v in entry.items() if k != "hmac"}
            payload["nonce"] = uuid.uuid4().hex
            payload["prev_hmac"] = prev_hmac
            signature = sign(secret, canonicalize(payload))
            payload["hmac"] = signature

            # Step 3: Append as one line
            line = json.dumps(payload, ensure_ascii=False) + "\n"
            with open(file_path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

        logger.info(
            "audit_entry_written",
            action=entry.get("action"),
            entity_id=entry.get("entity_id"),
            file_path=str(file_path),
        )
        return AuditWriteResult(file_path=file_path, hmac=signature, prev_hmac=prev_hmac)

    @staticmethod
    def verify_chain(file_path: Path, secret: str) -> ChainVerification:
        """
        Replay a day file. Fails fast with chain_break, hmac_mismatch or
        malformed_entry and the 1-based line number of the offending entry.
        """
        file_path = Path(file_path)
        if not secret:
            raise AuditConfigurationError("AUDIT_HMAC_SECRET missing")
        if not file_path.exists():
            return ChainVerification(ok=True, entries=0, file_path=file_path)

        last_hmac = None
        entries = 0
        with open(file_path, "r", encoding="utf-8") as f:
            for lineno, raw in enumerate(f, start=1):
                raw = raw.strip()
                if not raw:
                    continue

                def fail(error: str) -> ChainVerification:
                    logger.error(
                        "audit_chain_invalid",
                        file_path=str(file_path),
                        error=error,
                        line=lineno,
                    )
                    return ChainVerification(
                        ok=False, entries=entries, error=error, line=lineno, file_path=file_path
                    )

                try:
                    obj = json.loads(raw)
                except json.JSONDecodeError:
                    return fail(MALFORMED_ENTRY)
                if not isinstance(obj, dict) or not isinstance(obj.get("hmac"), str):
                    return fail(MALFORMED_ENTRY)

                if obj.get("prev_hmac") != last_hmac:
                    return fail(CHAIN_BREAK)

                expected = sign(secret, canonicalize(obj))
                if not hmac.compare_digest(expected, obj["hmac"]):
                    return fail(HMAC_MISMATCH)

                last_hmac = obj["hmac"]
                entries += 1

        return ChainVerification(ok=True, entries=entries, file_path=file_path)

    @classmethod
    def verify_directory(cls, base_dir: Path, secret: str) -> Dict[str, ChainVerification]:
        """Verify every day file under base_dir, keyed by file name."""
        base_dir = Path(base_dir)
        results: Dict[str, ChainVerification] = {}
        if not base_dir.exists():
            return results
        for path in sorted(base_dir.glob("*.jsonl")):
            results[path.name] = cls.verify_chain(path, secret)
        return results

    def verify_today(self) -> ChainVerification:
        return self.verify_chain(self.current_file(), self._require_secret())
