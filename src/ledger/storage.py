"""
Ledger Storage Backends

Durable keyed storage for the settlement ledger. The ledger owns locking;
storages only load and save whole snapshots.

Layout:
    {
        "daily_usage":  {"YYYY-MM-DD": {"BANK_WIRE": 0, ...}},
        "transactions": [...],
        "queued":       [...],
        "reservations": [...],
        "idempotency":  {"key": {...}}
    }
"""

import copy
import json
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional
import structlog

logger = structlog.get_logger()


class LedgerError(Exception):
    """Raised when the ledger store is unreadable or an operation is invalid."""
    pass


def empty_state() -> Dict[str, Any]:
    return {
        "daily_usage": {},
        "transactions": [],
        "queued": [],
        "reservations": [],
        "idempotency": {},
    }


def _normalize(state: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in sections added after a store was first written."""
    for key, default in empty_state().items():
        state.setdefault(key, default)
    return state


class LedgerStorage(ABC):
    """Snapshot persistence for the ledger."""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def save(self, state: Dict[str, Any]) -> None:
        pass

    def describe(self) -> str:
        return self.__class__.__name__


class JsonFileStorage(LedgerStorage):
    """
    Single JSON file, replaced atomically on every save.

    Writes go to a temp file that is fsynced and then renamed over the
    target, so readers never observe a half-written ledger.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return empty_state()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise LedgerError(f"Cannot read ledger {self.path}: {e}")
        if not text.strip():
            return empty_state()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            # Refuse to continue on a corrupt ledger; starting empty would
            # silently reset every daily cap.
            logger.error("ledger_corrupt", path=str(self.path), error=str(e))
            raise LedgerError(f"Ledger {self.path} is corrupt: {e}")
        if not isinstance(data, dict):
            raise LedgerError(f"Ledger {self.path} has unexpected top-level type")
        return _normalize(data)

    def save(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state, indent=2, sort_keys=True).encode("utf-8")
        tmp = self.path.with_suffix(
            self.path.suffix + f".tmp.{os.getpid()}.{int(time.time() * 1000)}"
        )
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        try:
            os.write(fd, payload)
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(str(tmp), str(self.path))

    def describe(self) -> str:
        return f"json:{self.path}"


class InMemoryStorage(LedgerStorage):
    """Process-local storage for tests; snapshots are deep-copied both ways."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._state = _normalize(copy.deepcopy(initial)) if initial else empty_state()

    def load(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state)

    def save(self, state: Dict[str, Any]) -> None:
        self._state = copy.deepcopy(state)
