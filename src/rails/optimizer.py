"""
Rail Optimizer

Scores and ranks rails from rolling success/failure/latency statistics and
trips a circuit breaker on repeated failures.

Score per rail (weights sum to 1.0):
    success rate   0.6   success / attempts, 0.5 with no samples
    speed          0.2   1 / average latency in seconds, clamped to [0, 1]
    recency        0.1   linear decay to 0 over 24h since last use
    cost           0.1   max(0, 1 - fee / amount)
"""

import copy
import json
import os
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import structlog

from ledger.lock import FileLock, Lock, ThreadLock

from .registry import Rail, RailRegistry

logger = structlog.get_logger()

WEIGHT_SUCCESS = 0.6
WEIGHT_SPEED = 0.2
WEIGHT_RECENCY = 0.1
WEIGHT_COST = 0.1

RECENCY_WINDOW_SECONDS = 24 * 3600
DEFAULT_CIRCUIT_BREAKER_THRESHOLD = 3
DEFAULT_EXPLORATION_RATE = 0.1


@dataclass
class RailStats:
    """Rolling outcome statistics for one rail."""
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    average_latency_ms: float = 0.0
    last_used_at: Optional[str] = None

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count

    def success_rate(self) -> float:
        if self.attempts == 0:
            return 0.5
        return self.success_count / self.attempts

    def apply_outcome(self, success: bool, latency_ms: float, now: datetime) -> None:
        if success:
            self.success_count += 1
            self.consecutive_failures = 0
        else:
            self.failure_count += 1
            self.consecutive_failures += 1

        n = self.attempts
        self.average_latency_ms = (self.average_latency_ms * (n - 1) + latency_ms) / n
        self.last_used_at = now.isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "average_latency_ms": self.average_latency_ms,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RailStats":
        return cls(
            success_count=int(data.get("success_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            average_latency_ms=float(data.get("average_latency_ms", 0.0)),
            last_used_at=data.get("last_used_at"),
        )


class StatsStore(ABC):
    """Persistence for rail statistics."""

    @abstractmethod
    def load(self) -> Dict[str, RailStats]:
        pass

    @abstractmethod
    def update(self, rail: Rail, mutate: Callable[[RailStats], None]) -> RailStats:
        """Apply `mutate` to the rail's stats and persist before returning."""
        pass


class InMemoryStatsStore(StatsStore):

    def __init__(self, initial: Optional[Dict[str, RailStats]] = None):
        self._stats: Dict[str, RailStats] = copy.deepcopy(initial) if initial else {}
        self._lock = ThreadLock("rail_stats")

    def load(self) -> Dict[str, RailStats]:
        return copy.deepcopy(self._stats)

    def update(self, rail: Rail, mutate: Callable[[RailStats], None]) -> RailStats:
        with self._lock.held():
            stats = self._stats.setdefault(rail.value, RailStats())
            mutate(stats)
            return copy.deepcopy(stats)


class JsonStatsStore(StatsStore):
    """
    Rail stats in a JSON file shared between processes.

    Updates re-read the file under a FileLock so concurrent processes do not
    lose each other's outcomes; the file is replaced atomically.
    """

    def __init__(self, path: Path, lock: Optional[Lock] = None, lock_timeout: float = 5.0):
        self.path = Path(path)
        self.lock = lock or FileLock(
            self.path.parent / f"{self.path.stem}.lock", default_timeout=lock_timeout
        )

    def load(self) -> Dict[str, RailStats]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            # Stats only steer ranking; start fresh instead of blocking settlement
            logger.warning("rail_stats_unreadable", path=str(self.path), error=str(e))
            return {}
        return {name: RailStats.from_dict(row) for name, row in raw.items()}

    def _save(self, stats: Dict[str, RailStats]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + f".tmp.{os.getpid()}")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({name: s.to_dict() for name, s in stats.items()}, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def update(self, rail: Rail, mutate: Callable[[RailStats], None]) -> RailStats:
        with self.lock.held():
            stats = self.load()
            entry = stats.setdefault(rail.value, RailStats())
            mutate(entry)
            self._save(stats)
            return entry


class RailOptimizer:
    """
    Ranks rails for a transfer and learns from dispatch outcomes.

    Usage:
        optimizer = RailOptimizer(registry, store=JsonStatsStore(path))
        ranked = optimizer.rank(70_000, "USD")
        optimizer.record_outcome(ranked[0], success=True, latency_ms=840)
    """

    def __init__(
        self,
        registry: RailRegistry,
        store: Optional[StatsStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        exploration_rate: float = DEFAULT_EXPLORATION_RATE,
        circuit_breaker_threshold: int = DEFAULT_CIRCUIT_BREAKER_THRESHOLD,
        fallback_rail: Optional[Rail] = None,
    ):
        self.registry = registry
        self.store = store or InMemoryStatsStore()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.rng = rng or random.Random()
        self.exploration_rate = exploration_rate
        self.circuit_breaker_threshold = circuit_breaker_threshold
        self.fallback_rail = fallback_rail

    def stats(self, rail: Rail) -> RailStats:
        return self.store.load().get(rail.value, RailStats())

    def is_tripped(self, rail: Rail, stats: Optional[RailStats] = None) -> bool:
        stats = stats or self.stats(rail)
        return stats.consecutive_failures >= self.circuit_breaker_threshold

    def _fallback_for(self, candidates: List[Rail]) -> Rail:
        if self.fallback_rail in candidates:
            return self.fallback_rail
        return candidates[0]

    def _score(self, rail: Rail, amount: int, stats: RailStats, now: datetime) -> Dict[str, float]:
        success = stats.success_rate()

        if stats.attempts == 0:
            speed = 0.5
        elif stats.average_latency_ms <= 0:
            speed = 1.0
        else:
            speed = min(1.0, 1.0 / (stats.average_latency_ms / 1000.0))

        recency = 0.0
        if stats.last_used_at:
            age = (now - datetime.fromisoformat(stats.last_used_at)).total_seconds()
            recency = max(0.0, min(1.0, 1.0 - age / RECENCY_WINDOW_SECONDS))

        cost = 0.0
        if amount > 0:
            cost = max(0.0, 1.0 - self.registry.estimate_fee(rail, amount) / amount)

        total = (
            WEIGHT_SUCCESS * success
            + WEIGHT_SPEED * speed
            + WEIGHT_RECENCY * recency
            + WEIGHT_COST * cost
        )
        return {
            "success": success,
            "speed": speed,
            "recency": recency,
            "cost": cost,
            "total": total,
        }

    def scores(self, amount: int, currency: str) -> List[Dict[str, Any]]:
        """Per-rail score breakdown for diagnostics, best first."""
        all_stats = self.store.load()
        now = self._clock()
        rows = []
        for rail in self.registry.rails_for_currency(currency):
            stats = all_stats.get(rail.value, RailStats())
            row = {"rail": rail.value, "tripped": self.is_tripped(rail, stats)}
            row.update(self._score(rail, amount, stats, now))
            row["stats"] = stats.to_dict()
            rows.append(row)
        rows.sort(key=lambda r: (r["tripped"], -r["total"]))
        return rows

    def rank(self, amount: int, currency: str, context: Optional[Dict[str, Any]] = None) -> List[Rail]:
        """
        Order candidate rails for a transfer, best first.

        Only rails settling in `currency` are considered. Tripped rails are
        excluded; if every candidate is tripped the designated fallback is
        returned alone. An empty list means no rail handles the currency.
        context["exclude"] may list rails to leave out of this ranking.
        """
        context = context or {}
        excluded = set(context.get("exclude", ()))
        candidates = [r for r in self.registry.rails_for_currency(currency) if r not in excluded]
        if not candidates:
            logger.warning("no_rail_for_currency", currency=currency)
            return []

        all_stats = self.store.load()
        now = self._clock()

        # Step 1: Circuit breaker
        eligible = []
        for rail in candidates:
            stats = all_stats.get(rail.value, RailStats())
            if self.is_tripped(rail, stats):
                logger.warning(
                    "rail_circuit_open",
                    rail=rail.value,
                    consecutive_failures=stats.consecutive_failures,
                )
                continue
            eligible.append((rail, stats))

        if not eligible:
            fallback = self._fallback_for(candidates)
            logger.warning("all_rails_tripped", currency=currency, fallback=fallback.value)
            return [fallback]

        # Step 2: Score; ties keep registration order
        scored = [
            (rail, self._score(rail, amount, stats, now)["total"])
            for rail, stats in eligible
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        ranked = [rail for rail, _ in scored]

        # Step 3: Exploration
        if len(ranked) > 1 and self.rng.random() < self.exploration_rate:
            pick = self.rng.choice(ranked)
            ranked.remove(pick)
            ranked.insert(0, pick)
            logger.info("rail_exploration", rail=pick.value, currency=currency)

        logger.info(
            "rails_ranked",
            amount=amount,
            currency=currency,
            ranking=[r.value for r in ranked],
        )
        return ranked

    def record_outcome(self, rail: Rail, success: bool, latency_ms: float) -> RailStats:
        """Fold one completed attempt into the rail's stats; durable on return."""
        now = self._clock()
        updated = self.store.update(
            rail, lambda stats: stats.apply_outcome(success, max(0.0, float(latency_ms)), now)
        )

        if not success and updated.consecutive_failures == self.circuit_breaker_threshold:
            logger.error(
                "rail_circuit_tripped",
                rail=rail.value,
                consecutive_failures=updated.consecutive_failures,
            )
        logger.info(
            "rail_outcome_recorded",
            rail=rail.value,
            success=success,
            latency_ms=latency_ms,
            success_rate=round(updated.success_rate(), 4),
        )
        return updated

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        all_stats = self.store.load()
        return {
            rail.value: all_stats.get(rail.value, RailStats()).to_dict()
            for rail in self.registry.rails
        }
