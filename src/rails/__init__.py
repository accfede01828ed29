"""
Rail selection: per-rail policy, typed configuration and the optimizer that
ranks rails for a settlement.
"""

from .registry import Rail, RailPolicy, RailRegistry, DEFAULT_RAIL_POLICIES, QUEUE_OVERFLOW
from .config import SettlementConfig, ConfigurationError, Capability, check_capability
from .optimizer import (
    RailOptimizer,
    RailStats,
    StatsStore,
    JsonStatsStore,
    InMemoryStatsStore,
)

__all__ = [
    "Rail",
    "RailPolicy",
    "RailRegistry",
    "DEFAULT_RAIL_POLICIES",
    "QUEUE_OVERFLOW",
    "SettlementConfig",
    "ConfigurationError",
    "Capability",
    "check_capability",
    "RailOptimizer",
    "RailStats",
    "StatsStore",
    "JsonStatsStore",
    "InMemoryStatsStore",
]
