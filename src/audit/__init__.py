"""
Tamper-evident audit journal for settlement decisions.
"""

from .canonical import canonicalize
from .logger import (
    AuditLog,
    AuditConfigurationError,
    AuditWriteResult,
    ChainVerification,
    build_entry,
    read_last_line,
    CHAIN_BREAK,
    HMAC_MISMATCH,
    MALFORMED_ENTRY,
)

__all__ = [
    "canonicalize",
    "AuditLog",
    "AuditConfigurationError",
    "AuditWriteResult",
    "ChainVerification",
    "build_entry",
    "read_last_line",
    "CHAIN_BREAK",
    "HMAC_MISMATCH",
    "MALFORMED_ENTRY",
]
