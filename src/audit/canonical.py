"""
Canonical JSON

Deterministic serialization used as the HMAC input: object keys sorted
recursively, arrays in their original order, no insignificant whitespace.
"""

import json
from typing import Any


def _sorted(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sorted(value[k]) for k in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_sorted(v) for v in value]
    return value


def canonicalize(obj: Any, exclude: tuple = ("hmac",)) -> str:
    """
    Serialize `obj` canonically. Top-level keys listed in `exclude` are
    dropped, so an entry can be re-canonicalized with its own hmac attached.
    """
    if isinstance(obj, dict):
        obj = {k: v for k, v in obj.items() if k not in exclude}
    return json.dumps(_sorted(obj), separators=(",", ":"), ensure_ascii=False)
