"""
Fast JSON utilities backed by orjson.

Usage:
    from bidsync.core.json_utils import dumps, loads, canonical

    store.set(key, dumps(bid.to_dict()))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Compact JSON encode to string."""
    return orjson.dumps(obj).decode("utf-8")


def canonical(obj: Any) -> str:
    """Deterministic encoding (sorted keys) so equal payloads compare equal byte for byte."""
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS).decode("utf-8")


def loads(s: str | bytes) -> Any:
    return orjson.loads(s)
