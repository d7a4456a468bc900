"""
Hashing Utilities for Cache Keys
================================

Cache keys must be identical for logically identical inputs no matter how the
caller built them: object key order, ``Decimal`` vs string, or integers too
large for a JSON double must not change the key. ``canonical_json`` produces
that stable form and ``derive_cache_key`` hashes it with SHA-256.
"""

import base64
import dataclasses
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

# Largest integer a JSON consumer can represent exactly as a double
MAX_SAFE_INTEGER = 2**53 - 1


def secure_hash(content: str | bytes, length: int | None = None) -> str:
    """
    Generate a SHA256 hash.

    Args:
        content: String or bytes to hash
        length: Optional length to truncate to (default: full 64-char hash)
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    digest = hashlib.sha256(content).hexdigest()
    return digest[:length] if length else digest


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, float)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _normalize(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(v) for v in value), key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return str(value)


def canonical_json(value: Any) -> str:
    """Serialize ``value`` to a key-order independent JSON string."""
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def derive_cache_key(descriptor: dict[str, Any]) -> str:
    """
    Derive the cache key for a generation request descriptor.

    Example:
        key = derive_cache_key({"modelName": "m", "instruction": "Hi", "rowData": {}})
    """
    return secure_hash(canonical_json(descriptor))
