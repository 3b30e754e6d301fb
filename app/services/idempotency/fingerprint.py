"""
Payload Fingerprinting

Deterministic SHA-256 digest over a canonical JSON rendering of a payload, used
to detect an idempotency key being reused with different content.
"""

import base64
import hashlib
import json
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Tuple
from uuid import UUID


def canonicalize(value: Any) -> Any:
    """
    Convert a payload into plain JSON types with a fixed encoding.

    - Mapping keys become strings (sorted at dump time)
    - Tuples and lists become lists, sets become sorted lists
    - Integral floats collapse to int so 1000 and 1000.0 compare equal
    - datetime/date/time -> ISO 8601, Decimal/UUID -> str, bytes -> base64
    """
    if isinstance(value, Mapping):
        return {str(k): canonicalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [canonicalize(v) for v in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, bool) or value is None or isinstance(value, (str, int)):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value.normalize()) if value.is_finite() else str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"Cannot fingerprint value of type {type(value).__name__}")


def canonical_json(payload: Any) -> str:
    """Compact, key-sorted JSON string for a payload."""
    return json.dumps(
        canonicalize(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def fingerprint(payload: Any) -> str:
    """
    Fingerprint a structured payload.

    Equal payloads produce equal digests regardless of key insertion order.

    Args:
        payload: Any JSON-like value (dicts, lists, scalars)

    Returns:
        64-character hex SHA-256 digest
    """
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def fingerprint_body(body: bytes) -> str:
    """
    Fingerprint a raw request body.

    JSON bodies are parsed and canonicalized so formatting and key order do not
    matter. Anything else is hashed byte-for-byte. An empty body hashes as null.
    """
    if not body or not body.strip():
        return fingerprint(None)
    try:
        return fingerprint(json.loads(body))
    except (ValueError, UnicodeDecodeError):
        return hashlib.sha256(body).hexdigest()


def fingerprint_request(body: bytes, query_items: Iterable[Tuple[str, str]] = ()) -> str:
    """
    Fingerprint an HTTP request: query parameters plus raw body.

    Query parameters are order-insensitive; repeated names keep every value.
    Without query parameters this equals fingerprint_body(body).
    """
    query = sorted(query_items)
    if not query:
        return fingerprint_body(body)
    return fingerprint({"query": query, "body": fingerprint_body(body)})
