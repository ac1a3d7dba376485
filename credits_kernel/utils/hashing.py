"""
Deterministic hashing utilities.

Idempotency keys bind to the hash of the canonical request payload; webhook
deduplication binds to the hash of the exact verified bytes.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """Serialize types json does not handle natively."""
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted and separators carry no whitespace, so logically equal
    payloads produce identical strings regardless of key order.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: Any) -> str:
    """SHA-256 hex digest (64 characters) of the canonical JSON of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_bytes(raw: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()
