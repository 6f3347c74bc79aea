"""
Deterministic hashing utilities.

All hashing in the lending kernel must be deterministic and reproducible.
The audit hash chain is recomputed from stored rows during verification, so
the same entry must always produce the same digest.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Normalize so 1.10 and 1.1 hash the same
        return str(obj.normalize())
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Produces a deterministic JSON representation:
    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID, Enum)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_entry(
    loan_id: str,
    seq: int,
    event: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute hash for a loan audit entry.

    The hash includes the entry's position in the loan's chain plus the
    previous entry's hash, creating a tamper-evident chain per loan.

    Args:
        loan_id: Loan the entry belongs to.
        seq: Ledger-assigned per-loan sequence number.
        event: Audit tag value.
        payload_hash: Hash of the entry's content fields.
        prev_hash: Hash of the previous entry for this loan (None for genesis).

    Returns:
        Hex-encoded SHA-256 hash.
    """
    components = [
        loan_id,
        str(seq),
        event,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
