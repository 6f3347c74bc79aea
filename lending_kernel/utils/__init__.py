"""Utility functions for the lending kernel."""

from lending_kernel.utils.hashing import canonicalize_json, hash_audit_entry, hash_payload
from lending_kernel.utils.idempotency import generate_idempotency_key

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "hash_audit_entry",
    "generate_idempotency_key",
]
