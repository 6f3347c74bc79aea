"""
Lending Kernel

The system of record for a data-driven loan lifecycle:
- Loans whose state is governed by a declarative process definition
- Append-only, hash-chained audit log per loan
- Idempotent disbursement records (at most one per loan and kind)
- Typed failures and structured JSON logging
"""

__version__ = "0.1.0"
