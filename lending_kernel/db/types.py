"""
Module: lending_kernel.db.types
Responsibility: Annotated type aliases and type decorators shared by every
    ledger model, so that identifiers, hashes and timestamps are stored the
    same way everywhere.
Architecture position: Kernel > DB.  May be imported by models/, services/,
    and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Timestamps are timezone-aware UTC on the way in and on the way out.
      SQLite drops tzinfo; UTCDateTime restores it so that values read back
      hash identically to the values written (audit chain verification).
    - Naive datetimes are rejected at bind time.

Failure modes:
    - ValueError when a naive datetime is bound to a UTCDateTime column.
"""

from datetime import UTC, datetime
from typing import Annotated

from sqlalchemy import BigInteger, DateTime, String, Text
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware DateTime normalised to UTC.

    Guarantees:
        - process_bind_param: aware datetime -> UTC datetime.
        - process_result_value: always returns an aware UTC datetime, even
          on backends that store naive values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# Loan / founder / disbursement identifiers supplied by callers
Identifier = Annotated[str, String(100)]

# Workflow state identifier or event type tag
StateId = Annotated[str, String(100)]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Free-text detail
LongText = Annotated[str, Text]

# Timestamp column
Timestamp = Annotated[datetime, UTCDateTime()]
