"""
Idempotency key generation utilities.

Idempotency keys ensure that the same workflow event applies at most one
state transition, even under retries and concurrent delivery.
"""


def generate_idempotency_key(
    loan_id: str,
    event_type: str,
    event_identity: str,
) -> str:
    """
    Generate an idempotency key for a workflow event.

    Format: loan_id:event_type:event_identity

    The key is stored on the state-transition audit entry and has a unique
    constraint, so a second commit of the same event cannot succeed.

    Args:
        loan_id: Loan the event targets.
        event_type: Event type tag.
        event_identity: Caller event id, or the event's occurred_at in
            ISO-8601 form when the caller supplies no id.

    Example:
        >>> generate_idempotency_key("L1", "KYC_APPROVED", "evt-42")
        'L1:KYC_APPROVED:evt-42'
    """
    return f"{loan_id}:{event_type}:{event_identity}"


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Parse an idempotency key into its components.

    Returns:
        Tuple of (loan_id, event_type, event_identity).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 2)
    if len(parts) != 3:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]
