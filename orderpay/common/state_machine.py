"""Payment reconciliation saga transitions enforced by the reconciler."""

INTENT_CREATED = "INTENT_CREATED"
SIGNATURE_VERIFIED = "SIGNATURE_VERIFIED"
ORDER_UPDATE_RETRYING = "ORDER_UPDATE_RETRYING"
RECONCILED = "RECONCILED"
UPDATE_FAILED_ESCALATED = "UPDATE_FAILED_ESCALATED"
PAYMENT_FAILED = "PAYMENT_FAILED"
ABANDONED = "ABANDONED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    INTENT_CREATED: {SIGNATURE_VERIFIED, PAYMENT_FAILED, ABANDONED},
    # The verified-state write itself can fail; the payment is captured by then.
    SIGNATURE_VERIFIED: {ORDER_UPDATE_RETRYING, UPDATE_FAILED_ESCALATED},
    ORDER_UPDATE_RETRYING: {RECONCILED, UPDATE_FAILED_ESCALATED},
    # Operator resolution.
    UPDATE_FAILED_ESCALATED: {RECONCILED},
    RECONCILED: set(),
    # A verified capture can still arrive after a failed try or a closed modal.
    PAYMENT_FAILED: {SIGNATURE_VERIFIED},
    ABANDONED: {SIGNATURE_VERIFIED},
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)
CAPTURED_STATES = frozenset(
    {SIGNATURE_VERIFIED, ORDER_UPDATE_RETRYING, RECONCILED, UPDATE_FAILED_ESCALATED}
)


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
