"""
Payout Errors

Exception taxonomy for the commission/payout engine.

- ValidationError: bad input shape, never partially applied
- NotFoundError: unknown restaurant, payout, bank account
- ConflictError: state conflicts (batch already generated, bad transition)
- TransferError: provider transport/auth failure for a whole call

Every error carries a machine-readable `reason` and a `details` dict that
the API layer echoes back to the caller.
"""

from typing import Any, Dict, List, Optional


class PayoutError(Exception):
    """Base class for all payout engine errors."""

    reason = "payout_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if reason:
            self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.reason, "message": self.message, **self.details}


class ValidationError(PayoutError):
    reason = "validation_error"
    status_code = 400


class NotFoundError(PayoutError):
    reason = "not_found"
    status_code = 404


class ConflictError(PayoutError):
    reason = "conflict"
    status_code = 409


class AlreadyGenerated(ConflictError):
    """Payouts already exist for this restaurant and billing month."""

    reason = "already_generated"

    def __init__(self, restaurant_id: int, month: str, existing_count: int):
        super().__init__(
            f"Payouts already generated for restaurant {restaurant_id} for {month}",
            details={
                "restaurant_id": restaurant_id,
                "month": month,
                "existing_count": existing_count,
            },
        )


class InvalidTransition(ConflictError):
    """Requested payout status change is not in the allow-list."""

    reason = "invalid_transition"

    def __init__(self, current_status: str, requested_status: str, allowed_statuses: List[str]):
        super().__init__(
            f"Invalid status transition from {current_status} to {requested_status}",
            details={
                "current_status": current_status,
                "requested_status": requested_status,
                "allowed_statuses": allowed_statuses,
            },
        )


class TransferError(PayoutError):
    """
    Raised by a transfer provider when the call itself could not be made
    (network failure, authentication failure). Per-recipient refusals are
    returned as failed TransferResults instead.
    """

    reason = "transfer_error"
    status_code = 502
