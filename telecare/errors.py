"""
Domain error taxonomy

Every error carries an HTTP status code and a machine-readable code so the
API layer can map it to a 4xx/5xx response without inspecting messages.
"""

from typing import Any, Optional


class DomainError(Exception):
    """Base class for business-rule rejections"""

    status_code = 400
    code = "domain_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class ValidationFailedError(DomainError):
    code = "validation_failed"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(DomainError):
    status_code = 403
    code = "permission_denied"


class InvalidReferralError(DomainError):
    """Referral code rejected - `reason` is one of ReferralRejection's values"""

    code = "invalid_referral"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Referral code rejected: {reason}", reason=reason)
        self.reason = reason


class InvalidStateTransition(DomainError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, current: str, attempted: str, precondition: str):
        super().__init__(
            f"Cannot {attempted} appointment in status '{current}': {precondition}",
            current=current,
            attempted=attempted,
            precondition=precondition,
        )
        self.current = current
        self.attempted = attempted
        self.precondition = precondition


class SlotConflictError(DomainError):
    status_code = 409
    code = "slot_conflict"


class ConcurrentModificationError(DomainError):
    """Optimistic update lost a race; safe to retry"""

    status_code = 409
    code = "concurrent_modification"


class DuplicatePaymentError(DomainError):
    status_code = 409
    code = "duplicate_payment"


class SignatureVerificationFailed(DomainError):
    code = "signature_verification_failed"


class AmountMismatchError(DomainError):
    code = "amount_mismatch"


class PaymentNotRefundableError(DomainError):
    status_code = 409
    code = "payment_not_refundable"


class InvalidRefundAmountError(DomainError):
    code = "invalid_refund_amount"


class RefundExceedsAvailableError(DomainError):
    code = "refund_exceeds_available"


class GatewayError(DomainError):
    """Gateway API call failed (order creation, refund execution)"""

    status_code = 502
    code = "gateway_error"
