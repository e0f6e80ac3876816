from __future__ import annotations


class OrderError(Exception):
    """Base class for lifecycle failures that map onto an HTTP response."""

    status_code = 400
    code = "order_error"

    def __init__(self, message: str = "", *, code: str | None = None, status_code: int | None = None, **extra):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        if status_code:
            self.status_code = int(status_code)
        self.extra = {k: v for k, v in extra.items() if v is not None}

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status_code),
        }
        payload.update(self.extra)
        return payload


class ValidationFailed(OrderError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str = "Validation failed", *, details: list | None = None):
        super().__init__(message, details=list(details or []))
        self.details = list(details or [])


class OrderNotFound(OrderError):
    status_code = 404
    code = "order_not_found"


class PaymentRequestNotFound(OrderError):
    status_code = 404
    code = "payment_request_not_found"


class VendorNotFound(OrderError):
    status_code = 404
    code = "vendor_not_found"


class InvalidTransition(OrderError):
    status_code = 400
    code = "invalid_transition"

    def __init__(self, current_status: str, event: str = ""):
        msg = f"Cannot {event or 'transition'} order in status {current_status}"
        super().__init__(msg, current_status=current_status)
        self.current_status = current_status


class ClaimConflict(OrderError):
    status_code = 409
    code = "order_claimed"


class TransitionConflict(OrderError):
    """The order changed between read and conditional write."""

    status_code = 409
    code = "order_conflict"


class VendorMismatch(OrderError):
    status_code = 403
    code = "forbidden"


class FareLocked(OrderError):
    status_code = 400
    code = "cannot_modify_fare"


class ChallengeActive(OrderError):
    status_code = 429
    code = "otp_already_sent"

    def __init__(self, expires_at: str | None):
        super().__init__("An OTP for this purpose is still active", expires_at=expires_at)
        self.expires_at = expires_at


_OTP_FAILURES = {
    "no_challenge": (400, "No OTP challenge for this order"),
    "purpose_mismatch": (400, "OTP purpose mismatch"),
    "expired": (410, "OTP expired"),
    "too_many_attempts": (429, "Too many OTP attempts"),
    "invalid": (401, "Invalid OTP"),
}


class OtpRejected(OrderError):
    def __init__(self, cause: str, **extra):
        status, message = _OTP_FAILURES.get(cause, (400, cause))
        super().__init__(message, code=cause, status_code=status, **extra)
        self.cause = cause


class ReplayedFailure(OrderError):
    """A keyed creation call whose first attempt failed; the failure is replayed as recorded."""

    code = "replayed_failure"

    def __init__(self, status_code: int, message: str, original_call_at: str | None = None):
        super().__init__(
            message or "Original request failed",
            status_code=int(status_code or 400),
            idempotent=True,
            original_call_timestamp=original_call_at,
        )


class AlreadyPaid(OrderError):
    status_code = 400
    code = "order_already_paid"


class NotAssigned(OrderError):
    """The acting vendor is not the vendor bound to the order."""

    status_code = 409
    code = "not_assigned_to_vendor"


class Unauthorized(OrderError):
    status_code = 401
    code = "unauthorized"
