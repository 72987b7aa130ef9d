from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(str, Enum):
    """
    Failure categories for the renewal/verification pipeline.

    Every billing exception carries one of these, so callers, metrics and
    the HTTP layer branch on the kind rather than on message text.
    """
    VALIDATION = "validation"
    LOCK_CONTENTION = "lock_contention"
    GATEWAY_TIMEOUT = "gateway_timeout"
    GATEWAY_API = "gateway_api"
    AMOUNT_MISMATCH = "amount_mismatch"
    SIGNATURE_MISMATCH = "signature_mismatch"
    INTEGRITY = "integrity"
    PAYMENT_NOT_CAPTURED = "payment_not_captured"
    DUPLICATE_VERIFICATION = "duplicate_verification"
    STALE_RENEWAL_ORPHANED = "stale_renewal_orphaned"
    ADMIN_REVIEW_REQUIRED = "admin_review_required"
    NOT_FOUND = "not_found"


class MedoraException(Exception):
    """Base exception for all Medora errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(MedoraException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(MedoraException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class BillingError(MedoraException):
    """Raised when payment or subscription processing fails."""
    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code or self.kind.value, status_code=status_code, details=details)


class ValidationError(BillingError):
    """Bad doctor count, billing cycle or callback payload. Never retried."""
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class LockContention(BillingError):
    """Another renewal or verification for the tenant is in progress."""
    kind = ErrorKind.LOCK_CONTENTION
    retryable = True

    def __init__(self, message: str = "Another billing operation is in progress", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=409, details=details)


class GatewayError(BillingError):
    """Base class for payment gateway failures."""
    kind = ErrorKind.GATEWAY_API

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message, status_code=status_code, details=details)
        self.retryable = retryable


class GatewayTimeout(GatewayError):
    """The gateway did not answer within the configured bound."""
    kind = ErrorKind.GATEWAY_TIMEOUT

    def __init__(self, message: str = "Payment gateway timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=504, details=details, retryable=True)


class GatewayAPIError(GatewayError):
    """The gateway answered with an error or was unreachable."""
    kind = ErrorKind.GATEWAY_API

    def __init__(
        self,
        message: str,
        gateway_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message, status_code=502, details=details, retryable=retryable)
        self.gateway_status = gateway_status


class IntegrityViolation(BillingError):
    """Callback or gateway data does not match what was recorded. Logged loudly, never retried."""
    kind = ErrorKind.INTEGRITY


class AmountMismatch(IntegrityViolation):
    kind = ErrorKind.AMOUNT_MISMATCH


class SignatureMismatch(IntegrityViolation):
    kind = ErrorKind.SIGNATURE_MISMATCH


class PaymentNotCaptured(BillingError):
    """Gateway reports the payment in a state other than captured."""
    kind = ErrorKind.PAYMENT_NOT_CAPTURED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=402, details=details)


class DuplicateVerification(BillingError):
    """
    The order was already applied.

    Not an error for callers: orchestrators turn it into an
    ``already_applied`` result.
    """
    kind = ErrorKind.DUPLICATE_VERIFICATION

    def __init__(self, message: str = "Payment already applied", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=200, details=details)


class StaleRenewalOrphaned(BillingError):
    """A pending renewal outlived the staleness threshold. Only the sweeper sees this."""
    kind = ErrorKind.STALE_RENEWAL_ORPHANED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=409, details=details)


class AdminReviewRequired(BillingError):
    """An anomaly that cannot be resolved automatically; a human has to look."""
    kind = ErrorKind.ADMIN_REVIEW_REQUIRED

    def __init__(self, message: str, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=202, details={"reason": reason, **(details or {})})
        self.reason = reason


class RenewalNotFound(BillingError):
    """No renewal attempt matches the tenant and order."""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Renewal attempt not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=404, details=details)
