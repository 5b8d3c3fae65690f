"""
Error taxonomy for merchant onboarding

Every failure surfaced by this package is an OnboardingError carrying a
stable error code, so callers (API layer, import scripts, dispatch cron)
can branch on the kind of failure without parsing messages.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Standardised error codes for onboarding operations"""

    # Input errors (1000-1099)
    VALIDATION_FAILED = "ONB_1001"
    DUPLICATE_EMAIL = "ONB_1002"
    MERCHANT_NOT_FOUND = "ONB_1003"

    # Setup token errors (2000-2099)
    TOKEN_NOT_FOUND = "TOK_2001"
    TOKEN_MISMATCH = "TOK_2002"
    TOKEN_EXPIRED = "TOK_2003"

    # Review state machine errors (3000-3099)
    DOCUMENTS_NOT_READY = "REV_3001"
    INVALID_TRANSITION = "REV_3002"

    # Delivery queue errors (4000-4099)
    QUEUE_ALREADY_PENDING = "DLV_4001"
    QUEUE_PERSISTENCE_FAILED = "DLV_4002"
    QUEUE_LOCKED = "DLV_4003"
    DELIVERY_FAILED = "DLV_4004"


class OnboardingError(Exception):
    """Base class for all onboarding failures"""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(f"{self.error_code.value}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for reports and API responses"""
        payload = {
            "code": self.error_code.value,
            "type": type(self).__name__,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(OnboardingError):
    """Bad input, rejected before any mutation"""
    error_code = ErrorCode.VALIDATION_FAILED


class DuplicateEmail(OnboardingError):
    """A merchant with this e-mail already exists"""
    error_code = ErrorCode.DUPLICATE_EMAIL


class MerchantNotFound(OnboardingError):
    error_code = ErrorCode.MERCHANT_NOT_FOUND


class TokenError(OnboardingError):
    """Terminal failure of a setup token verification attempt"""
    error_code = ErrorCode.TOKEN_NOT_FOUND


class TokenNotFound(TokenError):
    error_code = ErrorCode.TOKEN_NOT_FOUND


class TokenMismatch(TokenError):
    error_code = ErrorCode.TOKEN_MISMATCH


class TokenExpired(TokenError):
    error_code = ErrorCode.TOKEN_EXPIRED


class NotReady(OnboardingError):
    """Approval requested while required documents are missing"""
    error_code = ErrorCode.DOCUMENTS_NOT_READY


class InvalidTransition(OnboardingError):
    """Requested status change is not an edge of the onboarding state machine"""
    error_code = ErrorCode.INVALID_TRANSITION


class QueueAlreadyPending(OnboardingError):
    """An undelivered credential queue already exists"""
    error_code = ErrorCode.QUEUE_ALREADY_PENDING

    # Set when a merchant batch was created but could not be queued
    batch_report = None


class QueuePersistenceError(OnboardingError):
    """The queue artifact could not be read or written; never treat as delivered"""
    error_code = ErrorCode.QUEUE_PERSISTENCE_FAILED
    batch_report = None


class QueueLockError(OnboardingError):
    """Another dispatcher holds the queue lock"""
    error_code = ErrorCode.QUEUE_LOCKED


class DeliveryFailed(OnboardingError):
    """A single credential e-mail could not be handed to the transport"""
    error_code = ErrorCode.DELIVERY_FAILED
