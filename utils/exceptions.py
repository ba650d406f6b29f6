"""
Marketplace error taxonomy.

Core services raise these; request handlers translate ``code`` into their own
status codes. Nothing in the core catches them except to roll back and
re-raise.
"""

from typing import Optional


class MarketplaceError(Exception):
    """Base class for all marketplace domain errors"""

    code = "marketplace_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MarketplaceError):
    code = "not_found"


class AccessDeniedError(MarketplaceError):
    code = "access_denied"


class InvalidTransitionError(MarketplaceError):
    """Raised when the transition policy rejects a status change"""

    code = "invalid_transition"

    def __init__(self, current_status: str, requested_status: str, role: str, message: Optional[str] = None):
        self.current_status = current_status
        self.requested_status = requested_status
        self.role = role
        super().__init__(
            message
            or f"Invalid status transition from {current_status} to {requested_status} for role {role}"
        )


class InvalidStateError(MarketplaceError):
    """Operation not allowed in the entity's current state"""

    code = "invalid_state"


class RevisionLimitReachedError(InvalidStateError):
    code = "revision_limit_reached"


class AlreadyExistsError(MarketplaceError):
    code = "already_exists"


class AlreadyAppliedError(AlreadyExistsError):
    code = "already_applied"


class InsufficientFundsError(MarketplaceError):
    code = "insufficient_funds"


class TooManyActiveJobsError(MarketplaceError):
    code = "too_many_active_jobs"


class AlreadyProcessedError(MarketplaceError):
    code = "already_processed"


class AlreadyReleasedError(MarketplaceError):
    code = "already_released"


class ValidationFailedError(MarketplaceError):
    """Caller-supplied data failed validation"""

    code = "validation_failed"


class PaymentVerificationError(ValidationFailedError):
    code = "payment_verification_failed"


class ImmutableRecordError(MarketplaceError):
    """Attempt to modify or delete an append-only ledger record"""

    code = "immutable_record"


__all__ = [
    "MarketplaceError",
    "NotFoundError",
    "AccessDeniedError",
    "InvalidTransitionError",
    "InvalidStateError",
    "RevisionLimitReachedError",
    "AlreadyExistsError",
    "AlreadyAppliedError",
    "InsufficientFundsError",
    "TooManyActiveJobsError",
    "AlreadyProcessedError",
    "AlreadyReleasedError",
    "ValidationFailedError",
    "PaymentVerificationError",
    "ImmutableRecordError",
]
