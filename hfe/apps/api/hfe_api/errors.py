"""Entitlement engine error taxonomy.

Each error carries the HTTP status, a stable error code and a problem title so the
global exception handler can render RFC 9457 Problem Details without a lookup table.
Client-facing detail strings stay generic; specifics go to the server log.
"""

from typing import Optional


class EntitlementEngineError(Exception):
    """Base class for all entitlement engine errors."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    title: str = "Internal Server Error"

    def __init__(self, detail: str, *, log_detail: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        # Server-side only; never rendered into a response body
        self.log_detail = log_detail or detail


class AuthenticationError(EntitlementEngineError):
    """Missing or invalid caller identity / webhook token."""

    status_code = 401
    error_code = "AUTHENTICATION_FAILED"
    title = "Unauthorized"


class ConfigurationError(EntitlementEngineError, ValueError):
    """Required secret or allow-list entry missing on the server side."""

    status_code = 500
    error_code = "CONFIGURATION_ERROR"
    title = "Service Misconfigured"


class ValidationError(EntitlementEngineError):
    """Disallowed price id or malformed request payload."""

    status_code = 400
    error_code = "VALIDATION_FAILED"
    title = "Bad Request"


class NotFoundError(EntitlementEngineError):
    """Requested subscription / record does not exist."""

    status_code = 404
    error_code = "NOT_FOUND"
    title = "Not Found"


class ProviderStateMismatch(EntitlementEngineError):
    """Customer or subscription absent in the current provider environment.

    Raised by the card provider client and handled by the checkout initiator,
    which recreates the customer and remaps it.
    """

    status_code = 500
    error_code = "PROVIDER_STATE_MISMATCH"
    title = "Provider State Mismatch"

    def __init__(self, detail: str, *, customer_id: Optional[str] = None):
        super().__init__(detail)
        self.customer_id = customer_id


class ProviderError(EntitlementEngineError):
    """Payment provider call failed after the single retry."""

    status_code = 500
    error_code = "PROVIDER_ERROR"
    title = "Internal Server Error"


class DataIntegrityError(EntitlementEngineError):
    """Entitlement record violates an invariant; dependent action is blocked."""

    status_code = 409
    error_code = "DATA_INTEGRITY_ERROR"
    title = "Conflict"


class PaymentRailConflict(DataIntegrityError):
    """A different payment rail is still active for this user."""

    error_code = "PAYMENT_RAIL_CONFLICT"


class AccountDeletionError(EntitlementEngineError):
    """Account deletion aborted at an abort point.

    failed_step identifies where an operator should resume.
    """

    status_code = 500
    error_code = "ACCOUNT_DELETION_FAILED"
    title = "Account Deletion Failed"

    def __init__(self, failed_step: str, detail: str, *, log_detail: Optional[str] = None):
        super().__init__(detail, log_detail=log_detail)
        self.failed_step = failed_step


SUPPORT_CONTACT_MESSAGE = (
    "Your subscription record needs attention. Please contact support so we can fix it."
)
GENERIC_RETRY_MESSAGE = "Something went wrong. Please try again."
