"""Pydantic schemas for API requests/responses.

Wire names are camelCase (the mobile client's convention); Python attributes
stay snake_case through field aliases.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# POST /v1/checkout/sessions
# ============================================================================


class CheckoutRequest(_CamelModel):
    """Request body for POST /v1/checkout/sessions."""

    price_id: str = Field(..., alias="priceId", min_length=1, description="Allow-listed price id")
    mode: Literal["subscription", "payment"]
    success_url: str = Field(..., alias="successUrl", min_length=1)
    cancel_url: str = Field(..., alias="cancelUrl", min_length=1)


class CheckoutResponse(_CamelModel):
    """Response for POST /v1/checkout/sessions."""

    session_id: str = Field(..., alias="sessionId")
    url: str


# ============================================================================
# GET /v1/entitlements/me
# ============================================================================


class EntitlementResponse(_CamelModel):
    """Entitlement query result."""

    status: Literal["free", "premium"]
    payment_method: Literal["none", "cardProvider", "platformIAP"] = Field(..., alias="paymentMethod")
    renewal_date: Optional[str] = Field(None, alias="renewalDate", description="ISO-8601 UTC")
    cancels_at_period_end: bool = Field(False, alias="cancelsAtPeriodEnd")
    total_usage_count: int = Field(0, alias="totalUsageCount")
    can_analyze: bool = Field(True, alias="canAnalyze")


# ============================================================================
# Subscription cancel / manage
# ============================================================================


class CancelRequest(BaseModel):
    """Request body for POST /v1/subscription/cancel.

    immediate is honored only outside production.
    """

    immediate: bool = False


class CancelResponse(_CamelModel):
    success: bool
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    cancel_at_period_end: Optional[bool] = Field(None, alias="cancelAtPeriodEnd")
    current_period_end: Optional[int] = Field(None, alias="currentPeriodEnd")
    manage_url: Optional[str] = Field(None, alias="manageUrl")
    instructions: Optional[str] = None
    error: Optional[str] = None


class ManagementOptionsResponse(_CamelModel):
    payment_method: str = Field(..., alias="paymentMethod")
    show_cancel_button: bool = Field(..., alias="showCancelButton")
    show_cancellation_warning: bool = Field(..., alias="showCancellationWarning")
    show_settings_link: bool = Field(..., alias="showSettingsLink")
    expires_on: Optional[str] = Field(None, alias="expiresOn")
    renews_on: Optional[str] = Field(None, alias="renewsOn")
    note: Optional[str] = None
    instructions: Optional[str] = None


# ============================================================================
# POST /v1/account/delete
# ============================================================================


class AccountDeletionResponse(_CamelModel):
    success: bool
    partial_failures: list[str] = Field(default_factory=list, alias="partialFailures")
