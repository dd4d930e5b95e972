"""Subscription cancel / manage endpoints."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from hfe_api.auth.session_auth import AuthenticatedUser, get_current_user
from hfe_api.billing.cancellation import CancellationCoordinator
from hfe_api.billing.stripe_client import get_stripe_client
from hfe_api.db.session import get_db
from hfe_api.entitlements.store import EntitlementStore, query_view
from hfe_api.errors import EntitlementEngineError
from hfe_api.schemas import CancelRequest, CancelResponse, ManagementOptionsResponse
from hfe_api.sdk.manage import management_options

router = APIRouter(prefix="/v1/subscription", tags=["subscription"])
logger = logging.getLogger(__name__)


@router.post("/cancel", response_model=CancelResponse, response_model_exclude_none=True)
def cancel_subscription(
    body: CancelRequest | None = None,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Cancel on the user's rail.

    Errors keep the {success, error} body the client expects, with the
    matching HTTP status (404 nothing to cancel, 409 data integrity, 500 provider).
    """
    immediate = body.immediate if body else False
    coordinator = CancellationCoordinator(db, stripe_client_getter=get_stripe_client)
    try:
        result = coordinator.cancel(user.user_id, immediate=immediate)
    except EntitlementEngineError as exc:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "SUBSCRIPTION_CANCEL_FAILED",
            extra={
                "user_id": user.user_id,
                "error_code": exc.error_code,
                "error_msg": exc.log_detail,
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
        )
    return result.to_response()


@router.get("/manage", response_model=ManagementOptionsResponse)
def get_management_options(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ManagementOptionsResponse:
    """What the manage-subscription screen may offer for the caller."""
    view = query_view(EntitlementStore(db).get_or_default(user.user_id))
    return ManagementOptionsResponse.model_validate(management_options(view))
