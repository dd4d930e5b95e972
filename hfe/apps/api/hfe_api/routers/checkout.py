"""Checkout session endpoint (card payment rail)."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from hfe_api.auth.session_auth import AuthenticatedUser, get_current_user
from hfe_api.billing.checkout import CheckoutInitiator
from hfe_api.billing.stripe_client import get_stripe_client
from hfe_api.db.session import get_db
from hfe_api.schemas import CheckoutRequest, CheckoutResponse

router = APIRouter(prefix="/v1/checkout", tags=["checkout"])
logger = logging.getLogger(__name__)


@router.post("/sessions", response_model=CheckoutResponse)
def create_checkout_session(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CheckoutResponse:
    """Create a hosted checkout session for an allow-listed price.

    400 disallowed price / bad body, 401 no session, 409 another rail active,
    500 provider or store failure (generic message; details in the log).
    """
    initiator = CheckoutInitiator(db, stripe_client_getter=get_stripe_client)
    session = initiator.create_session(
        user_id=user.user_id,
        email=user.email,
        price_id=body.price_id,
        mode=body.mode,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse(session_id=session.session_id, url=session.url)
