"""Entitlement query endpoint consumed by the client cache."""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from hfe_api.auth.session_auth import AuthenticatedUser, get_current_user
from hfe_api.db.session import get_db
from hfe_api.entitlements.store import EntitlementStore, query_view
from hfe_api.schemas import EntitlementResponse

router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


@router.get("/me", response_model=EntitlementResponse)
def get_my_entitlement(
    response: Response,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> EntitlementResponse:
    """Current entitlement; users with no record are free with no payment method."""
    snapshot = EntitlementStore(db).get_or_default(user.user_id)
    # The client keeps its own TTL cache; intermediaries must not
    response.headers["Cache-Control"] = "no-store"
    return EntitlementResponse.model_validate(query_view(snapshot))
