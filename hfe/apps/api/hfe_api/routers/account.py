"""Account deletion endpoint."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from hfe_api.accounts.deletion import AccountDeletionOrchestrator
from hfe_api.auth.session_auth import AuthenticatedUser, get_current_user
from hfe_api.billing.stripe_client import get_stripe_client
from hfe_api.db.session import get_db
from hfe_api.errors import AccountDeletionError
from hfe_api.schemas import AccountDeletionResponse

router = APIRouter(prefix="/v1/account", tags=["account"])


@router.post("/delete", response_model=AccountDeletionResponse)
def delete_account(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete the caller's account across providers.

    An aborted deletion answers 500 with the failed step so it can be resumed.
    """
    orchestrator = AccountDeletionOrchestrator(db, stripe_client_getter=get_stripe_client)
    try:
        report = orchestrator.delete_account(user.user_id)
    except AccountDeletionError as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "failedStep": exc.failed_step, "error": exc.detail},
        )
    return AccountDeletionResponse(success=True, partial_failures=report.partial_failures)
