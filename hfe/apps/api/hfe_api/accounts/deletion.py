"""Account Deletion Orchestrator: cross-provider teardown on account removal.

Ordered, best-effort procedure; ABORT steps stop it and raise:

    read_entitlement            abort (nothing done yet)
    record_deletion_tombstone   abort (nothing deleted yet)
    cancel_card_subscriptions   log and continue, per subscription
    delete_card_customer        log and continue
    delete_card_records         log and continue
    delete_child_rows:<table>   log and continue, per table
    delete_entitlement          ABORT (AccountDeletionError)
    delete_auth_identity        ABORT (AccountDeletionError)

The entitlement row goes before the auth identity, so a crash in between leaves
an identity with nothing attached and a retry of the whole procedure is safe:
every earlier step is a no-op on missing data.

The tombstone goes first so provider events arriving during or after the
teardown (platform renewals, echoes of our own Stripe cancels) cannot recreate
any of the rows removed below.

Platform IAP needs no remote action; Apple's billing relationship does not
depend on this account existing.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hfe_api.accounts.tombstones import record_account_deleted
from hfe_api.billing.stripe_client import StripeBillingClient, get_stripe_client
from hfe_api.db.models import (
    USER_CHILD_TABLES,
    CardCustomerMapping,
    CardOrder,
    CardSubscriptionRecord,
    UserEntitlement,
)
from hfe_api.entitlements.rails import CardRail, PlatformRail, method_of
from hfe_api.entitlements.store import EntitlementStore
from hfe_api.errors import (
    AccountDeletionError,
    ConfigurationError,
    GENERIC_RETRY_MESSAGE,
    ProviderError,
    ProviderStateMismatch,
)
from hfe_api.supabase_client import get_supabase_admin_client
from hfe_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

STEP_READ_ENTITLEMENT = "read_entitlement"
STEP_RECORD_TOMBSTONE = "record_deletion_tombstone"
STEP_CANCEL_CARD_SUBSCRIPTIONS = "cancel_card_subscriptions"
STEP_DELETE_CARD_CUSTOMER = "delete_card_customer"
STEP_DELETE_CARD_RECORDS = "delete_card_records"
STEP_DELETE_CHILD_ROWS = "delete_child_rows"
STEP_DELETE_ENTITLEMENT = "delete_entitlement"
STEP_DELETE_AUTH_IDENTITY = "delete_auth_identity"

_PROVIDER_FAILURES = (ProviderError, ProviderStateMismatch, ConfigurationError)


@dataclass
class StepResult:
    step: str
    ok: bool
    detail: Optional[str] = None


@dataclass
class DeletionReport:
    user_id: str
    steps: list[StepResult] = field(default_factory=list)

    @property
    def partial_failures(self) -> list[str]:
        return [s.step for s in self.steps if not s.ok]


def delete_supabase_identity(user_id: str) -> None:
    """Delete the Supabase auth user; an already-missing user counts as deleted."""
    try:
        get_supabase_admin_client().auth.admin.delete_user(user_id)
    except Exception as exc:
        # supabase-py raises AuthApiError with the HTTP status attached
        if getattr(exc, "status", None) == 404:
            logger.info("AUTH_IDENTITY_ALREADY_GONE", extra={"user_id": user_id})
            return
        raise


class AccountDeletionOrchestrator:
    def __init__(
        self,
        db: Session,
        stripe_client_getter: Callable[[], StripeBillingClient] = get_stripe_client,
        identity_deleter: Callable[[str], None] = delete_supabase_identity,
    ):
        self.db = db
        self._get_stripe = stripe_client_getter
        self._delete_identity = identity_deleter

    def delete_account(self, user_id: str) -> DeletionReport:
        """Run the full teardown for user_id.

        Raises:
            AccountDeletionError: At read_entitlement, record_deletion_tombstone,
                delete_entitlement or delete_auth_identity; failed_step names
                where to resume
        """
        report = DeletionReport(user_id=user_id)
        logger.info("ACCOUNT_DELETION_STARTED", extra={"user_id": user_id})

        try:
            snapshot = EntitlementStore(self.db).get_or_default(user_id)
            customer_ids = self._card_customer_ids(user_id, snapshot.rail)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise self._abort(STEP_READ_ENTITLEMENT, user_id, exc) from exc
        self._record(report, StepResult(STEP_READ_ENTITLEMENT, True, method_of(snapshot.rail)))

        try:
            record_account_deleted(self.db, user_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise self._abort(STEP_RECORD_TOMBSTONE, user_id, exc) from exc
        self._record(report, StepResult(STEP_RECORD_TOMBSTONE, True))

        if isinstance(snapshot.rail, PlatformRail):
            logger.info("ACCOUNT_DELETION_PLATFORM_RAIL_NO_REMOTE_ACTION", extra={"user_id": user_id})

        if customer_ids:
            self._teardown_card_provider(report, user_id, customer_ids)

        for model in USER_CHILD_TABLES:
            step = f"{STEP_DELETE_CHILD_ROWS}:{model.__tablename__}"
            try:
                self.db.execute(delete(model).where(model.user_id == user_id))
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                self._record(report, StepResult(step, False, sanitize_str(str(exc))))
                continue
            self._record(report, StepResult(step, True))

        try:
            self.db.execute(delete(UserEntitlement).where(UserEntitlement.user_id == user_id))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise self._abort(STEP_DELETE_ENTITLEMENT, user_id, exc) from exc
        self._record(report, StepResult(STEP_DELETE_ENTITLEMENT, True))

        try:
            self._delete_identity(user_id)
        except Exception as exc:
            raise self._abort(STEP_DELETE_AUTH_IDENTITY, user_id, exc) from exc
        self._record(report, StepResult(STEP_DELETE_AUTH_IDENTITY, True))

        logger.info(
            "ACCOUNT_DELETION_COMPLETED",
            extra={"user_id": user_id, "partial_failures": report.partial_failures},
        )
        return report

    # ------------------------------------------------------------------

    def _card_customer_ids(self, user_id: str, rail) -> list[str]:
        """Every customer ever mapped to the user, including remapped ones."""
        mapped = self.db.execute(
            select(CardCustomerMapping.customer_id)
            .where(CardCustomerMapping.user_id == user_id)
            .order_by(CardCustomerMapping.id)
        ).scalars().all()
        customer_ids = list(dict.fromkeys(mapped))
        if isinstance(rail, CardRail) and rail.customer_id and rail.customer_id not in customer_ids:
            customer_ids.append(rail.customer_id)
        return customer_ids

    def _teardown_card_provider(
        self, report: DeletionReport, user_id: str, customer_ids: list[str]
    ) -> None:
        try:
            stripe_client = self._get_stripe()
        except ConfigurationError as exc:
            self._record(report, StepResult(STEP_CANCEL_CARD_SUBSCRIPTIONS, False, exc.log_detail))
            stripe_client = None

        if stripe_client is not None:
            for customer_id in customer_ids:
                self._cancel_subscriptions(report, stripe_client, customer_id)
                try:
                    stripe_client.delete_customer(customer_id)
                except _PROVIDER_FAILURES as exc:
                    self._record(
                        report, StepResult(STEP_DELETE_CARD_CUSTOMER, False, exc.log_detail)
                    )
                else:
                    self._record(report, StepResult(STEP_DELETE_CARD_CUSTOMER, True, customer_id))

        try:
            for model in (CardSubscriptionRecord, CardOrder):
                self.db.execute(
                    delete(model).where(
                        (model.user_id == user_id) | model.customer_id.in_(customer_ids)
                    )
                )
            self.db.execute(delete(CardCustomerMapping).where(CardCustomerMapping.user_id == user_id))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._record(report, StepResult(STEP_DELETE_CARD_RECORDS, False, sanitize_str(str(exc))))
        else:
            self._record(report, StepResult(STEP_DELETE_CARD_RECORDS, True))

    def _cancel_subscriptions(
        self, report: DeletionReport, stripe_client: StripeBillingClient, customer_id: str
    ) -> None:
        try:
            subscriptions = stripe_client.list_open_subscriptions(customer_id)
        except _PROVIDER_FAILURES as exc:
            self._record(report, StepResult(STEP_CANCEL_CARD_SUBSCRIPTIONS, False, exc.log_detail))
            return

        for subscription in subscriptions:
            try:
                stripe_client.cancel_subscription_now(subscription["id"])
            except _PROVIDER_FAILURES as exc:
                self._record(
                    report, StepResult(STEP_CANCEL_CARD_SUBSCRIPTIONS, False, exc.log_detail)
                )
            else:
                self._record(
                    report, StepResult(STEP_CANCEL_CARD_SUBSCRIPTIONS, True, subscription["id"])
                )

    def _record(self, report: DeletionReport, result: StepResult) -> None:
        report.steps.append(result)
        log = logger.info if result.ok else logger.error
        log(
            "ACCOUNT_DELETION_STEP",
            extra={
                "user_id": report.user_id,
                "step": result.step,
                "ok": result.ok,
                "detail": result.detail,
            },
        )

    def _abort(self, step: str, user_id: str, exc: Exception) -> AccountDeletionError:
        detail = sanitize_str(str(exc))
        logger.error(
            "ACCOUNT_DELETION_ABORTED",
            extra={
                "user_id": user_id,
                "failed_step": step,
                "error_type": type(exc).__name__,
                "error_msg": detail,
            },
        )
        return AccountDeletionError(
            step,
            GENERIC_RETRY_MESSAGE,
            log_detail=f"{step} failed for user {user_id}: {detail}",
        )
