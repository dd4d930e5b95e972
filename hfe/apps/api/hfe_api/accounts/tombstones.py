"""Deleted-account tombstones.

A deleted user can still produce provider events: App Store renewals keep
billing after the account is gone, and the orchestrator's own Stripe cancels
come back as webhooks. Both writers (the entitlement store and the Stripe
mirror) check the tombstone before touching any row.
"""

import hashlib

from sqlalchemy.orm import Session

from hfe_api.db.models import DeletedAccount
from hfe_api.db.upsert import insert_or_ignore


def account_deletion_key(user_id: str) -> str:
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


def is_account_deleted(db: Session, user_id: str) -> bool:
    return db.get(DeletedAccount, account_deletion_key(user_id)) is not None


def record_account_deleted(db: Session, user_id: str) -> bool:
    """Write the tombstone. Does not commit; True if this call created it."""
    return insert_or_ignore(
        db,
        DeletedAccount,
        {"user_id_hash": account_deletion_key(user_id)},
        index_elements=["user_id_hash"],
    )
