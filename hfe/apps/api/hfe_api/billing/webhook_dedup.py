"""Webhook dedup gate: atomic INSERT ON CONFLICT for concurrent idempotency.

Guarantees at most one successful processing per (provider, dedup_key), even when
the same provider event is delivered twice or the queue redelivers a message.

  1. INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
       → row returned  : this worker is the FIRST processor → continue
       → no row        : conflict exists → check if it's a re-processable failure
  2. If no row (conflict): UPDATE ... WHERE status='failed' or the
     'processing' lease expired RETURNING id
       → row returned  : previous attempt failed or died; re-claim it
       → no row        : 'done' (true duplicate, ack) or a live 'processing'
                         claim (in progress, retry later)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import TIMESTAMP, bindparam, text
from sqlalchemy.orm import Session

from hfe_api.config.env import get_dedup_lease_seconds

logger = logging.getLogger(__name__)

_NOW = bindparam("now", type_=TIMESTAMP(timezone=True))
_STALE_BEFORE = bindparam("stale_before", type_=TIMESTAMP(timezone=True))


# ---------------------------------------------------------------------------
# Dedup key extraction (deterministic per provider)
# ---------------------------------------------------------------------------


def get_revenuecat_dedup_key(payload: dict) -> str:
    """Extract deterministic dedup key for a RevenueCat webhook event.

    Primary  : event.id (unique per event)
    Fallback : event type + transaction_id (a renewal has its own transaction)
    Last     : event type + app_user_id + event timestamp

    Raises ValueError if none of these fields are present.
    """
    event = payload.get("event") or {}
    event_id = event.get("id")
    if event_id:
        return f"ev_{event_id}"

    event_type = event.get("type")
    transaction_id = event.get("transaction_id")
    if event_type and transaction_id:
        return f"tx_{event_type}_{transaction_id}"

    app_user_id = event.get("app_user_id")
    timestamp = event.get("event_timestamp_ms") or event.get("purchased_at_ms")
    if event_type and app_user_id and timestamp:
        return f"ts_{event_type}_{app_user_id}_{timestamp}"

    raise ValueError("Cannot derive RevenueCat dedup_key: no event id, transaction_id or timestamp")


def get_stripe_dedup_key(payload: dict) -> str:
    """Extract deterministic dedup key for a Stripe event (evt_* id).

    Raises ValueError if the event id is missing.
    """
    event_id = payload.get("id")
    if event_id:
        return f"ev_{event_id}"
    raise ValueError("Cannot derive Stripe dedup_key: 'id' missing")


# ---------------------------------------------------------------------------
# Atomic dedup gate
# ---------------------------------------------------------------------------


class DedupClaim(str, Enum):
    ACQUIRED = "acquired"
    DUPLICATE = "duplicate"        # already done
    IN_PROGRESS = "in_progress"    # another attempt holds a live lease


class WebhookInProgress(Exception):
    """Another attempt holds the claim; the message must be retried later."""

    def __init__(self, provider: str, dedup_key: str):
        super().__init__(f"{provider} event {dedup_key[:16]} is being processed elsewhere")
        self.provider = provider
        self.dedup_key = dedup_key


def try_acquire_dedup(
    db: Session,
    provider: str,
    dedup_key: str,
    request_hash: Optional[str] = None,
    lease_seconds: Optional[int] = None,
) -> DedupClaim:
    """Attempt to atomically claim processing rights for (provider, dedup_key).

    A claim is a lease: a "processing" row untouched for lease_seconds belongs
    to an attempt that died (worker crash, or the failure mark itself failed)
    and is reclaimed like a "failed" one.

    Returns:
        ACQUIRED: INSERT succeeded, or a failed/expired record was reclaimed.
        DUPLICATE: the event was already processed.
        IN_PROGRESS: a live "processing" claim exists.
    """
    now = datetime.now(timezone.utc)
    if lease_seconds is None:
        lease_seconds = get_dedup_lease_seconds()

    insert_sql = text("""
        INSERT INTO webhook_dedup_events
            (provider, dedup_key, first_seen_at, last_seen_at, status, request_hash)
        VALUES
            (:provider, :dedup_key, :now, :now, 'processing', :request_hash)
        ON CONFLICT (provider, dedup_key) DO NOTHING
        RETURNING id
    """).bindparams(_NOW)
    row = db.execute(insert_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
        "request_hash": request_hash,
    }).fetchone()

    if row is not None:
        db.commit()
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return DedupClaim.ACQUIRED

    retry_sql = text("""
        UPDATE webhook_dedup_events
        SET status = 'processing', last_seen_at = :now
        WHERE provider = :provider AND dedup_key = :dedup_key
          AND (
            status = 'failed'
            OR (status = 'processing'
                AND COALESCE(last_seen_at, first_seen_at) < :stale_before)
          )
        RETURNING id
    """).bindparams(_NOW, _STALE_BEFORE)
    retry_row = db.execute(retry_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
        "stale_before": now - timedelta(seconds=lease_seconds),
    }).fetchone()

    if retry_row is not None:
        db.commit()
        logger.info(
            "WEBHOOK_DEDUP_RETRY_RECLAIMED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return DedupClaim.ACQUIRED

    status = db.execute(
        text("""
            SELECT status FROM webhook_dedup_events
            WHERE provider = :provider AND dedup_key = :dedup_key
        """),
        {"provider": provider, "dedup_key": dedup_key},
    ).scalar_one_or_none()
    db.commit()

    if status == "processing":
        logger.info(
            "WEBHOOK_DEDUP_IN_PROGRESS",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return DedupClaim.IN_PROGRESS

    logger.info(
        "WEBHOOK_DEDUP_DUPLICATE",
        extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
    )
    return DedupClaim.DUPLICATE


def _set_status(db: Session, provider: str, dedup_key: str, status: str) -> None:
    sql = text("""
        UPDATE webhook_dedup_events
        SET status = :status, last_seen_at = :now
        WHERE provider = :provider AND dedup_key = :dedup_key
    """).bindparams(_NOW)
    db.execute(sql, {
        "status": status,
        "provider": provider,
        "dedup_key": dedup_key,
        "now": datetime.now(timezone.utc),
    })
    db.commit()


def mark_dedup_done(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'done' after successful processing."""
    _set_status(db, provider, dedup_key, "done")


def mark_dedup_failed(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'failed' so a queue redelivery can reclaim it."""
    _set_status(db, provider, dedup_key, "failed")
