"""Webhook ingestors (RevenueCat platform IAP + Stripe card provider).

Each ingestor authenticates the delivery, validates just enough of the payload
to route it, logs event type / subject user / product, enqueues the event to SQS
and acknowledges. Side effects run in the worker (hfe_api.billing.processor),
so slow downstream work never triggers provider retries, and a failed side
effect is redelivered from the queue instead of being lost.

Webhook error taxonomy (retry storm prevention)
  (A) Invalid JSON / malformed payload → 400
  (B) Token or signature invalid → 401
  (C) Required header missing → 400 (Stripe-Signature) / 401 (Authorization)
  (D) Our misconfig (missing secret / queue) → 500 WEBHOOK_PROVIDER_MISCONFIG
  (E) Enqueue failure → 500 WEBHOOK_ENQUEUE_FAILED
  500 is ONLY for (D)(E). Signature mismatch is NEVER 500.
"""

import hmac
import json as _json
import logging
from typing import Optional

import stripe
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from hfe_api.billing.events import (
    PROVIDER_REVENUECAT,
    PROVIDER_STRIPE,
    parse_revenuecat_event,
    stripe_event_object,
    stripe_metadata_user_id,
)
from hfe_api.billing.stripe_client import get_stripe_client
from hfe_api.billing.webhook_dedup import get_revenuecat_dedup_key, get_stripe_dedup_key
from hfe_api.config.env import get_revenuecat_webhook_token
from hfe_api.context import provider_var, request_id_var, user_id_var
from hfe_api.errors import ConfigurationError, ValidationError
from hfe_api.queue.sqs_client import get_sqs_client
from hfe_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    provider: str,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get(None)

    log_extra: dict = {
        "provider": provider,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:hfe:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": provider,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    content["instance"] = f"urn:hfe:trace:{request_id}" if request_id else str(request.url.path)

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(status_code=status, content=content, headers=response_headers)


def _enqueue(
    request: Request, provider: str, payload: dict, payload_hash: str
) -> Optional[JSONResponse]:
    """Publish to the webhook queue; returns a 500 problem on failure, else None."""
    try:
        message_id = get_sqs_client().enqueue_webhook_event(
            provider=provider,
            payload=payload,
            payload_hash=payload_hash,
            request_id=request_id_var.get(None),
        )
    except ConfigurationError as exc:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook queue is not properly configured",
            provider=provider,
            payload_hash=payload_hash,
            extra={"error_msg": exc.log_detail},
        )
    except (BotoCoreError, ClientError) as exc:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_ENQUEUE_FAILED",
            title="Webhook could not be queued",
            detail="The event could not be accepted; please retry",
            provider=provider,
            payload_hash=payload_hash,
            extra={"error_type": type(exc).__name__, "error_msg": sanitize_str(str(exc))},
        )

    logger.info(
        "WEBHOOK_ENQUEUED",
        extra={"provider": provider, "payload_hash": payload_hash, "message_id": message_id},
    )
    return None


# ============================================================================
# RevenueCat Webhook Handler
# ============================================================================


@router.post("/revenuecat")
async def revenuecat_webhook(
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """RevenueCat webhook (Authorization: Bearer <shared secret>)."""
    provider_var.set(PROVIDER_REVENUECAT)
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    # ── Step 1: Authorization (B → 401, D → 500) ────────────────────────────
    if not authorization:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_AUTH_MISSING",
            title="Unauthorized",
            detail="No authorization header",
            provider=PROVIDER_REVENUECAT,
            payload_hash=payload_hash,
        )

    try:
        expected = get_revenuecat_webhook_token()
    except ConfigurationError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook not configured",
            provider=PROVIDER_REVENUECAT,
            payload_hash=payload_hash,
        )

    token = authorization[7:] if authorization.startswith("Bearer ") else authorization
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_TOKEN_INVALID",
            title="Unauthorized",
            detail="Invalid token",
            provider=PROVIDER_REVENUECAT,
            payload_hash=payload_hash,
        )

    # ── Step 2: JSON + payload validation (A → 400) ─────────────────────────
    try:
        webhook_body = _json.loads(raw_body)
    except _json.JSONDecodeError:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_JSON",
            title="Invalid JSON payload",
            detail="Request body is not valid JSON",
            provider=PROVIDER_REVENUECAT,
            payload_hash=payload_hash,
        )

    try:
        parse_revenuecat_event(webhook_body)
        get_revenuecat_dedup_key(webhook_body)
    except (ValidationError, ValueError) as exc:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail=sanitize_str(str(exc)),
            provider=PROVIDER_REVENUECAT,
            payload_hash=payload_hash,
        )

    event = webhook_body["event"]
    user_id_var.set(event["app_user_id"])
    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": PROVIDER_REVENUECAT,
            "event_type": event["type"],
            "user_id": event["app_user_id"],
            "product_id": event.get("product_id"),
            "environment": event.get("environment"),
            "payload_hash": payload_hash,
        },
    )

    # ── Step 3: Defer processing (E → 500) ──────────────────────────────────
    problem = _enqueue(request, PROVIDER_REVENUECAT, webhook_body, payload_hash)
    if problem is not None:
        return problem

    return {"received": True}


# ============================================================================
# Stripe Webhook Handler
# ============================================================================


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Stripe webhook (Stripe-Signature verified with STRIPE_WEBHOOK_SECRET)."""
    provider_var.set(PROVIDER_STRIPE)
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    if not stripe_signature:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_HEADERS",
            title="Missing required webhook headers",
            detail="Stripe-Signature header is absent",
            provider=PROVIDER_STRIPE,
            payload_hash=payload_hash,
        )

    # ── Step 1: Signature verification (D → 500, B → 401, A → 400) ──────────
    try:
        webhook_body = get_stripe_client().construct_event(raw_body, stripe_signature)
    except ConfigurationError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Stripe webhook verification is not properly configured",
            provider=PROVIDER_STRIPE,
            payload_hash=payload_hash,
        )
    except stripe.SignatureVerificationError:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail="Stripe-Signature does not match the payload",
            provider=PROVIDER_STRIPE,
            payload_hash=payload_hash,
        )
    except ValueError:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_JSON",
            title="Invalid JSON payload",
            detail="Request body is not valid JSON",
            provider=PROVIDER_STRIPE,
            payload_hash=payload_hash,
        )

    try:
        obj = stripe_event_object(webhook_body)
        get_stripe_dedup_key(webhook_body)
    except (ValidationError, ValueError) as exc:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail=sanitize_str(str(exc)),
            provider=PROVIDER_STRIPE,
            payload_hash=payload_hash,
        )

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": PROVIDER_STRIPE,
            "event_type": webhook_body["type"],
            "user_id": stripe_metadata_user_id(obj),
            "customer_id": obj.get("customer"),
            "livemode": webhook_body.get("livemode"),
            "payload_hash": payload_hash,
        },
    )

    # ── Step 2: Defer processing (E → 500) ──────────────────────────────────
    problem = _enqueue(request, PROVIDER_STRIPE, webhook_body, payload_hash)
    if problem is not None:
        return problem

    return {"received": True}
