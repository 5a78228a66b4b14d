"""Webhook endpoints for telephony call events and billing-provider events."""

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog
from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.config import settings
from ringledger.database.models import BillingEvent
from ringledger.exceptions import (
    AuthenticationError,
    BusinessNotFoundError,
    CallEventValidationError,
    DuplicateEventError,
)
from ringledger.routes.dependencies import CallRecorderDep, DbSession, SubscriptionSyncDep
from ringledger.services.call_events import CALL_COMPLETION_EVENTS, normalize_call_event
from ringledger.services.subscription_sync import SubscriptionSync
from ringledger.services.webhook_signing import SIGNATURE_HEADER, verify_signature

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# =============================================================================
# TELEPHONY
# =============================================================================


def _verify_retell_request(body: bytes, signature: str | None) -> None:
    secret = settings.RETELL_WEBHOOK_SECRET
    if secret:
        try:
            verify_signature(secret, body, signature)
        except AuthenticationError as e:
            logger.warning("Rejected telephony webhook", reason=str(e))
            raise HTTPException(status_code=401, detail=str(e)) from e
        return

    if settings.RETELL_ALLOW_UNSIGNED_WEBHOOKS:
        logger.warning(
            "Accepting unsigned telephony webhook, RETELL_WEBHOOK_SECRET is not set",
            environment=settings.ENVIRONMENT,
        )
        return

    logger.error("RETELL_WEBHOOK_SECRET not configured - telephony webhooks are rejected")
    raise HTTPException(status_code=503, detail="Webhook verification not configured")


@router.post("/retell")
async def handle_retell_webhook(
    request: Request,
    db: DbSession,
    recorder: CallRecorderDep,
) -> dict[str, Any]:
    """Record completed calls from the voice provider.

    The response only says whether the call was new; overage reporting
    happens afterwards and never changes it.
    """
    body = await request.body()
    _verify_retell_request(body, request.headers.get(SIGNATURE_HEADER))

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    event_type = payload.get("event") if isinstance(payload, dict) else None
    if event_type not in CALL_COMPLETION_EVENTS:
        logger.debug("Ignoring telephony event", event_type=event_type)
        return {"received": True, "status": "ignored"}

    try:
        event = normalize_call_event(payload)
    except CallEventValidationError as e:
        logger.warning("Invalid call event", event_type=event_type, error=str(e))
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        result = await recorder.record(db, event)
    except BusinessNotFoundError as e:
        # Acknowledge so the provider stops retrying an unroutable call
        logger.warning("Call for unknown business", call_id=event.external_call_id, error=str(e))
        return {"received": True, "status": "ignored"}

    return {"received": True, "status": result.outcome.value}


# =============================================================================
# BILLING PROVIDER
# =============================================================================


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _metadata_value(obj: Any, *keys: str) -> str | None:
    metadata = obj.get("metadata") or {}
    for key in keys:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def _customer_id(obj: Any) -> str | None:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return customer or None


def _period_bounds(subscription: Any) -> tuple[datetime | None, datetime | None]:
    """Billing period of a subscription object.

    Newer API versions moved the period onto the subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return _timestamp(start), _timestamp(end)


def _invoice_subscription_id(invoice: Any) -> str | None:
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        subscription_id = details.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    return subscription_id


async def _record_billing_event(
    db: AsyncSession,
    event_id: str,
    event_type: str,
    business_id: str | None,
    event_data: dict[str, Any],
) -> None:
    """Store the dedup row for a processed billing event.

    Raises:
        DuplicateEventError: A concurrent delivery already stored it.
    """
    db.add(
        BillingEvent(
            external_event_id=event_id,
            event_type=event_type,
            business_id=business_id,
            event_data=event_data,
        )
    )
    try:
        await db.flush()
    except IntegrityError as e:
        raise DuplicateEventError(event_id) from e


async def handle_checkout_session_completed(
    db: AsyncSession,
    obj: Any,
    sync: SubscriptionSync,
) -> str | None:
    business_id = _metadata_value(obj, "business_id", "businessId")
    subscription_id = obj.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    if not business_id or not subscription_id:
        logger.warning(
            "Checkout session missing business or subscription",
            session_id=obj.get("id"),
        )
        return None

    subscription = await sync.checkout_completed(
        db,
        business_id=business_id,
        plan_type=_metadata_value(obj, "plan_type", "planType"),
        external_subscription_id=subscription_id,
        customer_id=_customer_id(obj),
    )
    return subscription.business_id if subscription else None


async def handle_customer_subscription_updated(
    db: AsyncSession,
    obj: Any,
    sync: SubscriptionSync,
) -> str | None:
    period_start, period_end = _period_bounds(obj)
    subscription = await sync.subscription_updated(
        db,
        external_subscription_id=obj["id"],
        provider_status=obj.get("status"),
        period_start=period_start,
        period_end=period_end,
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        plan_type=_metadata_value(obj, "plan_type", "planType"),
        business_id=_metadata_value(obj, "business_id", "businessId"),
        customer_id=_customer_id(obj),
    )
    return subscription.business_id if subscription else None


async def handle_customer_subscription_deleted(
    db: AsyncSession,
    obj: Any,
    sync: SubscriptionSync,
) -> str | None:
    subscription = await sync.subscription_deleted(
        db,
        external_subscription_id=obj["id"],
        business_id=_metadata_value(obj, "business_id", "businessId"),
        customer_id=_customer_id(obj),
    )
    return subscription.business_id if subscription else None


async def handle_invoice_payment_failed(
    db: AsyncSession,
    obj: Any,
    sync: SubscriptionSync,
) -> str | None:
    subscription_id = _invoice_subscription_id(obj)
    if not subscription_id:
        logger.info("Ignoring failed invoice without subscription", invoice_id=obj.get("id"))
        return None
    subscription = await sync.invoice_payment_failed(db, external_subscription_id=subscription_id)
    return subscription.business_id if subscription else None


WebhookHandler = Callable[[AsyncSession, Any, SubscriptionSync], Awaitable[str | None]]

WEBHOOK_HANDLERS: dict[str, WebhookHandler] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.updated": handle_customer_subscription_updated,
    "customer.subscription.deleted": handle_customer_subscription_deleted,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: DbSession,
    sync: SubscriptionSyncDep,
) -> dict[str, str]:
    """Apply subscription lifecycle events from Stripe.

    Each event id is processed at most once; redeliveries are acknowledged.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error(
            "STRIPE_WEBHOOK_SECRET not configured - webhook signature verification is required"
        )
        raise HTTPException(status_code=503, detail="Webhook verification not configured")

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.warning("Invalid webhook payload", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid payload") from e
    except stripe.error.SignatureVerificationError as e:
        logger.warning("Invalid webhook signature", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid signature") from e

    event_id = event["id"]
    event_type = event["type"]
    logger.info("Received Stripe webhook", event_type=event_type, event_id=event_id)

    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Unhandled webhook event", event_type=event_type)
        return {"status": "ok"}

    existing = await db.execute(
        select(BillingEvent.id).where(BillingEvent.external_event_id == event_id)
    )
    if existing.scalar_one_or_none():
        logger.info("Skipping duplicate webhook event", event_type=event_type, event_id=event_id)
        return {"status": "ok", "message": "Event already processed"}

    obj = event["data"]["object"]
    try:
        business_id = await handler(db, obj, sync)
        if business_id is None:
            # Nothing applied; leave the event unrecorded so a resend can still apply it
            await db.rollback()
            logger.info("Webhook event not applied", event_type=event_type, event_id=event_id)
            return {"status": "ok", "message": "Event ignored"}
        await _record_billing_event(
            db,
            event_id=event_id,
            event_type=event_type,
            business_id=business_id,
            event_data={"object_id": obj.get("id"), "status": obj.get("status")},
        )
        await db.commit()
    except DuplicateEventError:
        await db.rollback()
        logger.info("Concurrent duplicate webhook event", event_type=event_type, event_id=event_id)
        return {"status": "ok", "message": "Event already processed"}
    except Exception as e:
        logger.exception("Webhook handler failed", event_type=event_type, event_id=event_id)
        await db.rollback()
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e

    return {"status": "ok"}
