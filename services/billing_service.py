"""
Stripe billing: checkout/portal sessions and the webhook reconciler.

Stripe is the source of truth for subscriptions. Each verified webhook event
maps to exactly one local transition; writes overwrite current state keyed by
Stripe ids, so re-delivery of the same event converges instead of stacking.
"""
import os
import logging
import uuid
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from db.database import ts_param
from models.billing_events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    Unhandled,
    from_unix,
    parse_billing_event,
)
from services.forms_service import AsyncFormsService, iso, utcnow
from utils.errors import InternalFailure, NotFound, SignatureInvalid, ValidationFailed
from utils.plans import FREE, PRO, features_for, normalize_plan

logger = logging.getLogger("backend.billing")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_PRO_PRICE_ID = os.getenv("STRIPE_PRO_PRICE_ID", "")
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY


def _as_dict(obj: Any) -> Dict[str, Any]:
    # StripeObject first: depending on SDK version it may also be a dict subclass
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj


def verify_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Check the Stripe-Signature header and return the verified event as a dict."""
    if not signature:
        raise SignatureInvalid("No signature")
    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise SignatureInvalid("Invalid signature")
    return _as_dict(event)


async def find_user_by_subscription_id(session: AsyncSession, subscription_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Local user whose stored Stripe subscription id matches, or None."""
    if not subscription_id:
        return None
    result = await session.execute(
        text("SELECT * FROM users WHERE stripe_subscription_id = :sid"), {"sid": subscription_id}
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def handle_checkout_completed(session: AsyncSession, event: CheckoutCompleted) -> None:
    if event.mode != "subscription":
        logger.info("Checkout session %s is not a subscription (mode=%s); ignoring", event.session_id, event.mode)
        return
    if not event.user_id:
        logger.error("No userId found in checkout session %s metadata", event.session_id)
        return

    subscription = _as_dict(await run_in_threadpool(stripe.Subscription.retrieve, event.subscription_id))
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price_id = (first_item.get("price") or {}).get("id") or ""
    period_start = from_unix(subscription.get("current_period_start") or first_item.get("current_period_start"))
    period_end = from_unix(subscription.get("current_period_end") or first_item.get("current_period_end"))
    now = utcnow()

    result = await session.execute(
        text(
            """
            UPDATE users
            SET plan = :plan,
                stripe_customer_id = :customer_id,
                stripe_subscription_id = :subscription_id,
                stripe_price_id = :price_id,
                stripe_current_period_end = :period_end,
                updated_at = :now
            WHERE uid = :uid
            """
        ).bindparams(ts_param("period_end"), ts_param("now")),
        {
            "plan": PRO,
            "customer_id": event.customer_id,
            "subscription_id": event.subscription_id,
            "price_id": price_id,
            "period_end": period_end,
            "now": now,
            "uid": event.user_id,
        },
    )
    if result.rowcount == 0:
        logger.error("Checkout completed for unknown user %s", event.user_id)
        return

    await session.execute(
        text(
            """
            INSERT INTO subscriptions (
                id, user_id, stripe_subscription_id, stripe_customer_id, stripe_price_id,
                stripe_current_period_start, stripe_current_period_end, status, plan,
                cancel_at_period_end, created_at, updated_at
            ) VALUES (
                :id, :user_id, :subscription_id, :customer_id, :price_id,
                :period_start, :period_end, :status, :plan,
                :cancel_at_period_end, :now, :now
            )
            """
        ).bindparams(ts_param("period_start"), ts_param("period_end"), ts_param("now")),
        {
            "id": str(uuid.uuid4()),
            "user_id": event.user_id,
            "subscription_id": event.subscription_id,
            "customer_id": event.customer_id,
            "price_id": price_id,
            "period_start": period_start,
            "period_end": period_end,
            "status": subscription.get("status") or "active",
            "plan": PRO,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "now": now,
        },
    )
    logger.info("User upgraded to PRO: %s", event.user_id)


async def handle_subscription_updated(session: AsyncSession, event: SubscriptionUpdated) -> None:
    user = await find_user_by_subscription_id(session, event.subscription_id)
    if not user:
        logger.error("User not found for subscription: %s", event.subscription_id)
        return
    now = utcnow()
    await session.execute(
        text(
            """
            UPDATE users
            SET plan = :plan,
                stripe_current_period_end = COALESCE(:period_end, stripe_current_period_end),
                updated_at = :now
            WHERE uid = :uid
            """
        ).bindparams(ts_param("period_end"), ts_param("now")),
        {
            "plan": PRO if event.status == "active" else FREE,
            "period_end": event.current_period_end,
            "now": now,
            "uid": user["uid"],
        },
    )
    await session.execute(
        text(
            """
            UPDATE subscriptions
            SET status = :status,
                stripe_current_period_start = COALESCE(:period_start, stripe_current_period_start),
                stripe_current_period_end = COALESCE(:period_end, stripe_current_period_end),
                cancel_at_period_end = :cancel_at_period_end,
                canceled_at = :canceled_at,
                updated_at = :now
            WHERE stripe_subscription_id = :sid
            """
        ).bindparams(ts_param("period_start"), ts_param("period_end"), ts_param("canceled_at"), ts_param("now")),
        {
            "status": event.status,
            "period_start": event.current_period_start,
            "period_end": event.current_period_end,
            "cancel_at_period_end": event.cancel_at_period_end,
            "canceled_at": event.canceled_at,
            "now": now,
            "sid": event.subscription_id,
        },
    )
    logger.info("Subscription %s updated for user %s status=%s", event.subscription_id, user["uid"], event.status)


async def handle_subscription_deleted(session: AsyncSession, event: SubscriptionDeleted) -> None:
    user = await find_user_by_subscription_id(session, event.subscription_id)
    if not user:
        logger.error("User not found for subscription: %s", event.subscription_id)
        return
    now = utcnow()
    await session.execute(
        text(
            "UPDATE users SET plan = :plan, stripe_current_period_end = NULL, updated_at = :now WHERE uid = :uid"
        ).bindparams(ts_param("now")),
        {"plan": FREE, "now": now, "uid": user["uid"]},
    )
    await session.execute(
        text(
            """
            UPDATE subscriptions
            SET status = 'canceled', canceled_at = :now, updated_at = :now
            WHERE stripe_subscription_id = :sid
            """
        ).bindparams(ts_param("now")),
        {"now": now, "sid": event.subscription_id},
    )
    logger.info("User downgraded to Free: %s", user["uid"])


async def _record_payment(
    session: AsyncSession,
    user_id: str,
    payment_intent_id: Optional[str],
    invoice_id: str,
    amount: int,
    currency: Optional[str],
    status: str,
    description: str,
) -> None:
    await session.execute(
        text(
            """
            INSERT INTO payment_history (
                id, user_id, stripe_payment_intent_id, stripe_invoice_id,
                amount, currency, status, description, created_at
            ) VALUES (
                :id, :user_id, :payment_intent_id, :invoice_id,
                :amount, :currency, :status, :description, :now
            )
            """
        ).bindparams(ts_param("now")),
        {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "payment_intent_id": payment_intent_id or "",
            "invoice_id": invoice_id,
            "amount": amount,
            "currency": currency,
            "status": status,
            "description": description,
            "now": utcnow(),
        },
    )


async def handle_invoice_succeeded(session: AsyncSession, event: InvoicePaymentSucceeded) -> None:
    if not event.subscription_id:
        return
    user = await find_user_by_subscription_id(session, event.subscription_id)
    if not user:
        logger.error("User not found for subscription: %s (invoice %s)", event.subscription_id, event.invoice_id)
        return
    await _record_payment(
        session, user["uid"], event.payment_intent_id, event.invoice_id,
        event.amount, event.currency, "succeeded", event.description or "Pro Subscription",
    )
    logger.info("Payment recorded for user: %s", user["uid"])


async def handle_invoice_failed(session: AsyncSession, event: InvoicePaymentFailed) -> None:
    if not event.subscription_id:
        return
    user = await find_user_by_subscription_id(session, event.subscription_id)
    if not user:
        logger.error("User not found for subscription: %s (invoice %s)", event.subscription_id, event.invoice_id)
        return
    await _record_payment(
        session, user["uid"], event.payment_intent_id, event.invoice_id,
        event.amount, event.currency, "failed", "Payment failed",
    )
    logger.warning("Failed payment recorded for user: %s", user["uid"])


async def apply_billing_event(session: AsyncSession, event: BillingEvent) -> None:
    """Apply exactly one transition for a recognized event, then commit."""
    if isinstance(event, CheckoutCompleted):
        await handle_checkout_completed(session, event)
    elif isinstance(event, SubscriptionUpdated):
        await handle_subscription_updated(session, event)
    elif isinstance(event, SubscriptionDeleted):
        await handle_subscription_deleted(session, event)
    elif isinstance(event, InvoicePaymentSucceeded):
        await handle_invoice_succeeded(session, event)
    elif isinstance(event, InvoicePaymentFailed):
        await handle_invoice_failed(session, event)
    elif isinstance(event, Unhandled):
        logger.info("Unhandled event type: %s", event.event_type)
        return
    await session.commit()


async def process_webhook(session: AsyncSession, payload: bytes, signature: Optional[str]) -> Dict[str, bool]:
    """Verify, parse and apply a Stripe webhook delivery."""
    body = verify_webhook(payload, signature)
    event = parse_billing_event(body)
    logger.info("Stripe webhook received: %s", body.get("type"))
    await apply_billing_event(session, event)
    return {"received": True}


# ---------------------------------------------------------------- user-facing


async def create_checkout_session(user: Dict[str, Any], price_id: Optional[str], customer_id: Optional[str] = None) -> str:
    """Create a subscription Checkout Session for the Pro price; returns its URL."""
    if not price_id:
        raise ValidationFailed("Price ID is required")
    if not STRIPE_PRO_PRICE_ID:
        logger.error("STRIPE_PRO_PRICE_ID not configured on server")
        raise InternalFailure("Server configuration error: STRIPE_PRO_PRICE_ID not set")
    if price_id != STRIPE_PRO_PRICE_ID:
        raise ValidationFailed("Invalid price ID")

    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": f"{APP_URL}/dashboard/billing?success=true",
        "cancel_url": f"{APP_URL}/dashboard/billing?canceled=true",
        "client_reference_id": user["uid"],
        "metadata": {"userId": user["uid"]},
    }
    if customer_id:
        params["customer"] = customer_id
    elif user.get("email"):
        params["customer_email"] = user["email"]

    try:
        checkout = await run_in_threadpool(lambda: stripe.checkout.Session.create(**params))
    except stripe.StripeError as e:
        logger.error("Error creating checkout session for uid=%s: %s", user["uid"], e)
        raise InternalFailure("Failed to create checkout session")
    url = _as_dict(checkout).get("url")
    if not url:
        raise InternalFailure("Failed to create checkout session")
    logger.info("Checkout session created for uid=%s", user["uid"])
    return url


async def create_portal_session(customer_id: Optional[str]) -> str:
    if not customer_id:
        raise NotFound("Nenhuma assinatura encontrada")
    try:
        portal = await run_in_threadpool(
            lambda: stripe.billing_portal.Session.create(customer=customer_id, return_url=f"{APP_URL}/dashboard/billing")
        )
    except stripe.StripeError as e:
        logger.error("Error creating portal session customer=%s: %s", customer_id, e)
        raise InternalFailure("Failed to create portal session")
    url = _as_dict(portal).get("url")
    if not url:
        raise InternalFailure("Failed to create portal session")
    return url


async def get_subscription_info(session: AsyncSession, uid: str) -> Dict[str, Any]:
    user = await AsyncFormsService.get_user(session, uid) or {}
    plan = normalize_plan(user.get("plan"))
    return {
        "plan": plan,
        "isPro": plan == PRO,
        "features": features_for(plan),
        "currentPeriodEnd": iso(user.get("stripe_current_period_end")),
    }
