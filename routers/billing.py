"""
Billing endpoints - Stripe checkout, customer portal, subscription status and
the Stripe webhook (the only writer of subscription and payment records).
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_session
from models.base import CheckoutRequest
from routers.forms import get_owner
from services import billing_service
from services.forms_service import AsyncFormsService
from utils.errors import AppError, InternalFailure
from utils.limiter import limiter

logger = logging.getLogger("backend.billing")

router = APIRouter(tags=["billing"])


@router.post("/api/billing/create-checkout")
@limiter.limit("10/minute")
async def create_checkout(
    request: Request,
    payload: CheckoutRequest,
    user=Depends(get_owner),
    session: AsyncSession = Depends(get_session),
):
    """Start a Stripe Checkout for the Pro plan; the client redirects to ``url``."""
    record = await AsyncFormsService.get_user(session, user["uid"]) or {}
    url = await billing_service.create_checkout_session(user, payload.priceId, record.get("stripe_customer_id"))
    return {"url": url}


@router.post("/api/billing/portal")
async def billing_portal(user=Depends(get_owner), session: AsyncSession = Depends(get_session)):
    record = await AsyncFormsService.get_user(session, user["uid"]) or {}
    url = await billing_service.create_portal_session(record.get("stripe_customer_id"))
    return {"url": url}


@router.get("/api/user/subscription")
async def user_subscription(user=Depends(get_owner), session: AsyncSession = Depends(get_session)):
    """Current plan, its features and the paid period end"""
    return await billing_service.get_subscription_info(session, user["uid"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    """
    Stripe webhook receiver.

    400 on a missing or invalid signature; otherwise always 200
    ``{"received": true}``, including for event types we do not act on.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        return await billing_service.process_webhook(session, payload, signature)
    except AppError:
        raise
    except Exception:
        logger.exception("Webhook handler failed")
        await session.rollback()
        raise InternalFailure("Webhook handler failed")
