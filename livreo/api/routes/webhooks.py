"""Webhook API routes for payment providers."""

import logging

from fastapi import APIRouter, Depends, Request, status

from livreo.api.deps import rate_limit
from livreo.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives Stripe events. Requires a valid Stripe-Signature header.",
    dependencies=[Depends(rate_limit("payments:stripe:webhook", limit=200))],
)
async def stripe_webhook(request: Request) -> dict:
    """Handle Stripe webhook events.

    Handles:
    - checkout.session.completed: settles the order or contribution
    - charge.refunded: refunds it

    Duplicate deliveries return {"received": true, "duplicate": true}.

    Raises:
        ValidationError: 400 if the signature is missing or invalid.
    """
    payload = await request.body()
    logger.debug("Stripe webhook payload size: %d bytes", len(payload))
    return await WebhookService().handle_stripe(payload, request.headers.get("stripe-signature"))


@router.post(
    "/paypal",
    status_code=status.HTTP_200_OK,
    summary="Handle PayPal webhooks",
    description="Receives PayPal events. The signature is verified with PayPal.",
    dependencies=[Depends(rate_limit("payments:paypal:webhook", limit=200))],
)
async def paypal_webhook(request: Request) -> dict:
    """Handle PAYMENT.CAPTURE.COMPLETED and PAYMENT.CAPTURE.REFUNDED events."""
    body = await request.body()
    return await WebhookService().handle_paypal(request.headers, body)


@router.post(
    "/fedapay",
    status_code=status.HTTP_200_OK,
    summary="Handle FedaPay webhooks",
    description="Receives FedaPay transaction events. Requires a valid X-FEDAPAY-SIGNATURE header.",
    dependencies=[Depends(rate_limit("payments:fedapay:webhook", limit=200))],
)
async def fedapay_webhook(request: Request) -> dict:
    body = await request.body()
    return await WebhookService().handle_fedapay(body, request.headers.get("x-fedapay-signature"))
