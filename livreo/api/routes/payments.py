"""Checkout API routes for Stripe, PayPal and FedaPay."""

from fastapi import APIRouter, Depends

from livreo.api.deps import CurrentSession, TrustedOrigin, rate_limit
from livreo.schemas.order import (
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    PaypalCompleteRequest,
    StripeCompleteRequest,
)
from livreo.services.order_service import OrderService
from livreo.services.payment_providers import PaymentProvider

router = APIRouter(prefix="/payments", tags=["payments"])


async def _start_checkout(
    provider: PaymentProvider,
    data: CheckoutRequest,
    session: CurrentSession,
    origin: str,
) -> CheckoutResponse:
    service = OrderService()
    result = await service.initiate_payment(data.order_id, session.sub, provider, origin)
    return CheckoutResponse(**result)


@router.post(
    "/stripe/checkout",
    response_model=CheckoutResponse,
    summary="Start Stripe checkout",
    description="Create a Stripe Checkout Session for a pending order paid by card.",
    dependencies=[Depends(rate_limit("payments:stripe:checkout", limit=20))],
)
async def stripe_checkout(data: CheckoutRequest, session: CurrentSession, origin: TrustedOrigin) -> CheckoutResponse:
    """Start a Stripe checkout.

    Raises:
        ConflictError: 409 if the order is not pending or not a card order.
        PaymentProviderError: 502 if Stripe fails.
    """
    return await _start_checkout(PaymentProvider.STRIPE, data, session, origin)


@router.post(
    "/paypal/checkout",
    response_model=CheckoutResponse,
    summary="Start PayPal checkout",
    description="Create a PayPal order for a pending order and return its approval link.",
    dependencies=[Depends(rate_limit("payments:paypal:checkout", limit=20))],
)
async def paypal_checkout(data: CheckoutRequest, session: CurrentSession, origin: TrustedOrigin) -> CheckoutResponse:
    return await _start_checkout(PaymentProvider.PAYPAL, data, session, origin)


@router.post(
    "/fedapay/checkout",
    response_model=CheckoutResponse,
    summary="Start mobile money checkout",
    description="Create a FedaPay transaction for a pending mobile money order.",
    dependencies=[Depends(rate_limit("payments:fedapay:checkout", limit=20))],
)
async def fedapay_checkout(data: CheckoutRequest, session: CurrentSession, origin: TrustedOrigin) -> CheckoutResponse:
    return await _start_checkout(PaymentProvider.FEDAPAY, data, session, origin)


@router.post(
    "/paypal/complete",
    response_model=OrderResponse,
    summary="Complete PayPal payment",
    description="Capture an approved PayPal order on return from PayPal and settle the local order.",
    dependencies=[Depends(rate_limit("payments:paypal:complete", limit=30))],
)
async def paypal_complete(data: PaypalCompleteRequest, session: CurrentSession) -> OrderResponse:
    """Capture and settle a PayPal payment.

    Raises:
        ConflictError: 409 if the capture does not match the order.
        PaymentProviderError: 502 if PayPal fails.
    """
    service = OrderService()
    order = await service.complete_paypal(data.order_id, session.sub, data.paypal_order_id)
    return OrderResponse(**order)


@router.post(
    "/stripe/complete",
    response_model=OrderResponse,
    summary="Complete Stripe payment",
    description="Check the Checkout Session on return from Stripe and settle the local order.",
    dependencies=[Depends(rate_limit("payments:stripe:complete", limit=30))],
)
async def stripe_complete(data: StripeCompleteRequest, session: CurrentSession) -> OrderResponse:
    """Settle a Stripe payment without waiting for the webhook.

    Raises:
        ConflictError: 409 if the session is unpaid or does not match the order.
        PaymentProviderError: 502 if Stripe fails.
    """
    service = OrderService()
    order = await service.complete_stripe(data.order_id, session.sub, data.session_id, session.email)
    return OrderResponse(**order)
