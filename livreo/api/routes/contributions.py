"""Crowdfunding contribution API routes."""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from livreo.api.deps import ClientSession, CurrentSession, TrustedOrigin, rate_limit
from livreo.schemas.contribution import (
    CampaignSnapshot,
    ContributionCreate,
    ContributionListResponse,
    ContributionPaypalComplete,
    ContributionResponse,
    ContributionStripeComplete,
)
from livreo.schemas.order import CheckoutResponse
from livreo.services.campaign_service import CampaignService
from livreo.services.contribution_service import ContributionService

router = APIRouter(prefix="/contributions", tags=["contributions"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post(
    "",
    response_model=CheckoutResponse,
    summary="Pledge to a campaign",
    description="Create a pending contribution and start its provider checkout.",
    dependencies=[Depends(rate_limit("payments:contributions:create", limit=20))],
)
async def create_contribution(
    data: ContributionCreate,
    session: ClientSession,
    origin: TrustedOrigin,
) -> CheckoutResponse:
    """Start a pledge checkout.

    Args:
        data: Book, amount, payment method and display options.
        session: Authenticated client.
        origin: Trusted origin for return URLs.

    Returns:
        CheckoutResponse: provider, contribution_id and redirect_url.

    Raises:
        NotFoundError: 404 if the book does not exist.
        ValidationError: 400 if the book is not a crowdfunding book.
        PaymentProviderError: 502 if the provider fails.
    """
    service = ContributionService()
    result = await service.create_pledge(
        book_id=data.book_id,
        user_id=session.sub,
        amount=data.amount,
        payment_method=data.payment_method,
        origin=origin,
        reward=data.reward,
        contributor_name=data.contributor_name or session.name or None,
        is_public=data.is_public,
    )
    return CheckoutResponse(**result)


@router.post(
    "/paypal/complete",
    response_model=ContributionResponse,
    summary="Complete PayPal pledge",
    description="Capture an approved PayPal order and mark the contribution paid.",
    dependencies=[Depends(rate_limit("payments:contributions:paypal:complete", limit=30))],
)
async def complete_paypal_contribution(
    data: ContributionPaypalComplete,
    session: CurrentSession,
) -> ContributionResponse:
    service = ContributionService()
    contribution = await service.complete_paypal(data.contribution_id, session.sub, data.paypal_order_id)
    return ContributionResponse(**contribution)


@router.post(
    "/stripe/complete",
    response_model=ContributionResponse,
    summary="Complete Stripe pledge",
    description="Check the Checkout Session on return from Stripe and mark the contribution paid.",
    dependencies=[Depends(rate_limit("payments:contributions:stripe:complete", limit=30))],
)
async def complete_stripe_contribution(
    data: ContributionStripeComplete,
    session: CurrentSession,
) -> ContributionResponse:
    service = ContributionService()
    contribution = await service.complete_stripe(data.contribution_id, session.sub, data.session_id)
    return ContributionResponse(**contribution)


@router.get(
    "/mine",
    response_model=ContributionListResponse,
    summary="List my contributions",
)
async def list_my_contributions(session: CurrentSession) -> ContributionListResponse:
    service = ContributionService()
    contributions = await service.list_contributions_for_user(session.sub)
    return ContributionListResponse(items=[ContributionResponse(**row) for row in contributions])


@router.get(
    "/campaigns/{book_id}",
    response_model=CampaignSnapshot,
    summary="Campaign snapshot",
    description="Current funding state of a crowdfunding book.",
)
async def get_campaign(book_id: str) -> CampaignSnapshot:
    service = CampaignService()
    return await service.snapshot(book_id)


@router.get(
    "/stream",
    summary="Live campaign snapshots",
    description="Server-sent events: one snapshot on connect, then one every few seconds.",
    response_class=StreamingResponse,
)
async def stream_campaign(
    request: Request,
    book_id: str = Query(..., min_length=1, description="Crowdfunding book to follow"),
) -> StreamingResponse:
    """Stream campaign snapshots until the client disconnects.

    Errors are pushed as `event: error` messages; the stream stays open.
    """
    service = CampaignService()
    return StreamingResponse(
        service.stream(book_id, request.is_disconnected),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
