"""Order API routes."""

from fastapi import APIRouter, Depends, status

from livreo.api.deps import CurrentSession, TrustedOrigin, rate_limit
from livreo.schemas.order import (
    CancelOrderRequest,
    CheckoutResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    PaymentTransactionListResponse,
    PaymentTransactionResponse,
)
from livreo.services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Create a pending order for books of a single sale type.",
    dependencies=[Depends(rate_limit("orders:create", limit=20))],
)
async def create_order(data: OrderCreate, session: CurrentSession) -> OrderResponse:
    """Create a pending order priced from current book prices.

    Args:
        data: Items, sale type and payment method.
        session: Authenticated caller.

    Returns:
        OrderResponse: The created order.

    Raises:
        NotFoundError: 404 if a book does not exist.
        ValidationError: 400 on sale type mismatch.
        ConflictError: 409 if a book lacks stock.
    """
    service = OrderService()
    order = await service.create_order(
        user_id=session.sub,
        email=session.email,
        items=[item.model_dump() for item in data.items],
        sale_type=data.sale_type,
        payment_method=data.payment_method,
        promo_code=data.promo_code,
    )
    return OrderResponse(**order)


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
    description="Returns all orders of the authenticated user, newest first.",
)
async def list_orders(session: CurrentSession) -> OrderListResponse:
    service = OrderService()
    orders = await service.list_orders_for_user(session.sub)
    return OrderListResponse(items=[OrderResponse(**order) for order in orders])


@router.post(
    "/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancel a pending order. Cancelling twice returns the cancelled order.",
    dependencies=[Depends(rate_limit("orders:cancel", limit=20))],
)
async def cancel_order(data: CancelOrderRequest, session: CurrentSession) -> OrderResponse:
    """Cancel a pending order.

    Raises:
        NotFoundError: 404 if the order does not exist.
        AuthorizationError: 403 if the caller does not own it.
        ConflictError: 409 if the order is paid or otherwise not pending.
    """
    service = OrderService()
    order = await service.cancel(data.order_id, session.sub)
    return OrderResponse(**order)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    description="Returns a single order. Only accessible by the order owner.",
)
async def get_order(order_id: str, session: CurrentSession) -> OrderResponse:
    service = OrderService()
    order = await service.get_order_for_user(order_id, session.sub)
    return OrderResponse(**order)


@router.post(
    "/{order_id}/retry-payment",
    response_model=CheckoutResponse,
    summary="Retry payment",
    description="Start a new checkout for a pending order with its configured payment method.",
    dependencies=[Depends(rate_limit("orders:retry-payment", limit=30))],
)
async def retry_payment(order_id: str, session: CurrentSession, origin: TrustedOrigin) -> CheckoutResponse:
    service = OrderService()
    result = await service.retry_payment(order_id, session.sub, origin)
    return CheckoutResponse(**result)


@router.get(
    "/{order_id}/transactions",
    response_model=PaymentTransactionListResponse,
    summary="Order payment history",
    description="Ledger entries recorded for an order, newest first. Only accessible by the order owner.",
)
async def list_order_transactions(order_id: str, session: CurrentSession) -> PaymentTransactionListResponse:
    service = OrderService()
    entries = await service.list_transactions(order_id, session.sub)
    return PaymentTransactionListResponse(items=[PaymentTransactionResponse(**entry) for entry in entries])
