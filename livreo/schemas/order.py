"""Order and checkout Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

OrderStatus = Literal["pending", "paid", "cancelled", "refunded"]
PaymentMethod = Literal["stripe", "paypal", "mobile_money"]


class OrderItemCreate(BaseModel):
    """A requested line: which book and how many."""

    book_id: str = Field(min_length=1, description="Book ID")
    quantity: int = Field(ge=1, le=100, description="Quantity ordered")


class OrderCreate(BaseModel):
    """Schema for creating an order via POST /orders."""

    items: list[OrderItemCreate] = Field(min_length=1, max_length=50, description="Books to order")
    sale_type: Literal["direct", "preorder"] = Field(description="Sale mode of every book in the order")
    payment_method: PaymentMethod = Field(description="Provider the order will be paid with")
    promo_code: str | None = Field(default=None, max_length=64, description="Optional promo code")


class OrderItemSchema(BaseModel):
    """Schema for a single stored line item."""

    model_config = ConfigDict(from_attributes=True)

    book_id: str = Field(description="Book ID")
    quantity: int = Field(description="Quantity ordered")
    unit_price: Decimal = Field(description="Unit price at order time")


class OrderResponse(BaseModel):
    """Schema for order API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Order unique identifier")
    user_id: str = Field(description="Owner of the order")
    items: list[OrderItemSchema] = Field(description="Order line items")
    total: Decimal = Field(description="Order total")
    currency: str = Field(default="EUR", description="Currency code")
    status: OrderStatus = Field(description="Order status")
    sale_type: str = Field(description="Sale mode")
    payment_method: PaymentMethod = Field(description="Configured payment method")
    payment_reference: str | None = Field(default=None, description="Provider payment reference")
    transaction_id: str | None = Field(default=None, description="Provider transaction ID")
    promo_code: str | None = Field(default=None, description="Promo code")
    invoice_number: str = Field(description="Unique invoice number")
    paid_at: datetime | None = Field(default=None, description="Payment timestamp")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")


class OrderListResponse(BaseModel):
    """Schema for order list API responses."""

    items: list[OrderResponse] = Field(description="List of orders")


class CancelOrderRequest(BaseModel):
    """Schema for POST /orders/cancel."""

    order_id: str = Field(min_length=1, description="Order to cancel")


class CheckoutRequest(BaseModel):
    """Schema for starting a provider checkout for an existing order."""

    order_id: str = Field(min_length=1, description="Pending order to pay")


class CheckoutResponse(BaseModel):
    """Where to send the user to pay."""

    provider: str = Field(description="Payment provider")
    order_id: str | None = Field(default=None, description="Order being paid")
    contribution_id: str | None = Field(default=None, description="Contribution being paid")
    redirect_url: str = Field(description="Provider-hosted payment page")


class PaypalCompleteRequest(BaseModel):
    """Schema for capturing an approved PayPal order for a local order."""

    order_id: str = Field(min_length=1, description="Local order ID")
    paypal_order_id: str = Field(min_length=1, description="PayPal order ID returned on approval")


class StripeCompleteRequest(BaseModel):
    """Schema for settling an order on return from Stripe Checkout."""

    order_id: str = Field(min_length=1, description="Local order ID")
    session_id: str = Field(min_length=1, description="Checkout Session ID from the success URL")


class PaymentTransactionResponse(BaseModel):
    """One ledger entry of an order. Raw provider payloads are not exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: Literal["stripe", "paypal", "fedapay"]
    kind: Literal["payment", "refund", "webhook"]
    status: Literal["pending", "succeeded", "failed"]
    provider_event_id: str | None = None
    provider_reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    created_at: datetime | None = None


class PaymentTransactionListResponse(BaseModel):
    """Schema for an order's payment history."""

    items: list[PaymentTransactionResponse] = Field(description="Ledger entries, newest first")
