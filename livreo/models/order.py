"""Order model type definitions for database operations."""

from datetime import datetime
from typing import Literal, TypedDict

OrderStatus = Literal["pending", "paid", "cancelled", "refunded"]
SaleType = Literal["direct", "preorder"]
PaymentMethod = Literal["stripe", "paypal", "mobile_money"]


class OrderItem(TypedDict):
    """A single line of the items JSONB array.

    unit_price is copied from the book at order time so later price
    changes never alter an existing order.
    """

    book_id: str
    quantity: int
    unit_price: float


class Order(TypedDict, total=False):
    """Order table row representation.

    Rows are created in `pending` and only ever change status through
    conditional updates; they are never deleted.
    """

    id: str
    user_id: str
    email: str
    items: list[OrderItem]
    total: float
    currency: str
    status: OrderStatus
    sale_type: SaleType
    payment_method: PaymentMethod
    transaction_id: str | None
    payment_reference: str | None
    promo_code: str | None
    invoice_number: str
    paid_at: datetime | None
    created_at: datetime
    updated_at: datetime
