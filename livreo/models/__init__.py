"""Database model type definitions."""

from livreo.models.book import Book, BookSaleType
from livreo.models.contribution import Contribution, ContributionStatus
from livreo.models.order import Order, OrderItem, OrderStatus, PaymentMethod, SaleType
from livreo.models.payment_transaction import (
    LedgerKind,
    LedgerStatus,
    PaymentTransaction,
    ProviderName,
)

__all__ = [
    "Book",
    "BookSaleType",
    "Contribution",
    "ContributionStatus",
    "LedgerKind",
    "LedgerStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "PaymentTransaction",
    "ProviderName",
    "SaleType",
]
