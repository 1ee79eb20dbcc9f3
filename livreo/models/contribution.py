"""Contribution (crowdfunding pledge) model type definitions."""

from datetime import datetime
from typing import Literal, TypedDict

from livreo.models.order import PaymentMethod

ContributionStatus = Literal["pending", "paid", "refunded"]


class Contribution(TypedDict, total=False):
    """Contribution table row representation.

    A pledge is bound to a single crowdfunding book.
    """

    id: str
    book_id: str
    user_id: str | None
    contributor_name: str | None
    amount: float
    reward: str | None
    is_public: bool
    status: ContributionStatus
    payment_method: PaymentMethod
    payment_reference: str | None
    transaction_id: str | None
    created_at: datetime
    updated_at: datetime
