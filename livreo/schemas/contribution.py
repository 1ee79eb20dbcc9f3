"""Crowdfunding contribution and campaign snapshot schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from livreo.schemas.order import PaymentMethod


class ContributionCreate(BaseModel):
    """Schema for pledging to a campaign via POST /contributions."""

    book_id: str = Field(min_length=1, description="Crowdfunding book")
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2, description="Pledge amount")
    payment_method: PaymentMethod = Field(description="Provider the pledge will be paid with")
    reward: str | None = Field(default=None, max_length=200, description="Chosen reward tier")
    contributor_name: str | None = Field(default=None, max_length=120, description="Public display name")
    is_public: bool = Field(default=True, description="Show the pledge on the campaign page")


class ContributionResponse(BaseModel):
    """Schema for contribution API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    book_id: str
    user_id: str | None = None
    contributor_name: str | None = None
    amount: Decimal
    reward: str | None = None
    is_public: bool = True
    status: Literal["pending", "paid", "refunded"]
    payment_method: PaymentMethod | None = None
    payment_reference: str | None = None
    created_at: datetime | None = None


class ContributionListResponse(BaseModel):
    """Schema for contribution list API responses."""

    items: list[ContributionResponse]


class ContributionPaypalComplete(BaseModel):
    """Schema for capturing an approved PayPal order for a pledge."""

    contribution_id: str = Field(min_length=1)
    paypal_order_id: str = Field(min_length=1)


class ContributionStripeComplete(BaseModel):
    """Schema for settling a pledge on return from Stripe Checkout."""

    contribution_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)


class CampaignContributor(BaseModel):
    """A public contributor shown on the campaign page."""

    id: str
    name: str
    amount: Decimal
    reward: str | None = None
    created_at: datetime | None = None


class CampaignSnapshot(BaseModel):
    """Derived funding state of a campaign. Recomputed on every read."""

    book_id: str
    title: str | None = None
    goal: Decimal
    raised: Decimal
    percent: float = Field(ge=0, le=100)
    contributor_count: int
    top_contributors: list[CampaignContributor] = Field(max_length=5)
