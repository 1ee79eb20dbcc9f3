"""Book model type definitions (fields read by the payments core)."""

from typing import Literal, TypedDict

BookSaleType = Literal["direct", "preorder", "crowdfunding"]


class Book(TypedDict, total=False):
    """books table row, restricted to the columns this service touches."""

    id: str
    title: str
    price: float
    sale_type: BookSaleType
    stock: int | None
    funding_goal: float | None
    funding_raised: float | None
