"""Book lookups and counter updates used by the payment flows."""

import logging
from decimal import Decimal
from typing import Any

from livreo.core.supabase import COUNTER_RETRIES, adjust_counter, execute, get_supabase_client
from livreo.models import Book

logger = logging.getLogger(__name__)

__all__ = ["COUNTER_RETRIES", "BookService"]


class BookService:
    """Read books and adjust their stock and funding counters."""

    def __init__(self) -> None:
        self.client = get_supabase_client()

    async def get_book(self, book_id: str) -> Book | None:
        """Get a book by ID.

        Returns:
            Book | None: The book row or None if not found.
        """
        response = await execute(
            self.client.table("books")
            .select("id, title, price, sale_type, stock, funding_goal, funding_raised")
            .eq("id", book_id)
            .maybe_single()
        )
        return response.data if response and response.data else None

    async def get_books(self, book_ids: list[str]) -> dict[str, Book]:
        """Get several books keyed by ID. Missing IDs are simply absent."""
        if not book_ids:
            return {}
        response = await execute(
            self.client.table("books")
            .select("id, title, price, sale_type, stock, funding_goal, funding_raised")
            .in_("id", sorted(set(book_ids)))
        )
        return {book["id"]: book for book in response.data or []}

    async def adjust_stock(self, book_id: str, delta: int) -> int | None:
        """Add delta to a book's stock, never going below zero.

        Returns:
            int | None: The new stock, or None if the update did not apply.
        """
        return await adjust_counter("books", "id", book_id, "stock", delta, cast=int)

    async def adjust_funding_raised(self, book_id: str, delta: Decimal) -> Decimal | None:
        """Add delta to a campaign's funding_raised, never going below zero."""
        return await adjust_counter("books", "id", book_id, "funding_raised", delta, cast=_to_decimal)


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value))
