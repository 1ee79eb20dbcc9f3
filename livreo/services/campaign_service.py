"""Crowdfunding campaign snapshots and their live stream."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from decimal import ROUND_HALF_UP, Decimal

from livreo.api.middleware.error_handler import APIError, NotFoundError, ValidationError
from livreo.core.config import get_settings
from livreo.core.supabase import execute, get_supabase_client
from livreo.schemas.contribution import CampaignContributor, CampaignSnapshot
from livreo.services.book_service import BookService

logger = logging.getLogger(__name__)

TOP_CONTRIBUTORS = 5
DEFAULT_CONTRIBUTOR_NAME = "Contributeur"
STREAM_ERROR_MESSAGE = "stream_error"


def campaign_percent(raised: Decimal, goal: Decimal) -> float:
    """Funding progress, capped at 100 and 0 when there is no goal."""
    if goal <= 0:
        return 0.0
    percent = min(Decimal(100), raised / goal * 100)
    return float(percent.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def sse_message(snapshot: CampaignSnapshot) -> str:
    return f"data: {snapshot.model_dump_json()}\n\n"


def sse_error(message: str) -> str:
    return f"event: error\ndata: {json.dumps({'error': message})}\n\n"


class CampaignService:
    """Derive campaign state from paid contributions.

    Nothing here is stored: each snapshot is a fresh recompute, so a
    missed stream tick is simply replaced by the next one.
    """

    def __init__(self, book_service: BookService | None = None) -> None:
        self.client = get_supabase_client()
        self.settings = get_settings()
        self.books = book_service or BookService()

    async def snapshot(self, book_id: str) -> CampaignSnapshot:
        """Compute the current snapshot of a crowdfunding campaign.

        Raises:
            NotFoundError: If the book does not exist.
            ValidationError: If the book is not in crowdfunding mode.
        """
        book = await self.books.get_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        if book.get("sale_type") != "crowdfunding":
            raise ValidationError("Book is not in crowdfunding mode")

        response = await execute(
            self.client.table("contributions")
            .select("id, amount, reward, contributor_name, is_public, created_at")
            .eq("book_id", book_id)
            .eq("status", "paid")
            .order("created_at", desc=True)
        )
        paid = response.data or []

        raised = sum((Decimal(str(row["amount"])) for row in paid), Decimal("0"))
        goal = Decimal(str(book.get("funding_goal") or 0))

        top = [
            CampaignContributor(
                id=row["id"],
                name=row.get("contributor_name") or DEFAULT_CONTRIBUTOR_NAME,
                amount=Decimal(str(row["amount"])),
                reward=row.get("reward"),
                created_at=row.get("created_at"),
            )
            for row in paid
            if row.get("is_public", True)
        ][:TOP_CONTRIBUTORS]

        return CampaignSnapshot(
            book_id=book_id,
            title=book.get("title"),
            goal=goal,
            raised=raised,
            percent=campaign_percent(raised, goal),
            contributor_count=len(paid),
            top_contributors=top,
        )

    async def stream(
        self,
        book_id: str,
        is_disconnected: Callable[[], Awaitable[bool]],
        interval_seconds: float | None = None,
    ) -> AsyncIterator[str]:
        """Yield server-sent events for a campaign until the client goes away.

        Emits immediately, then once per interval. Failures are sent as
        `error` events and the stream carries on. Cancellation of the
        consuming task stops the loop at its current await.
        """
        interval = interval_seconds if interval_seconds is not None else self.settings.campaign_stream_interval_seconds
        logger.debug("Campaign stream opened for book %s", book_id)
        try:
            while not await is_disconnected():
                try:
                    yield sse_message(await self.snapshot(book_id))
                except APIError as e:
                    yield sse_error(e.message)
                except Exception as e:
                    logger.error("Campaign snapshot failed for book %s: %s", book_id, str(e))
                    yield sse_error(STREAM_ERROR_MESSAGE)
                await asyncio.sleep(interval)
        finally:
            logger.debug("Campaign stream closed for book %s", book_id)
