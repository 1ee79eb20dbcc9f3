"""Reward points and promo code usage tied to settled payments."""

import logging
import math
from decimal import Decimal

from livreo.core.supabase import adjust_counter

logger = logging.getLogger(__name__)


def reward_points_for(amount: Decimal | float | str) -> int:
    """One point per whole unit of currency paid, at least one per payment."""
    return max(1, math.floor(Decimal(str(amount))))


class LoyaltyService:
    """Keep profiles.reward_points and promo_codes.used_count in step with payments."""

    async def award(self, user_id: str | None, amount: Decimal | float | str) -> int | None:
        """Credit the points earned by a settled payment.

        Returns:
            int | None: The new balance, or None if nothing was credited.
        """
        if not user_id:
            return None
        points = reward_points_for(amount)
        balance = await adjust_counter("profiles", "id", user_id, "reward_points", points)
        if balance is not None:
            logger.info("Awarded %d reward points to user %s", points, user_id)
        return balance

    async def revoke(self, user_id: str | None, amount: Decimal | float | str) -> int | None:
        """Take back the points of a refunded payment. The balance stops at zero."""
        if not user_id:
            return None
        points = reward_points_for(amount)
        balance = await adjust_counter("profiles", "id", user_id, "reward_points", -points)
        if balance is not None:
            logger.info("Revoked %d reward points from user %s", points, user_id)
        return balance

    async def mark_promo_code_used(self, code: str | None) -> int | None:
        """Count one use of a promo code. Codes are matched in upper case.

        Unknown codes are logged and ignored; the payment already went through.
        """
        if not code or not code.strip():
            return None
        used = await adjust_counter("promo_codes", "code", code.strip().upper(), "used_count", 1)
        if used is None:
            logger.warning("Promo code %s could not be marked as used", code)
        return used
